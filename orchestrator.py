# orchestrator.py
"""
Sequences the two halves of message persistence.

send:  store blob -> write ledger record
load:  read ledger records -> resolve each blob (bounded fan-out) -> sort

A message is visible only once its ledger record is written. A stored blob
whose record failed is orphaned until the caller calls `reindex` with the
record carried on IndexWriteFailed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from errors import (
    BlobNotFound,
    ContentUnavailable,
    ContentWriteFailed,
    IndexWriteFailed,
    LedgerError,
    MalformedBlob,
    StorageError,
    StorageUnavailable,
    WriteRejected,
)
from models import (
    BlobRef,
    ConversationSummary,
    Message,
    MessageRecord,
    SendResult,
    decode_message,
    encode_message,
    fallback_message,
)

logger = logging.getLogger(__name__)


class PersistenceOrchestrator:
    def __init__(self, blobs, ledger, timeout: float = 30.0, fetch_concurrency: int = 8,
                 store_attempts: int = 2, retry_backoff: float = 0.5):
        if fetch_concurrency < 1:
            raise ValueError("fetch_concurrency must be at least 1")
        self.blobs = blobs
        self.ledger = ledger
        self.timeout = timeout
        self.fetch_concurrency = fetch_concurrency
        self.store_attempts = max(1, store_attempts)
        self.retry_backoff = retry_backoff

    # -------------------- send --------------------
    async def _store(self, data: bytes, owner: str) -> BlobRef:
        # repeating a blob write is harmless: worst case an unreferenced duplicate
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(self.blobs.store(data, owner), self.timeout)
            except (StorageUnavailable, asyncio.TimeoutError) as e:
                attempt += 1
                # a 4xx from the publisher will not change on retry
                status = getattr(e, "status_code", None)
                if attempt >= self.store_attempts or (status is not None and status < 500):
                    raise ContentWriteFailed(f"blob write failed after {attempt} attempt(s): {e!r}") from e
                logger.warning("Blob write attempt %d failed: %r", attempt, e)
                await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

    async def send(self, message: Message, sender: str) -> SendResult:
        """
        Store the message content, then index it on the ledger.

        Raises ContentWriteFailed if the blob write fails (nothing is indexed)
        and IndexWriteFailed if the ledger write fails after the blob was stored.
        """
        blob_ref = await self._store(encode_message(message), sender)
        record = self.ledger.build_record(blob_ref, message)
        tx_ref = await self.reindex(record, sender, blob_ref=blob_ref)
        logger.info("Sent message %s as blob %s (tx %s)", message.id, blob_ref.blobId, tx_ref)
        return SendResult(blobRef=blob_ref, txRef=tx_ref, record=record)

    async def reindex(self, record: MessageRecord, sender: str, blob_ref: Optional[BlobRef] = None) -> str:
        """
        Write the ledger record for an already-stored blob.

        The contract does not deduplicate, so retrying after a write that
        succeeded but was never acknowledged can index the blob twice.
        """
        try:
            return await asyncio.wait_for(self.ledger.write_record(record, sender), self.timeout)
        except (LedgerError, asyncio.TimeoutError) as e:
            rejected = isinstance(e, WriteRejected)
            logger.error(
                "Blob %s stored but not indexed (%s); it stays invisible until reindexed",
                record.blobId, "rejected" if rejected else "unavailable",
            )
            raise IndexWriteFailed(
                f"index write failed for blob {record.blobId}: {e}",
                blob_ref=blob_ref, record=record, rejected=rejected,
            ) from e

    # -------------------- load --------------------
    async def _resolve(self, record: MessageRecord, slots: asyncio.Semaphore) -> Message:
        async with slots:
            try:
                data = await asyncio.wait_for(self.blobs.retrieve(record.blobId), self.timeout)
                message = decode_message(data)
            except (StorageError, MalformedBlob, asyncio.TimeoutError) as e:
                logger.warning("Blob %s unavailable, using fallback: %s", record.blobId, str(e) or type(e).__name__)
                return fallback_message(record)
        return message.model_copy(update={"blobId": record.blobId})

    async def _load(self, records: List[MessageRecord]) -> List[Message]:
        if not records:
            return []
        slots = asyncio.Semaphore(self.fetch_concurrency)
        messages = await asyncio.gather(*(self._resolve(r, slots) for r in records))
        fallbacks = sum(1 for m in messages if m.unavailable)
        if fallbacks:
            logger.warning("Loaded %d messages (%d fallbacks)", len(messages), fallbacks)
        # stable sort; ledger order breaks ties
        return sorted(messages, key=lambda m: m.timestamp)

    async def load_conversation(self, conversation_id: str) -> List[Message]:
        return await self._load(await self.ledger.read_conversation_records(conversation_id))

    async def load_user(self, address: str) -> List[Message]:
        return await self._load(await self.ledger.read_user_records(address))

    async def load(self, scope: str, kind: str = "conversation") -> List[Message]:
        if kind == "conversation":
            return await self.load_conversation(scope)
        if kind == "user":
            return await self.load_user(scope)
        raise ValueError(f"unknown load scope kind: {kind}")

    async def fetch_message(self, blob_id: str) -> Message:
        try:
            data = await asyncio.wait_for(self.blobs.retrieve(blob_id), self.timeout)
            message = decode_message(data)
        except (StorageError, MalformedBlob, asyncio.TimeoutError) as e:
            raise ContentUnavailable(blob_id, str(e)) from e
        return message.model_copy(update={"blobId": blob_id})

    # -------------------- conversations --------------------
    async def derive_conversations(self, address: str) -> List[str]:
        return await self.ledger.derive_user_conversations(address)

    async def summarize_conversations(self, address: str) -> List[ConversationSummary]:
        return await self.ledger.summarize_conversations(address)

    # -------------------- verification --------------------
    async def verify_blob(self, blob_id: str, expected_owner: str) -> bool:
        try:
            meta = await asyncio.wait_for(self.blobs.metadata(blob_id), self.timeout)
        except BlobNotFound:
            return False
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(f"metadata lookup for {blob_id} timed out") from e
        if not isinstance(meta, dict):
            return False
        owner = str(meta.get("owner") or "")
        return owner.lower() == expected_owner.lower()
