# blockchain.py
"""
Ledger index client for the messaging contract.

Writes go through an injected Signer; reads are free `eth_call`s against the
contract's view functions. Ledger timestamps are integer seconds and are
converted to aware UTC datetimes here, and only here.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from eth_abi.exceptions import DecodingError

from crypto_utils import ZERO_ADDRESS, decode_output, encode_call, is_empty_result, to_address
from errors import ReadUnavailable, SignerUnavailable, WriteRejected, WriteUnavailable
from models import BlobRef, ConversationSummary, Message, MessageRecord
from network import JsonRpcClient, RpcError

logger = logging.getLogger(__name__)

STORE_MESSAGE = "storeMessage(string,string,string,string,string)"
GET_USER_MESSAGES = "getUserMessages(address)"
GET_CONVERSATION_MESSAGES = "getConversationMessages(string)"
GET_USER_MESSAGES_BY_TYPE = "getUserMessagesByType(address,string)"
GET_USER_MESSAGE_COUNT = "getUserMessageCount(address)"
GET_CONVERSATION_MESSAGE_COUNT = "getConversationMessageCount(string)"

# (blobId, conversationId, sender, messageType, timestamp, auxA, auxB)
RECORD_TUPLE = "(string,string,address,string,uint256,string,string)"
RECORD_LIST = RECORD_TUPLE + "[]"


def from_ledger_seconds(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def record_from_tuple(row) -> MessageRecord:
    blob_id, conversation_id, sender, message_type, ts, aux_a, aux_b = row
    return MessageRecord(
        blobId=blob_id,
        conversationId=conversation_id,
        senderId=to_address(sender),
        messageType=message_type,
        timestamp=from_ledger_seconds(ts),
        objectId=aux_a,
        txDigest=aux_b,
    )


def distinct_conversations(records: Iterable[MessageRecord]) -> List[str]:
    """Distinct conversation ids in first-seen order; empty ids are skipped."""
    seen: Dict[str, None] = {}
    for r in records:
        if r.conversationId and r.conversationId not in seen:
            seen[r.conversationId] = None
    return list(seen)


def summarize(records: Iterable[MessageRecord]) -> List[ConversationSummary]:
    groups: Dict[str, List[MessageRecord]] = {}
    for r in records:
        if r.conversationId:
            groups.setdefault(r.conversationId, []).append(r)
    out = []
    for cid, rows in groups.items():
        participants: List[str] = []
        for r in rows:
            if r.senderId and r.senderId not in participants:
                participants.append(r.senderId)
        stamps = [r.timestamp for r in rows]
        out.append(ConversationSummary(
            id=cid,
            participants=participants,
            messageCount=len(rows),
            createdAt=min(stamps),
            updatedAt=max(stamps),
        ))
    return out


class LedgerIndexClient:
    def __init__(self, rpc: JsonRpcClient, contract_address: str, signer=None, timeout: float = 30.0):
        self.rpc = rpc
        self.contract_address = to_address(contract_address)
        self.signer = signer
        self.timeout = timeout

    # -------------------- write --------------------
    @staticmethod
    def build_record(blob_ref: BlobRef, message: Message) -> MessageRecord:
        return MessageRecord(
            blobId=blob_ref.blobId,
            conversationId=message.conversationId,
            senderId=message.senderId,
            messageType=message.messageType,
            timestamp=message.timestamp,
            objectId=blob_ref.objectId or "",
            txDigest=blob_ref.txDigest or "",
        )

    async def write_record(self, record: MessageRecord, sender: str) -> str:
        """
        Submit `storeMessage` for `record` through the signer.

        Returns the transaction reference once submitted (not necessarily
        confirmed).
        """
        if self.signer is None:
            raise WriteUnavailable("no signer configured")
        data = encode_call(STORE_MESSAGE, [
            record.blobId, record.conversationId, record.messageType, record.objectId, record.txDigest,
        ])
        try:
            result = await asyncio.wait_for(
                self.signer.submit(self.contract_address, data, sender=sender), self.timeout
            )
        except (SignerUnavailable, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise WriteUnavailable(f"could not submit record for blob {record.blobId}: {e}") from e

        if not result.ok:
            raise WriteRejected(
                f"record for blob {record.blobId} rejected: {result.error or result.errorCode or 'unknown error'}",
                result.errorCode,
            )
        tx = result.txId or "pending"
        logger.info("Indexed blob %s in conversation %s (tx %s)", record.blobId, record.conversationId, tx)
        return tx

    # -------------------- read --------------------
    async def _view(self, signature: str, args: List[Any], out_types: List[str]) -> Optional[tuple]:
        """Run a view call. Returns None when the contract returned no data."""
        data = encode_call(signature, args)
        try:
            result = await asyncio.wait_for(self.rpc.eth_call(self.contract_address, data), self.timeout)
        except (httpx.HTTPError, RpcError, ValueError, asyncio.TimeoutError) as e:
            raise ReadUnavailable(f"{signature} failed: {e}") from e
        if is_empty_result(result):
            return None
        try:
            return decode_output(out_types, result)
        except (DecodingError, ValueError, TypeError) as e:
            raise ReadUnavailable(f"{signature} returned undecodable data: {e}") from e

    async def _records(self, signature: str, args: List[Any]) -> List[MessageRecord]:
        out = await self._view(signature, args, [RECORD_LIST])
        if out is None:
            logger.info("%s returned no data; treating as empty", signature)
            return []
        try:
            return [record_from_tuple(row) for row in out[0]]
        except (ValueError, OverflowError, OSError) as e:
            raise ReadUnavailable(f"{signature} returned a malformed record: {e}") from e

    async def _count(self, signature: str, args: List[Any]) -> int:
        out = await self._view(signature, args, ["uint256"])
        return int(out[0]) if out else 0

    async def read_user_records(self, address: str) -> List[MessageRecord]:
        records = await self._records(GET_USER_MESSAGES, [to_address(address)])
        logger.info("Read %d records for user %s", len(records), address)
        return records

    async def read_conversation_records(self, conversation_id: str) -> List[MessageRecord]:
        records = await self._records(GET_CONVERSATION_MESSAGES, [conversation_id])
        logger.info("Read %d records for conversation %s", len(records), conversation_id)
        return records

    async def read_user_records_by_type(self, address: str, message_type: str) -> List[MessageRecord]:
        return await self._records(GET_USER_MESSAGES_BY_TYPE, [to_address(address), message_type])

    async def read_user_message_count(self, address: str) -> int:
        return await self._count(GET_USER_MESSAGE_COUNT, [to_address(address)])

    async def read_conversation_message_count(self, conversation_id: str) -> int:
        return await self._count(GET_CONVERSATION_MESSAGE_COUNT, [conversation_id])

    # -------------------- derived views --------------------
    async def derive_user_conversations(self, address: str) -> List[str]:
        return distinct_conversations(await self.read_user_records(address))

    async def summarize_conversations(self, address: str) -> List[ConversationSummary]:
        return summarize(await self.read_user_records(address))

    async def ping(self) -> bool:
        try:
            await self.read_user_message_count(ZERO_ADDRESS)
        except ReadUnavailable as e:
            logger.warning("Contract %s unreachable: %s", self.contract_address, e)
            return False
        return True
