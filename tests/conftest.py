"""
Shared fixtures: in-memory stand-ins for the blob store and ledger clients,
plus helpers for mocking JSON-RPC nodes with httpx.MockTransport.
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from eth_abi import encode

from blockchain import RECORD_LIST, LedgerIndexClient, distinct_conversations, summarize
from errors import BlobNotFound, StorageUnavailable
from models import BlobRef
from network import JsonRpcClient

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CONTRACT = "0xabababababababababababababababababababab"


def ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class FakeBlobStore:
    def __init__(self):
        self.blobs = {}
        self.owners = {}
        self.fail_store = 0
        self.fail_status = 503
        self.unavailable = set()
        self.delay = 0.0
        self.store_calls = 0
        self.retrieve_calls = 0
        self.active = 0
        self.peak = 0

    async def store(self, data: bytes, owner: str) -> BlobRef:
        self.store_calls += 1
        if self.fail_store:
            self.fail_store -= 1
            raise StorageUnavailable("publisher down", self.fail_status)
        blob_id = f"b{len(self.blobs) + 1}"
        self.blobs[blob_id] = data
        self.owners[blob_id] = owner
        return BlobRef(blobId=blob_id, size=len(data), owner=owner, status="newlyCreated")

    async def retrieve(self, blob_id: str) -> bytes:
        self.retrieve_calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if blob_id in self.unavailable:
                raise StorageUnavailable("aggregator down", 503)
            if blob_id not in self.blobs:
                raise BlobNotFound(blob_id)
            return self.blobs[blob_id]
        finally:
            self.active -= 1

    async def metadata(self, blob_id: str):
        if blob_id not in self.blobs:
            raise BlobNotFound(blob_id)
        return {"owner": self.owners[blob_id], "size": len(self.blobs[blob_id])}


class FakeLedger:
    build_record = staticmethod(LedgerIndexClient.build_record)

    def __init__(self):
        self.records = []
        self.fail_write = None
        self.fail_read = None
        self.writes = 0

    async def write_record(self, record, sender):
        self.writes += 1
        if self.fail_write is not None:
            raise self.fail_write
        self.records.append(record)
        return f"t{len(self.records)}"

    async def read_conversation_records(self, conversation_id):
        if self.fail_read is not None:
            raise self.fail_read
        return [r for r in self.records if r.conversationId == conversation_id]

    async def read_user_records(self, address):
        if self.fail_read is not None:
            raise self.fail_read
        return [r for r in self.records if r.senderId.lower() == address.lower()]

    async def derive_user_conversations(self, address):
        return distinct_conversations(await self.read_user_records(address))

    async def summarize_conversations(self, address):
        return summarize(await self.read_user_records(address))


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def ledger():
    return FakeLedger()


# -------------------- JSON-RPC mocking --------------------
def encode_records(rows) -> str:
    """rows: (blobId, conversationId, sender, messageType, seconds, auxA, auxB) tuples"""
    return "0x" + encode([RECORD_LIST], [list(rows)]).hex()


def encode_uint(value: int) -> str:
    return "0x" + encode(["uint256"], [value]).hex()


def rpc_client(responder) -> JsonRpcClient:
    """
    responder(method, params) returns a JSON-RPC result, a dict with an
    "error" key, or an httpx.Response to send verbatim. It may also raise.
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body)
        out = responder(body["method"], body["params"])
        if isinstance(out, httpx.Response):
            return out
        if isinstance(out, dict) and "error" in out:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": out["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": out})

    client = JsonRpcClient("http://node.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    client.calls = calls
    return client
