"""
Tests for PersistenceOrchestrator.

Covers:
- send: blob then ledger, failure of either half
- reindexing an orphaned blob
- load: fallback items, ordering, empty results, ledger failures
- bounded fan-out, timeouts and cancellation
- conversation derivation
"""

import asyncio

import pytest

from conftest import ALICE, BOB, ts
from errors import (
    ContentUnavailable,
    ContentWriteFailed,
    IndexWriteFailed,
    ReadUnavailable,
    StorageUnavailable,
    WriteRejected,
    WriteUnavailable,
)
from models import Message, MessageRecord, encode_message
from orchestrator import PersistenceOrchestrator


@pytest.fixture
def orch(blob_store, ledger):
    return PersistenceOrchestrator(blob_store, ledger, timeout=1.0, fetch_concurrency=4, retry_backoff=0)


def record(blob_id, conversation_id="c1", sender=ALICE, seconds=1_700_000_000, message_type="text"):
    return MessageRecord(
        blobId=blob_id,
        conversationId=conversation_id,
        senderId=sender,
        messageType=message_type,
        timestamp=ts(seconds),
    )


class TestSend:
    @pytest.mark.asyncio
    async def test_send_then_load_returns_message(self, orch, blob_store, ledger):
        """A sent text message comes back from its conversation with its blob id."""
        m = Message.text("c1", ALICE, "hi")
        result = await orch.send(m, ALICE)

        assert result.blobRef.blobId == "b1"
        assert result.txRef == "t1"

        loaded = await orch.load("c1")
        assert len(loaded) == 1
        got = loaded[0]
        assert got.content == "hi"
        assert got.blobId == "b1"
        assert got.conversationId == "c1"
        assert got.senderId == ALICE
        assert got.messageType == "text"
        assert got.unavailable is False
        assert got.model_dump() == m.model_dump()

    @pytest.mark.asyncio
    async def test_record_built_from_blob_ref_and_message(self, orch):
        m = Message.payment("c9", ALICE, 5, "USDC", recipient=BOB)
        result = await orch.send(m, ALICE)

        assert result.record.blobId == result.blobRef.blobId
        assert result.record.conversationId == "c9"
        assert result.record.senderId == ALICE
        assert result.record.messageType == "payment"
        assert result.record.timestamp == m.timestamp

    @pytest.mark.asyncio
    async def test_blob_failure_aborts_before_ledger(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, store_attempts=1, retry_backoff=0)
        blob_store.fail_store = 1

        with pytest.raises(ContentWriteFailed):
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert ledger.writes == 0

    @pytest.mark.asyncio
    async def test_blob_write_is_retried(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, store_attempts=3, retry_backoff=0)
        blob_store.fail_store = 2

        result = await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert result.txRef == "t1"
        assert blob_store.store_calls == 3

    @pytest.mark.asyncio
    async def test_blob_write_gives_up_after_attempts(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, store_attempts=2, retry_backoff=0)
        blob_store.fail_store = 5

        with pytest.raises(ContentWriteFailed):
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert blob_store.store_calls == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, store_attempts=3, retry_backoff=0)
        blob_store.fail_store = 3
        blob_store.fail_status = 413

        with pytest.raises(ContentWriteFailed):
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert blob_store.store_calls == 1
        assert ledger.writes == 0

    @pytest.mark.asyncio
    async def test_blob_write_timeout_is_content_write_failure(self, ledger):
        class SlowStore:
            async def store(self, data, owner):
                await asyncio.sleep(1)

        orch = PersistenceOrchestrator(SlowStore(), ledger, timeout=0.01, store_attempts=1)
        with pytest.raises(ContentWriteFailed):
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert ledger.writes == 0

    @pytest.mark.asyncio
    async def test_index_failure_leaves_invisible_blob(self, orch, blob_store, ledger):
        """Blob stored, record not written: nobody can see the message."""
        ledger.fail_write = WriteUnavailable("node down")

        with pytest.raises(IndexWriteFailed) as exc_info:
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)

        err = exc_info.value
        assert err.rejected is False
        assert err.blob_ref.blobId == "b1"
        assert "b1" in blob_store.blobs
        assert await orch.load("c1") == []
        assert await orch.load(ALICE, kind="user") == []

    @pytest.mark.asyncio
    async def test_index_rejection_is_flagged(self, orch, ledger):
        ledger.fail_write = WriteRejected("reverted", "3")

        with pytest.raises(IndexWriteFailed) as exc_info:
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)
        assert exc_info.value.rejected is True

    @pytest.mark.asyncio
    async def test_reindex_makes_orphan_visible(self, orch, blob_store, ledger):
        ledger.fail_write = WriteUnavailable("node down")
        with pytest.raises(IndexWriteFailed) as exc_info:
            await orch.send(Message.text("c1", ALICE, "hi"), ALICE)

        ledger.fail_write = None
        tx = await orch.reindex(exc_info.value.record, ALICE)

        assert tx == "t1"
        assert blob_store.store_calls == 1
        loaded = await orch.load("c1")
        assert [m.content for m in loaded] == ["hi"]


class TestLoad:
    @pytest.mark.asyncio
    async def test_empty_conversation(self, orch):
        assert await orch.load("nothing-here") == []
        assert await orch.load("nothing-here") == []

    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(self, orch, ledger):
        ledger.fail_read = ReadUnavailable("rpc down")
        with pytest.raises(ReadUnavailable):
            await orch.load("c1")

    @pytest.mark.asyncio
    async def test_missing_blob_becomes_fallback(self, orch, blob_store, ledger):
        await orch.send(Message.text("c1", ALICE, "first", timestamp=ts(100)), ALICE)
        ledger.records.append(record("b2", sender=BOB, seconds=200))

        loaded = await orch.load("c1")

        assert len(loaded) == len(ledger.records) == 2
        fallback = loaded[1]
        assert fallback.unavailable is True
        assert "b2" in fallback.content
        assert fallback.blobId == "b2"
        assert fallback.conversationId == "c1"
        assert fallback.senderId == BOB
        assert fallback.timestamp == ts(200)
        assert fallback.messageType == "text"

    @pytest.mark.asyncio
    async def test_unreachable_blob_becomes_fallback(self, orch, blob_store, ledger):
        await orch.send(Message.text("c1", ALICE, "one"), ALICE)
        blob_store.unavailable.add("b1")

        loaded = await orch.load("c1")
        assert len(loaded) == 1
        assert loaded[0].unavailable is True

    @pytest.mark.asyncio
    async def test_malformed_blob_becomes_fallback(self, orch, blob_store, ledger):
        blob_store.blobs["bad"] = b"not json"
        ledger.records.append(record("bad"))

        loaded = await orch.load("c1")
        assert loaded[0].unavailable is True

    @pytest.mark.asyncio
    async def test_sorted_by_timestamp(self, orch, blob_store, ledger):
        for i, seconds in enumerate([300, 100, 200]):
            m = Message.text("c1", ALICE, f"m{seconds}", timestamp=ts(seconds))
            blob_store.blobs[f"x{i}"] = encode_message(m)
            ledger.records.append(record(f"x{i}", seconds=seconds))

        loaded = await orch.load("c1")
        assert [m.content for m in loaded] == ["m100", "m200", "m300"]

    @pytest.mark.asyncio
    async def test_fallbacks_sorted_with_resolved(self, orch, blob_store, ledger):
        m = Message.text("c1", ALICE, "resolved", timestamp=ts(200))
        blob_store.blobs["ok"] = encode_message(m)
        ledger.records.append(record("ok", seconds=200))
        ledger.records.append(record("gone", seconds=100))

        loaded = await orch.load("c1")
        assert [x.blobId for x in loaded] == ["gone", "ok"]

    @pytest.mark.asyncio
    async def test_load_user(self, orch):
        await orch.send(Message.text("c1", ALICE, "a"), ALICE)
        await orch.send(Message.text("c2", BOB, "b"), BOB)

        loaded = await orch.load_user(ALICE)
        assert [m.content for m in loaded] == ["a"]

    @pytest.mark.asyncio
    async def test_unknown_scope_kind(self, orch):
        with pytest.raises(ValueError):
            await orch.load("c1", kind="group")


class TestFanOut:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, fetch_concurrency=3)
        blob_store.delay = 0.01
        for i in range(10):
            ledger.records.append(record(f"missing{i}", seconds=i))

        loaded = await orch.load("c1")
        assert len(loaded) == 10
        assert 1 < blob_store.peak <= 3

    @pytest.mark.asyncio
    async def test_slow_blob_times_out_to_fallback(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, timeout=0.01)
        blob_store.delay = 0.5
        ledger.records.append(record("slow"))

        loaded = await orch.load("c1")
        assert len(loaded) == 1
        assert loaded[0].unavailable is True

    @pytest.mark.asyncio
    async def test_cancel_stops_further_fetches(self, blob_store, ledger):
        orch = PersistenceOrchestrator(blob_store, ledger, fetch_concurrency=1)
        blob_store.delay = 0.05
        for i in range(10):
            ledger.records.append(record(f"b{i}", seconds=i))

        task = asyncio.create_task(orch.load("c1"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert blob_store.retrieve_calls < 10

    def test_concurrency_must_be_positive(self, blob_store, ledger):
        with pytest.raises(ValueError):
            PersistenceOrchestrator(blob_store, ledger, fetch_concurrency=0)


class TestConversations:
    @pytest.mark.asyncio
    async def test_derive_distinct_in_first_seen_order(self, orch, ledger):
        for cid in ["c1", "c2", "c1"]:
            ledger.records.append(record("b", conversation_id=cid))

        assert await orch.derive_conversations(ALICE) == ["c1", "c2"]
        assert await orch.derive_conversations(ALICE) == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_derive_skips_empty_ids(self, orch, ledger):
        for cid in ["", "c2", ""]:
            ledger.records.append(record("b", conversation_id=cid))
        assert await orch.derive_conversations(ALICE) == ["c2"]

    @pytest.mark.asyncio
    async def test_derive_for_unknown_address(self, orch):
        assert await orch.derive_conversations(BOB) == []

    @pytest.mark.asyncio
    async def test_summaries(self, orch, ledger):
        ledger.records.append(record("b1", conversation_id="c1", seconds=10))
        ledger.records.append(record("b2", conversation_id="c1", seconds=30))

        (summary,) = await orch.summarize_conversations(ALICE)
        assert summary.id == "c1"
        assert summary.messageCount == 2
        assert summary.participants == [ALICE]
        assert summary.createdAt == ts(10)
        assert summary.updatedAt == ts(30)


class TestFetchAndVerify:
    @pytest.mark.asyncio
    async def test_fetch_message(self, orch):
        await orch.send(Message.text("c1", ALICE, "hello"), ALICE)
        m = await orch.fetch_message("b1")
        assert m.content == "hello"
        assert m.blobId == "b1"

    @pytest.mark.asyncio
    async def test_fetch_missing_message(self, orch):
        with pytest.raises(ContentUnavailable) as exc_info:
            await orch.fetch_message("nope")
        assert exc_info.value.blob_id == "nope"

    @pytest.mark.asyncio
    async def test_verify_blob_owner(self, orch):
        await orch.send(Message.text("c1", ALICE, "hello"), ALICE)
        assert await orch.verify_blob("b1", ALICE) is True
        assert await orch.verify_blob("b1", BOB) is False
        assert await orch.verify_blob("missing", ALICE) is False

    @pytest.mark.asyncio
    async def test_verify_blob_unavailable(self, ledger):
        class DownStore:
            async def metadata(self, blob_id):
                raise StorageUnavailable("down")

        orch = PersistenceOrchestrator(DownStore(), ledger)
        with pytest.raises(StorageUnavailable):
            await orch.verify_blob("b1", ALICE)

    @pytest.mark.asyncio
    async def test_verify_blob_odd_metadata(self, ledger):
        class ListStore:
            async def metadata(self, blob_id):
                return ["not", "an", "object"]

        orch = PersistenceOrchestrator(ListStore(), ledger)
        assert await orch.verify_blob("b1", ALICE) is False
