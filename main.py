# main.py
"""
HTTP front for the persistence core.

The app is a caller of the core: it reads settings, builds the blob store
client, ledger client and signer, and injects them into one orchestrator
kept on app.state.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from blockchain import LedgerIndexClient
from config import settings
from crypto_utils import load_private_key
from errors import BlobNotFound, ContentUnavailable, ContentWriteFailed, IndexWriteFailed, MalformedBlob, ReadUnavailable, StorageUnavailable
from logging_utils import setup_logging
from models import ReindexMessage, SendMessage
from network import JsonRpcClient
from orchestrator import PersistenceOrchestrator
from signer import AccountSigner, RelayerSigner
from storage import BlobStoreClient

logger = logging.getLogger(__name__)


def build_signer(cfg, rpc: JsonRpcClient):
    backend = cfg.get("signer_backend", "account")
    if backend == "relayer":
        if not cfg.get("relayer_url"):
            raise RuntimeError("signer_backend=relayer needs relayer_url")
        return RelayerSigner(cfg["relayer_url"], cfg.get("relayer_api_key") or None,
                             timeout=float(cfg.get("request_timeout_secs", 30)))
    if backend == "account":
        key = load_private_key(cfg.get("signer_key_path", "node_key.hex"))
        return AccountSigner(rpc, key, int(cfg.get("chain_id", 4801)))
    raise RuntimeError(f"unknown signer_backend: {backend}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.get("log_level", "INFO"))
    timeout = float(settings.get("request_timeout_secs", 30))

    blobs = BlobStoreClient(settings["publisher_url"], settings["aggregator_url"],
                            timeout=timeout, epochs=settings.get("storage_epochs"))
    rpc = JsonRpcClient(settings["rpc_url"], timeout=timeout)
    signer = build_signer(settings, rpc)
    ledger = LedgerIndexClient(rpc, settings["contract_address"], signer=signer, timeout=timeout)
    app.state.orchestrator = PersistenceOrchestrator(
        blobs,
        ledger,
        timeout=timeout,
        fetch_concurrency=int(settings.get("fetch_concurrency", 8)),
        store_attempts=int(settings.get("store_attempts", 2)),
    )
    logger.info("Persistence service ready (contract %s, signer %s)",
                ledger.contract_address, type(signer).__name__)
    try:
        yield
    finally:
        await blobs.aclose()
        if isinstance(signer, RelayerSigner):
            await signer.aclose()
        await rpc.aclose()


app = FastAPI(title="Decentralized Message Persistence", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def get_orchestrator(request: Request) -> PersistenceOrchestrator:
    return request.app.state.orchestrator


def _messages(items):
    return [dict(m.model_dump(mode="json", exclude_none=True), blobId=m.blobId, unavailable=m.unavailable)
            for m in items]


@app.get("/health")
async def health(orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    ok = await orch.ledger.ping()
    return {"ok": ok}


# Send: blob write then ledger write
@app.post("/api/messages")
async def send_message(data: SendMessage, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        result = await orch.send(data.message, data.sender)
    except ContentWriteFailed as e:
        raise HTTPException(status_code=502, detail={"error": "content_write_failed", "reason": str(e)})
    except IndexWriteFailed as e:
        raise HTTPException(
            status_code=422 if e.rejected else 502,
            detail={
                "error": "index_write_failed",
                "rejected": e.rejected,
                "reason": str(e),
                # lets the caller retry indexing without re-uploading
                "record": e.record.model_dump(mode="json") if e.record else None,
            },
        )
    return {
        "ok": True,
        "blobId": result.blobRef.blobId,
        "txRef": result.txRef,
        "blobRef": result.blobRef.model_dump(mode="json"),
        "record": result.record.model_dump(mode="json"),
    }


@app.post("/api/messages/reindex")
async def reindex_message(data: ReindexMessage, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        tx = await orch.reindex(data.record, data.sender)
    except IndexWriteFailed as e:
        raise HTTPException(status_code=422 if e.rejected else 502,
                            detail={"error": "index_write_failed", "rejected": e.rejected, "reason": str(e)})
    return {"ok": True, "txRef": tx}


@app.get("/api/conversation/{conversation_id}")
async def conversation_messages(conversation_id: str, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        items = await orch.load_conversation(conversation_id)
    except ReadUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"conversationId": conversation_id, "messages": _messages(items)}


@app.get("/api/messages/{address}")
async def user_messages(address: str, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        items = await orch.load_user(address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ReadUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"address": address, "messages": _messages(items)}


@app.get("/api/conversations/{address}")
async def user_conversations(address: str, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        summaries = await orch.summarize_conversations(address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ReadUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "address": address,
        "conversations": [s.id for s in summaries],
        "summaries": [s.model_dump(mode="json") for s in summaries],
    }


@app.get("/api/blobs/{blob_id}")
async def fetch_blob(blob_id: str, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        message = await orch.fetch_message(blob_id)
    except ContentUnavailable as e:
        status = 404 if isinstance(e.__cause__, (BlobNotFound, MalformedBlob)) else 502
        raise HTTPException(status_code=status, detail=str(e))
    return _messages([message])[0]


@app.get("/api/blobs/{blob_id}/verify")
async def verify_blob(blob_id: str, owner: str, orch: PersistenceOrchestrator = Depends(get_orchestrator)):
    try:
        ok = await orch.verify_blob(blob_id, owner)
    except StorageUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"blobId": blob_id, "owner": owner, "verified": ok}
