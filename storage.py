# storage.py
"""
Client for a content-addressed blob store (Walrus-style publisher/aggregator API).

    PUT {publisher}/v1/blobs              raw bytes -> JSON with the blob id
    GET {aggregator}/v1/blobs/{id}        raw bytes
    GET {aggregator}/v1/blobs/{id}/metadata

The client knows nothing about messages and never retries.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from errors import BlobNotFound, StorageUnavailable
from models import BlobRef

logger = logging.getLogger(__name__)


def parse_store_response(body: Dict[str, Any]) -> Dict[str, Any]:
    """Pull blobId / objectId / txDigest out of a publisher response."""
    if body.get("newlyCreated"):
        created = body["newlyCreated"]
        blob_object = created.get("blobObject") or {}
        return {
            "status": "newlyCreated",
            "blobId": blob_object.get("blobId"),
            "objectId": blob_object.get("id"),
            "txDigest": (created.get("event") or {}).get("txDigest"),
        }
    if body.get("alreadyCertified"):
        certified = body["alreadyCertified"]
        return {
            "status": "alreadyCertified",
            "blobId": certified.get("blobId"),
            "objectId": None,
            "txDigest": (certified.get("event") or {}).get("txDigest"),
        }
    return {"status": "unknown", "blobId": body.get("blobId"), "objectId": None, "txDigest": None}


class BlobStoreClient:
    def __init__(self, publisher_url: str, aggregator_url: str, timeout: float = 30.0,
                 epochs: Optional[int] = None, client: Optional[httpx.AsyncClient] = None):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.epochs = epochs
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "BlobStoreClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def store(self, data: bytes, owner: str) -> BlobRef:
        params = {"epochs": self.epochs} if self.epochs else None
        try:
            r = await self._client.put(
                f"{self.publisher_url}/v1/blobs",
                content=data,
                params=params,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"blob store unreachable: {e}") from e
        if r.status_code >= 400:
            raise StorageUnavailable(f"failed to store blob: {r.status_code} {r.reason_phrase}", r.status_code)
        try:
            body = r.json()
        except ValueError as e:
            raise StorageUnavailable(f"unreadable publisher response: {e}") from e
        parsed = parse_store_response(body if isinstance(body, dict) else {})
        if not parsed["blobId"]:
            raise StorageUnavailable("publisher response carried no blob id")

        logger.info("Stored blob %s (%s, %d bytes) for %s", parsed["blobId"], parsed["status"], len(data), owner)
        return BlobRef(
            blobId=parsed["blobId"],
            size=len(data),
            owner=owner,
            objectId=parsed["objectId"],
            txDigest=parsed["txDigest"],
            status=parsed["status"],
        )

    async def _get(self, blob_id: str, suffix: str, accept: str) -> httpx.Response:
        url = f"{self.aggregator_url}/v1/blobs/{blob_id}{suffix}"
        try:
            r = await self._client.get(url, headers={"Accept": accept})
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"blob store unreachable: {e}") from e
        if r.status_code == 404:
            raise BlobNotFound(blob_id)
        if r.status_code >= 400:
            raise StorageUnavailable(f"failed to read blob {blob_id}: {r.status_code} {r.reason_phrase}", r.status_code)
        return r

    async def retrieve(self, blob_id: str) -> bytes:
        r = await self._get(blob_id, "", "application/octet-stream")
        logger.debug("Retrieved blob %s (%d bytes)", blob_id, len(r.content))
        return r.content

    async def metadata(self, blob_id: str) -> Dict[str, Any]:
        r = await self._get(blob_id, "/metadata", "application/json")
        try:
            return r.json()
        except ValueError as e:
            raise StorageUnavailable(f"unreadable metadata for {blob_id}: {e}") from e
