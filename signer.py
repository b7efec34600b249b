# signer.py
"""
Transaction signer backends.

Anything with an async `submit(to, data, sender=None) -> SignerResult` can sign
for the ledger client. Declines and reverts come back as an error result;
transport failures raise SignerUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, runtime_checkable

import httpx
from eth_account import Account
from eth_utils import encode_hex

from errors import SignerUnavailable
from models import SignerResult
from network import JsonRpcClient, RpcError

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    async def submit(self, to: str, data: str, sender: Optional[str] = None) -> SignerResult:
        ...


def _hex_int(value) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


class AccountSigner:
    """In-app wallet: signs locally with an eth-account key and broadcasts the raw transaction."""

    def __init__(self, rpc: JsonRpcClient, private_key: str, chain_id: int, gas_multiplier: float = 1.2):
        self.rpc = rpc
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.gas_multiplier = gas_multiplier
        # one transaction in flight per account, or concurrent sends reuse a nonce
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    async def submit(self, to: str, data: str, sender: Optional[str] = None) -> SignerResult:
        if sender and sender.lower() != self.address.lower():
            return SignerResult(
                status="error",
                errorCode="sender_mismatch",
                error=f"signer holds {self.address}, not {sender}",
            )
        async with self._lock:
            return await self._sign_and_send(to, data)

    async def _sign_and_send(self, to: str, data: str) -> SignerResult:
        try:
            nonce = _hex_int(await self.rpc.call("eth_getTransactionCount", [self.address, "pending"]))
            gas_price = _hex_int(await self.rpc.call("eth_gasPrice", []))
            gas = _hex_int(await self.rpc.call(
                "eth_estimateGas", [{"from": self.address, "to": to, "data": data, "value": "0x0"}]
            ))
        except RpcError as e:
            # estimateGas fails when the call would revert
            return SignerResult(status="error", errorCode=str(e.code), error=e.message)
        except (httpx.HTTPError, ValueError) as e:
            raise SignerUnavailable(f"node unreachable: {e}") from e

        tx = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": int(gas * self.gas_multiplier),
            "to": to,
            "value": 0,
            "data": data,
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(tx)
        try:
            tx_hash = await self.rpc.call("eth_sendRawTransaction", [encode_hex(signed.raw_transaction)])
        except RpcError as e:
            return SignerResult(status="error", errorCode=str(e.code), error=e.message)
        except (httpx.HTTPError, ValueError) as e:
            raise SignerUnavailable(f"node unreachable: {e}") from e

        logger.info("Broadcast tx %s from %s (nonce %d)", tx_hash, self.address, nonce)
        return SignerResult(status="success", txId=tx_hash)


class RelayerSigner:
    """Delegated custody: hands the call to a smart-account relayer that signs on the user's behalf."""

    def __init__(self, relay_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.relay_url = relay_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit(self, to: str, data: str, sender: Optional[str] = None) -> SignerResult:
        body = {"to": to, "data": data, "value": "0", "from": sender}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            r = await self._client.post(f"{self.relay_url}/v1/transactions", json=body, headers=headers)
        except httpx.HTTPError as e:
            raise SignerUnavailable(f"relayer unreachable: {e}") from e
        if r.status_code >= 500 or r.status_code in (408, 429):
            raise SignerUnavailable(f"relayer error {r.status_code}")

        try:
            payload = r.json() if r.content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if r.status_code >= 400:
            return SignerResult(
                status="error",
                errorCode=str(payload.get("code") or r.status_code),
                error=str(payload.get("error") or payload.get("message") or r.text),
            )
        tx = payload.get("hash") or payload.get("txId")
        logger.info("Relayer accepted call to %s for %s (tx %s)", to, sender, tx)
        return SignerResult(status="success", txId=tx)
