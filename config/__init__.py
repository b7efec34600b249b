"""
Service settings, read from `config/settings.json` over DEFAULTS.

The file may be JSONC (`//` and `/* */` comments, `30_000` style numbers).
Keys cover the blob store endpoints and storage epochs, the ledger RPC,
contract and chain id, the signer backend with its key path or relayer
credentials, and the orchestrator timeout, fan-out and retry knobs.
An unreadable file is logged and ignored.

    from config import settings
    settings.rpc_url
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path(__file__).with_name("settings.json")


def _strip_jsonc(text: str) -> str:
    """Remove JSONC comments and numeric underscores to make it JSON-safe."""
    # Remove /* block */ comments
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.S)
    # Remove // line comments, but not the // inside "http://..." strings
    text = re.sub(r'("(?:\\.|[^"\\])*")|//[^\n]*', lambda m: m.group(1) or "", text)
    # Remove underscores within numeric literals (e.g., 10_485_760 -> 10485760)
    text = re.sub(r"(?<=\d)_(?=\d)", "", text)
    return text


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    cleaned = _strip_jsonc(raw)
    try:
        data = json.loads(cleaned or "{}")
    except ValueError as e:
        logger.warning("Ignoring unparseable %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not an object", path)
        return {}
    return data


DEFAULTS: Dict[str, Any] = {
    # blob store
    "publisher_url": "https://publisher.walrus-testnet.walrus.space",
    "aggregator_url": "https://aggregator.walrus-testnet.walrus.space",
    "storage_epochs": None,
    # ledger
    "rpc_url": "http://127.0.0.1:8545",
    "contract_address": "0x34bf1a2460190e60e33309bf8c54d9a7c9ecb4b8",
    "chain_id": 4801,
    # signer: "account" (local key) or "relayer" (delegated custody)
    "signer_backend": "account",
    "signer_key_path": "node_key.hex",
    "relayer_url": "",
    "relayer_api_key": "",
    # orchestrator
    "request_timeout_secs": 30,
    "fetch_concurrency": 8,
    "store_attempts": 2,
    "log_level": "INFO",
}


def _load(path: Optional[Path] = None) -> Dict[str, Any]:
    return {**DEFAULTS, **_read_settings_file(path or SETTINGS_PATH)}


class _Settings(dict):
    def __getattr__(self, key: str) -> Any:
        try:
            return self[key]
        except KeyError as exc:
            raise AttributeError(key) from exc

    def reload(self) -> None:
        self.clear()
        self.update(_load())


settings = _Settings(_load())
