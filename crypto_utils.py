# crypto_utils.py
import os
from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_account import Account
from eth_utils import is_address, keccak, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# --- ABI helpers ---
def function_selector(signature: str) -> bytes:
    """First 4 bytes of keccak256 over the canonical signature, e.g. 'getUserMessages(address)'."""
    return keccak(text=signature)[:4]


def arg_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t for t in inner.split(",") if t]


def encode_call(signature: str, args: Sequence[Any]) -> str:
    data = function_selector(signature) + encode(arg_types(signature), list(args))
    return "0x" + data.hex()


def decode_output(types: List[str], result_hex: str) -> Tuple[Any, ...]:
    raw = bytes.fromhex(result_hex[2:] if result_hex.startswith("0x") else result_hex)
    return decode(types, raw)


def is_empty_result(result_hex: str) -> bool:
    # nodes answer "0x" when a view has nothing to return
    return result_hex in (None, "", "0x")


def to_address(value: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return to_checksum_address(value)


# --- key management (eth-account) ---
def load_private_key(path: str) -> str:
    """Read a hex private key from `path`, creating a fresh one if it does not exist."""
    if os.path.exists(path):
        with open(path, "r") as f:
            return f.read().strip()
    acct = Account.create()
    key = acct.key.hex()
    with open(path, "w") as f:
        f.write(key)
    return key
