import json
import sys
import time
from decimal import Decimal
from typing import Any, Optional

from hexbytes import HexBytes
from web3 import Web3


def _log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, HexBytes):
        return obj.to_0x_hex()
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + obj.hex()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, set):
        return list(obj)
    return str(obj)


def _json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, indent=indent)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, HexBytes):
        return value.to_0x_hex()
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def wei_to_eth(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    return Decimal(Web3.from_wei(_parse_int(value), "ether"))


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def format_eth(amount: Decimal, places: int = 4) -> str:
    return f"{amount:.{places}f}"


def transaction_link(explorer_url: str, tx_hash: str) -> str:
    return f"{explorer_url.rstrip('/')}/tx/{tx_hash}"
