"""Event log access for the duel arena contracts.

`EventLogClient` fetches logs with ``eth_getLogs`` filtered by event topic and
indexed arguments, and decodes them against the registered ABIs. Errors are
never retried here: the caller decides whether an empty result is acceptable.
"""

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, Union

from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3._utils.events import get_event_data
from web3.exceptions import Web3RPCError

from .models import EventRecord
from .utils import _hex, _log, _parse_int, _to_checksum

BlockId = Union[int, str]

_TOO_LARGE_HINTS = ("query returned more than", "too many", "block range")


def _normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    for key in ("transactionHash", "blockHash"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if out.get(key) is not None:
            out[key] = _parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = _to_checksum(out["address"])
    return out


def encode_topic(abi_type: str, value: Any) -> str:
    if abi_type.startswith("uint") or abi_type.startswith("int"):
        value = _parse_int(value)
    elif abi_type == "address":
        value = _to_checksum(value)
    return "0x" + encode([abi_type], [value]).hex()


def build_topics(event_abi: Dict[str, Any], indexed_args: Optional[Dict[str, Any]] = None) -> List[Any]:
    """Topic list for an event filter; unfiltered indexed inputs are wildcards."""
    indexed_args = indexed_args or {}
    indexed_inputs = [item for item in event_abi.get("inputs", []) if item.get("indexed")]
    unknown = set(indexed_args) - {item["name"] for item in indexed_inputs}
    if unknown:
        raise ValueError(f"{event_abi['name']} has no indexed argument(s): {sorted(unknown)}")

    topics: List[Any] = ["0x" + event_abi_to_log_topic(event_abi).hex()]
    for item in indexed_inputs:
        value = indexed_args.get(item["name"])
        if value is None:
            topics.append(None)
        elif isinstance(value, (list, tuple, set)):
            topics.append([encode_topic(item["type"], v) for v in value])
        else:
            topics.append(encode_topic(item["type"], value))
    while topics and topics[-1] is None:
        topics.pop()
    return topics


class ContractHandle:
    def __init__(self, name: str, address: str, abi: List[Dict[str, Any]], contract: Any = None):
        self.name = name
        self.address = _to_checksum(address)
        self.abi = abi
        self.contract = contract
        self.event_abis: Dict[str, Dict[str, Any]] = {}
        self.topic_to_abi: Dict[str, Dict[str, Any]] = {}
        for item in abi:
            if not isinstance(item, dict) or item.get("type") != "event" or item.get("anonymous"):
                continue
            self.event_abis[item["name"]] = item
            self.topic_to_abi["0x" + event_abi_to_log_topic(item).hex()] = item

    def event_abi(self, event_name: str) -> Dict[str, Any]:
        if event_name not in self.event_abis:
            raise ValueError(f"{self.name} has no event {event_name}")
        return self.event_abis[event_name]


class EventLogClient:
    def __init__(self, w3: AsyncWeb3, timeout: Optional[float] = None, batch_size: int = 10000):
        self.w3 = w3
        self.timeout = timeout
        self.batch_size = batch_size
        self.contracts: Dict[str, ContractHandle] = {}

    @classmethod
    def from_url(cls, rpc_http: str, timeout: Optional[float] = None, batch_size: int = 10000) -> "EventLogClient":
        return cls(AsyncWeb3(AsyncHTTPProvider(rpc_http)), timeout=timeout, batch_size=batch_size)

    def register_contract(self, name: str, address: str, abi: List[Dict[str, Any]]) -> ContractHandle:
        checksum = _to_checksum(address)
        handle = ContractHandle(name, checksum, abi, self.w3.eth.contract(address=checksum, abi=abi))
        self.contracts[name] = handle
        return handle

    def contract(self, name: str) -> ContractHandle:
        if name not in self.contracts:
            raise KeyError(f"Contract not registered: {name}")
        return self.contracts[name]

    def has_contract(self, name: str) -> bool:
        return name in self.contracts

    async def _rpc(self, awaitable: Awaitable[Any]) -> Any:
        if self.timeout:
            return await asyncio.wait_for(awaitable, self.timeout)
        return await awaitable

    async def get_block_number(self) -> int:
        return int(await self._rpc(self.w3.eth.block_number))

    async def get_chain_id(self) -> int:
        return int(await self._rpc(self.w3.eth.chain_id))

    async def call(self, contract_name: str, fn_name: str, *args: Any) -> Any:
        handle = self.contract(contract_name)
        fn = getattr(handle.contract.functions, fn_name)
        return await self._rpc(fn(*args).call())

    async def query_events(
        self,
        contract_name: str,
        event_name: str,
        indexed_args: Optional[Dict[str, Any]] = None,
        from_block: BlockId = 0,
        to_block: BlockId = "latest",
    ) -> List[EventRecord]:
        """Fetch and decode logs in `batch_size` block ranges.

        A range the node refuses as too large is halved and retried from the
        same block; any other error propagates.
        """
        handle = self.contract(contract_name)
        event_abi = handle.event_abi(event_name)
        topics = build_topics(event_abi, indexed_args)
        if to_block == "latest":
            to_block = await self.get_block_number()
        current = _parse_int(from_block)
        to_block = _parse_int(to_block)
        batch_size = self.batch_size

        logs: List[Dict[str, Any]] = []
        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            params = {"address": handle.address, "topics": topics, "fromBlock": current, "toBlock": batch_to}
            try:
                logs.extend(await self._rpc(self.w3.eth.get_logs(params)))
            except (ValueError, Web3RPCError) as exc:
                msg = str(exc).lower()
                if batch_size <= 1 or not any(hint in msg for hint in _TOO_LARGE_HINTS):
                    raise
                batch_size = max(batch_size // 2, 1)
                _log(f"WARN: get_logs too large ({current}-{batch_to}), reducing batch size to {batch_size}")
                continue
            current = batch_to + 1

        records = [self._decode(handle, _normalize_log(log), event_abi) for log in logs]
        return sorted(records, key=lambda r: (r.block_number, r.log_index))

    async def close(self) -> None:
        await self.w3.provider.disconnect()

    def decode_log(self, log: Dict[str, Any]) -> Optional[EventRecord]:
        """Decode a raw log delivered outside `query_events` (e.g. by a subscription)."""
        normalized = _normalize_log(log)
        address = normalized.get("address")
        topics = normalized.get("topics") or []
        if not topics:
            return None
        topic0 = topics[0].to_0x_hex()
        for handle in self.contracts.values():
            if handle.address != address:
                continue
            event_abi = handle.topic_to_abi.get(topic0)
            if event_abi is None:
                _log(f"WARN: Unknown event topic {topic0} from {handle.name}")
                return None
            try:
                return self._decode(handle, normalized, event_abi)
            except Exception as exc:
                _log(f"WARN: Failed decoding log for {address}: {exc}")
                return None
        return None

    def _decode(self, handle: ContractHandle, log: Dict[str, Any], event_abi: Dict[str, Any]) -> EventRecord:
        for key in ("logIndex", "transactionIndex", "blockNumber"):
            log.setdefault(key, 0)
        log.setdefault("blockHash", None)
        log.setdefault("transactionHash", None)
        log.setdefault("address", handle.address)
        event_data = get_event_data(self.w3.codec, event_abi, log)
        return EventRecord(
            event_name=event_data["event"],
            block_number=int(log["blockNumber"]),
            transaction_hash=_hex(log.get("transactionHash")) or "",
            log_index=int(log["logIndex"]),
            address=handle.address,
            args=dict(event_data["args"]),
            removed=bool(log.get("removed")),
        )

