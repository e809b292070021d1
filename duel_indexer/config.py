import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from web3 import Web3

from .utils import _load_json, _to_checksum


BATTLE_CONTRACT = "DuelArenaBattle"
ESCROW_CONTRACT = "DuelArenaEscrow"

DEFAULT_CACHE_TTL = {
    "walletStats": 5 * 60,
    "duelHistory": 2 * 60,
    "liveFeed": 30,
    "duelTransactions": 10 * 60,
}

DEFAULTS: Dict[str, Any] = {
    "rpc_http": "https://api.abstract.xyz",
    "rpc_ws": None,
    "chain_id": 2741,
    "explorer_url": "https://abscan.org",
    "contracts": {},
    "abi_dir": None,
    "fee_fraction": 0.05,
    "cache_ttl": DEFAULT_CACHE_TTL,
    "db_path": "./duel_cache.db",
    "delegate_url": "http://localhost:3000/api",
    "delegate_enabled": True,
    "block_window": 10000,
    "log_batch_size": 10000,
    "start_block": 0,
    "rpc_timeout": 30,
    "delegate_timeout": 10,
    "reconnect_delay": 5,
}


class ConfigError(ValueError):
    pass


@dataclass
class ContractConfig:
    name: str
    address: str
    abi: Optional[Any] = None


@dataclass
class TrackerConfig:
    rpc_http: Optional[str]
    rpc_ws: Optional[str]
    chain_id: Optional[int]
    explorer_url: str
    contracts: Dict[str, ContractConfig]
    abi_dir: Optional[str]
    fee_fraction: float
    cache_ttl: Dict[str, float]
    db_path: Optional[str]
    delegate_url: Optional[str]
    delegate_enabled: bool
    block_window: int
    log_batch_size: int
    start_block: int
    rpc_timeout: Optional[float]
    delegate_timeout: float
    reconnect_delay: int

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "TrackerConfig":
        merged = dict(DEFAULTS)
        merged.update(cfg)

        fee_fraction = float(merged["fee_fraction"])
        if not 0 <= fee_fraction < 1:
            raise ConfigError(f"fee_fraction must be in [0, 1), got {fee_fraction}")

        cache_ttl = dict(DEFAULT_CACHE_TTL)
        for kind, ttl in (merged.get("cache_ttl") or {}).items():
            if kind not in DEFAULT_CACHE_TTL:
                raise ConfigError(f"Unknown cache kind in cache_ttl: {kind}")
            cache_ttl[kind] = float(ttl)

        block_window = int(merged["block_window"])
        if block_window <= 0:
            raise ConfigError("block_window must be positive")

        log_batch_size = int(merged["log_batch_size"])
        if log_batch_size <= 0:
            raise ConfigError("log_batch_size must be positive")

        rpc_timeout = merged.get("rpc_timeout")
        return cls(
            rpc_http=merged.get("rpc_http"),
            rpc_ws=merged.get("rpc_ws"),
            chain_id=int(merged["chain_id"]) if merged.get("chain_id") is not None else None,
            explorer_url=str(merged["explorer_url"]),
            contracts=_parse_contracts(merged.get("contracts") or {}),
            abi_dir=merged.get("abi_dir"),
            fee_fraction=fee_fraction,
            cache_ttl=cache_ttl,
            db_path=merged.get("db_path"),
            delegate_url=merged.get("delegate_url"),
            delegate_enabled=bool(merged.get("delegate_enabled")),
            block_window=block_window,
            log_batch_size=log_batch_size,
            start_block=int(merged["start_block"]),
            rpc_timeout=float(rpc_timeout) if rpc_timeout else None,
            delegate_timeout=float(merged["delegate_timeout"]),
            reconnect_delay=int(merged["reconnect_delay"]),
        )

    def contract(self, name: str) -> Optional[ContractConfig]:
        return self.contracts.get(name)


def _parse_contracts(contracts_cfg: Dict[str, Any]) -> Dict[str, ContractConfig]:
    out: Dict[str, ContractConfig] = {}
    for name, entry in contracts_cfg.items():
        if isinstance(entry, dict):
            address = entry.get("address")
            abi_source = entry.get("abi")
        else:
            address = entry
            abi_source = None
        if not address:
            continue
        if not Web3.is_address(address):
            raise ConfigError(f"Invalid address for contract {name}: {address}")
        out[name] = ContractConfig(name=name, address=_to_checksum(address), abi=abi_source)
    return out


def load_config(path: Optional[str]) -> TrackerConfig:
    cfg: Dict[str, Any] = {}
    if path and os.path.exists(path):
        cfg = _load_json(path)
        if not isinstance(cfg, dict):
            raise ConfigError(f"Config root must be an object: {path}")
    return TrackerConfig.from_dict(cfg)
