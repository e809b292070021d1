"""Contract ABIs for the duel arena.

The built-in ABIs cover only what the tracker reads. A Hardhat artifact or raw
ABI JSON can replace them through the ``abi`` entry of a contract or the
``abi_dir`` config key.
"""

import os
from typing import Any, Dict, List, Optional

from .config import BATTLE_CONTRACT, ESCROW_CONTRACT
from .utils import _load_json, _log


def _event(name: str, *inputs: tuple) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


BATTLE_ABI: List[Dict[str, Any]] = [
    _event(
        "DuelInitiated",
        ("duelId", "uint256", True),
        ("player1", "address", True),
        ("player2", "address", True),
        ("wager", "uint256", False),
    ),
    _event("DuelJoined", ("duelId", "uint256", True), ("player2", "address", True)),
    _event(
        "DuelCompleted",
        ("duelId", "uint256", True),
        ("winner", "address", True),
        ("loser", "address", True),
        ("totalWinnings", "uint256", False),
        ("fee", "uint256", False),
    ),
    _event(
        "DuelNullified",
        ("duelId", "uint256", True),
        ("player", "address", True),
        ("refundAmount", "uint256", False),
    ),
    _event(
        "ProceedsClaimed",
        ("duelId", "uint256", True),
        ("winner", "address", True),
        ("amount", "uint256", False),
        ("fee", "uint256", False),
    ),
    {
        "type": "function",
        "name": "getPlayerStats",
        "stateMutability": "view",
        "inputs": [{"name": "player", "type": "address"}],
        "outputs": [
            {"name": "totalDuels", "type": "uint256"},
            {"name": "wins", "type": "uint256"},
            {"name": "totalWagered", "type": "uint256"},
            {"name": "totalProfit", "type": "uint256"},
        ],
    },
]

ESCROW_ABI: List[Dict[str, Any]] = [
    _event("FundsEscrowed", ("duelId", "uint256", True), ("amount", "uint256", False)),
    _event(
        "FundsReleased",
        ("duelId", "uint256", True),
        ("winner", "address", True),
        ("amount", "uint256", False),
        ("fee", "uint256", False),
    ),
    _event("FeeCollected", ("duelId", "uint256", True), ("feeAmount", "uint256", False)),
    {
        "type": "function",
        "name": "getTotalFees",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

BUILTIN_ABIS = {
    BATTLE_CONTRACT: BATTLE_ABI,
    ESCROW_CONTRACT: ESCROW_ABI,
}


def load_abi(name: str, abi_source: Optional[Any], abi_dir: Optional[str]) -> List[Dict[str, Any]]:
    if isinstance(abi_source, list):
        return abi_source
    if isinstance(abi_source, str):
        abi_path = abi_source
        if os.path.isdir(abi_path):
            abi_path = _find_abi_file(name, abi_path)
        if abi_path and os.path.exists(abi_path):
            abi = _extract_abi(_load_json(abi_path))
            if abi is not None:
                return abi
        raise FileNotFoundError(f"ABI path not found for {name}: {abi_source}")

    abi_path = _find_abi_file(name, abi_dir) if abi_dir else None
    if abi_path:
        abi = _extract_abi(_load_json(abi_path))
        if abi is not None:
            return abi
        _log(f"WARN: {abi_path} holds no ABI, using built-in ABI for {name}")
    if name not in BUILTIN_ABIS:
        raise ValueError(f"No ABI available for contract {name}")
    return BUILTIN_ABIS[name]


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def _find_abi_file(contract_name: str, abi_dir: str) -> Optional[str]:
    if not abi_dir or not os.path.exists(abi_dir):
        return None
    for candidate in (f"{contract_name}.json", f"{contract_name}.abi.json"):
        direct = os.path.join(abi_dir, candidate)
        if os.path.exists(direct):
            return direct

    for root, _dirs, files in os.walk(abi_dir):
        for filename in files:
            if filename == f"{contract_name}.json":
                return os.path.join(root, filename)
    return None
