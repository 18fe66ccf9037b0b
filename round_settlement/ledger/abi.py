"""ABI fragment for the round contract (only the calls this service makes)."""
from __future__ import annotations

from typing import Any


def _uint_input(name: str = "") -> dict[str, str]:
    return {"internalType": "uint256", "name": name, "type": "uint256"}


ROUND_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "currentRaffleId",
        "outputs": [_uint_input()],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_uint_input()],
        "name": "raffles",
        "outputs": [
            _uint_input("startTime"),
            _uint_input("endTime"),
            _uint_input("prizePool"),
            _uint_input("donations"),
            {"internalType": "bool", "name": "completed", "type": "bool"},
            _uint_input("requestId"),
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_uint_input()],
        "name": "raffleTotalEntries",
        "outputs": [_uint_input()],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_uint_input()],
        "name": "getRaffleWinners",
        "outputs": [{"internalType": "address[]", "name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_uint_input()],
        "name": "getRaffleRunnerUps",
        "outputs": [{"internalType": "address[]", "name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "selectWinners",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

__all__ = ["ROUND_CONTRACT_ABI"]
