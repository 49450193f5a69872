"""
Contract ABIs and event signatures

Event layouts mirror the deployed donation contract. Topic hashes are
derived from the canonical signatures at import time.
"""
from dataclasses import dataclass
from typing import Dict, List, Tuple

from web3 import Web3

from kubi_pipeline.models.events import EventKind


@dataclass(frozen=True)
class EventSpec:
    """One watched event: ordered (name, abi type, indexed) inputs"""
    kind: EventKind
    inputs: Tuple[Tuple[str, str, bool], ...]

    @property
    def signature(self) -> str:
        return f"{self.kind.value}({','.join(t for _, t, _ in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + Web3.keccak(text=self.signature).hex().removeprefix("0x")

    @property
    def indexed(self) -> List[Tuple[str, str]]:
        return [(n, t) for n, t, idx in self.inputs if idx]

    @property
    def data(self) -> List[Tuple[str, str]]:
        return [(n, t) for n, t, idx in self.inputs if not idx]


DONATION_EVENT = EventSpec(EventKind.DONATION, (
    ("donor", "address", True),
    ("streamer", "address", True),
    ("tokenIn", "address", True),
    ("amountIn", "uint256", False),
    ("feeAmount", "uint256", False),
    ("tokenOut", "address", False),
    ("amountOutToStreamer", "uint256", False),
    ("timestamp", "uint256", False),
))

DONATION_BRIDGED_EVENT = EventSpec(EventKind.BRIDGE_SEND, (
    ("donor", "address", True),
    ("streamer", "address", True),
    ("destinationChain", "uint32", True),
    ("tokenBridged", "address", False),
    ("amount", "uint256", False),
    ("messageId", "bytes32", False),
))

BRIDGED_DONATION_RECEIVED_EVENT = EventSpec(EventKind.BRIDGE_RECEIVE, (
    ("originChain", "uint32", True),
    ("donor", "address", True),
    ("streamer", "address", True),
    ("token", "address", False),
    ("amount", "uint256", False),
    ("messageId", "bytes32", False),
))

WATCHED_EVENTS = (DONATION_EVENT, DONATION_BRIDGED_EVENT, BRIDGED_DONATION_RECEIVED_EVENT)

EVENTS_BY_TOPIC: Dict[str, EventSpec] = {spec.topic: spec for spec in WATCHED_EVENTS}

WATCHED_TOPICS: List[str] = list(EVENTS_BY_TOPIC)

# Yield-bearing token, only the members the scheduler touches
TOKEN_YIELD_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "scalingFactor",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "payable": False,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"internalType": "uint256", "name": "newScalingFactor", "type": "uint256"}],
        "name": "rebase",
        "outputs": [],
        "payable": False,
        "stateMutability": "nonpayable",
        "type": "function",
    },
]
