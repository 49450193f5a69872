"""Transient chain event models"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


class EventKind(str, enum.Enum):
    """Donation contract events the watcher subscribes to"""
    DONATION = "Donation"
    BRIDGE_SEND = "DonationBridged"
    BRIDGE_RECEIVE = "BridgedDonationReceived"


@dataclass
class ChainEvent:
    """A decoded log, produced by a watcher and consumed once by the handler"""
    chain_id: int
    contract_address: str
    kind: EventKind
    topic: str
    args: Dict[str, Any]
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        """Idempotency key"""
        return (self.tx_hash, self.log_index)


@dataclass
class WatchCursor:
    """Progress of one watcher, in memory"""
    chain_id: int
    last_block: Optional[int] = None
    events_seen: int = 0
    removed_skipped: int = 0

    def observe(self, block_number: int) -> None:
        if self.last_block is None or block_number > self.last_block:
            self.last_block = block_number
        self.events_seen += 1
