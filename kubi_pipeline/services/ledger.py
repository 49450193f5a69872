"""Ledger database operations for donations, work items and yield providers"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from kubi_pipeline.models.db import (
    Donation, DonationStatus, OverlayStatus, QueueOverlay, Streamer, Token, User,
    YieldProvider, YieldProviderStatus, new_id, utcnow
)

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


class LedgerService:
    """
    Handles all ledger database operations.

    Methods never commit; callers own the transaction (see Database.session).
    """

    def __init__(self, session: Session):
        if session is None:
            raise ValueError("Database session is required")
        self.session = session

    def _insert(self, model):
        dialect = self.session.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect](model)
        except KeyError:
            raise NotImplementedError(f"Upserts are not supported on {dialect}") from None

    # -- reference data ---------------------------------------------------

    def find_streamer_id(self, wallet: str) -> Optional[str]:
        """Resolve a recipient wallet to its streamer id"""
        return self.session.execute(
            select(Streamer.id)
            .join(User, User.id == Streamer.user_id)
            .where(User.wallet == wallet.lower())
        ).scalar_one_or_none()

    def find_token(self, chain_id: int, address: str) -> Optional[Token]:
        return self.session.execute(
            select(Token).where(Token.chain_id == chain_id, Token.address == address.lower())
        ).scalar_one_or_none()

    def get_token(self, token_id: str) -> Optional[Token]:
        return self.session.get(Token, token_id)

    def user_display_name(self, wallet: str) -> str:
        name = self.session.execute(
            select(User.display_name).where(User.wallet == wallet.lower())
        ).scalar_one_or_none()
        return name or ""

    def streamer_display_name(self, streamer_id: str) -> str:
        name = self.session.execute(
            select(User.display_name)
            .join(Streamer, Streamer.user_id == User.id)
            .where(Streamer.id == streamer_id)
        ).scalar_one_or_none()
        return name or ""

    # -- donations --------------------------------------------------------

    def insert_donation(self, values: Dict) -> Tuple[Donation, bool]:
        """
        Insert a donation unless (tx_hash, log_index) already exists.

        Returns:
            (donation, created) where created is False on replay
        """
        values = dict(values)
        values.setdefault('id', new_id())
        stmt = self._insert(Donation).values(**values).on_conflict_do_nothing(
            index_elements=['tx_hash', 'log_index']
        )
        created = self.session.execute(stmt).rowcount == 1
        donation = self.get_donation(values['tx_hash'], values['log_index'])
        return donation, created

    def get_donation(self, tx_hash: str, log_index: int) -> Optional[Donation]:
        return self.session.execute(
            select(Donation)
            .where(Donation.tx_hash == tx_hash, Donation.log_index == log_index)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def donation_by_tx_hash(self, tx_hash: str) -> Optional[Donation]:
        """Donation carrying display fields for a notification"""
        return self.session.execute(
            select(Donation)
            .where(Donation.tx_hash == tx_hash)
            .order_by(Donation.log_index)
            .limit(1)
        ).scalar_one_or_none()

    def set_donation_status(self, donation_id: str, status: DonationStatus) -> None:
        self.session.execute(
            update(Donation).where(Donation.id == donation_id).values(status=status.value)
        )

    def confirm_if_pending(self, donation_id: str) -> bool:
        """
        Transition a donation to CONFIRMED.

        Returns:
            True only for the call that performed the transition
        """
        result = self.session.execute(
            update(Donation)
            .where(Donation.id == donation_id, Donation.status != DonationStatus.CONFIRMED.value)
            .values(status=DonationStatus.CONFIRMED.value)
        )
        return result.rowcount == 1

    def lock_bridge_message(self, message_id: str) -> bool:
        """
        Serialize both halves of one bridge message until the transaction ends.

        Send and receive arrive from different watchers, each in its own
        transaction, and must see each other's committed rows.
        Returns False on backends that already serialize writers (SQLite).
        """
        if self.session.get_bind().dialect.name != 'postgresql':
            return False
        self.session.execute(select(func.pg_advisory_xact_lock(func.hashtext(message_id))))
        return True

    def find_bridge_origin(self, message_id: str) -> Optional[Donation]:
        return self.session.execute(
            select(Donation).where(
                Donation.bridge_message_id == message_id,
                Donation.origin_chain_id.is_(None),
                Donation.parent_donation_id.is_(None),
            )
        ).scalar_one_or_none()

    def find_bridge_destination(self, message_id: str) -> Optional[Donation]:
        return self.session.execute(
            select(Donation).where(
                Donation.bridge_message_id == message_id,
                Donation.origin_chain_id.is_not(None),
            )
        ).scalar_one_or_none()

    def link_parent(self, donation_id: str, parent_id: str) -> None:
        self.session.execute(
            update(Donation).where(Donation.id == donation_id).values(parent_donation_id=parent_id)
        )

    def latest_block(self, chain_id: int) -> Optional[int]:
        """Highest block recorded for a chain, used as a replay cursor"""
        return self.session.execute(
            select(func.max(Donation.block_number)).where(Donation.chain_id == chain_id)
        ).scalar_one_or_none()

    # -- notification queue -----------------------------------------------

    def enqueue_notification(self, streamer_id: str, token_in_id: str, amount_raw: str,
                             tx_hash: str, timestamp: datetime,
                             message: Optional[str] = None) -> QueueOverlay:
        item = QueueOverlay(
            id=new_id(),
            streamer_id=streamer_id,
            token_in_id=token_in_id,
            amount_in_raw=amount_raw,
            tx_hash=tx_hash,
            message=message,
            timestamp=timestamp,
            status=OverlayStatus.PENDING.value,
        )
        self.session.add(item)
        self.session.flush()
        return item

    def pending_items(self, limit: int) -> List[QueueOverlay]:
        """Oldest PENDING work items first"""
        return list(self.session.execute(
            select(QueueOverlay)
            .where(QueueOverlay.status == OverlayStatus.PENDING.value)
            .order_by(QueueOverlay.timestamp.asc(), QueueOverlay.id.asc())
            .limit(limit)
        ).scalars())

    def set_item_status(self, item_id: str, status: OverlayStatus) -> None:
        self.session.execute(
            update(QueueOverlay).where(QueueOverlay.id == item_id).values(status=status.value)
        )

    def redrive(self, from_status: OverlayStatus = OverlayStatus.ON_PROCESS) -> int:
        """Return failed work items to PENDING"""
        result = self.session.execute(
            update(QueueOverlay)
            .where(QueueOverlay.status == from_status.value)
            .values(status=OverlayStatus.PENDING.value)
        )
        return result.rowcount

    # -- yield providers --------------------------------------------------

    def active_yield_providers(self, chain_id: int) -> List[Tuple[YieldProvider, Token]]:
        rows = self.session.execute(
            select(YieldProvider, Token)
            .join(Token, Token.id == YieldProvider.representative_token_id)
            .where(
                YieldProvider.chain_id == chain_id,
                YieldProvider.status == YieldProviderStatus.ACTIVE.value,
            )
            .order_by(YieldProvider.id)
        )
        return [(provider, token) for provider, token in rows]

    def mark_rate_applied(self, provider_id: str, when: Optional[datetime] = None) -> None:
        when = when or utcnow()
        self.session.execute(
            update(YieldProvider)
            .where(YieldProvider.id == provider_id)
            .values(apr_updated_at=when, updated_at=when)
        )
