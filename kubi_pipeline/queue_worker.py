"""
Notification queue worker

Drains PENDING rows of queue_overlays on a fixed interval, enriches each
into an overlay payload and hands it to the push fan-out. The table is
the queue: a restart resumes from whatever is still PENDING and failed
items stay visible as ON_PROCESS until re-driven.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from kubi_pipeline.db import Database
from kubi_pipeline.fanout import PushFanout
from kubi_pipeline.models.db import MediaType, OverlayStatus, QueueOverlay
from kubi_pipeline.models.overlay import OverlayPayload
from kubi_pipeline.services.ledger import LedgerService
from kubi_pipeline.services.media import sanitize_media_url, youtube_video_id

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18
AMOUNT_PLACES = Decimal("0.0001")


def format_amount(raw: str, decimals: int) -> str:
    """
    Human readable token amount: at most 4 fractional digits, thousands
    separators, no trailing zeros. format_amount("1234500000", 6) == "1,234.5"
    """
    value = (Decimal(raw) / (Decimal(10) ** decimals)).quantize(AMOUNT_PLACES, rounding=ROUND_HALF_UP)
    text = f"{value:,.4f}"
    return text.rstrip("0").rstrip(".")


@dataclass
class WorkItem:
    """Detached copy of a queue_overlays row"""
    id: str
    streamer_id: str
    token_in_id: str
    amount_in_raw: str
    tx_hash: str
    message: Optional[str] = None

    @classmethod
    def from_row(cls, row: QueueOverlay) -> 'WorkItem':
        return cls(
            id=row.id,
            streamer_id=row.streamer_id,
            token_in_id=row.token_in_id,
            amount_in_raw=row.amount_in_raw,
            tx_hash=row.tx_hash,
            message=row.message,
        )


class NotificationQueueWorker:
    """Periodic drain of the durable notification queue"""

    def __init__(self, database: Database, fanout: PushFanout, batch_size: int = 10,
                 poll_interval: float = 1.0, alert_sound_url: Optional[str] = None):
        self.db = database
        self.fanout = fanout
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.alert_sound_url = alert_sound_url
        self._stopping = asyncio.Event()

    def fetch_batch(self) -> List[WorkItem]:
        with self.db.session() as session:
            rows = LedgerService(session).pending_items(self.batch_size)
            return [WorkItem.from_row(row) for row in rows]

    def build_payload(self, item: WorkItem) -> OverlayPayload:
        """Enrich a work item with recipient, donor, token and media details"""
        with self.db.session() as session:
            ledger = LedgerService(session)
            donation = ledger.donation_by_tx_hash(item.tx_hash)
            token = ledger.get_token(item.token_in_id)
            streamer_name = ledger.streamer_display_name(item.streamer_id)

            donor_address = donation.donor_wallet if donation else ""
            donor_name = (ledger.user_display_name(donor_address) if donor_address else "") or "Anonymous"

            decimals = token.decimals if token and token.decimals is not None else DEFAULT_DECIMALS
            media_type = (donation.media_type if donation else None) or MediaType.TEXT.value
            media_url = sanitize_media_url(donation.media_url if donation else None)
            if media_type == MediaType.YOUTUBE.value and media_url and not youtube_video_id(media_url):
                logger.warning(f"Dropping non-YouTube media URL for {item.tx_hash}")
                media_url = ""

            return OverlayPayload(
                amount=format_amount(item.amount_in_raw, decimals),
                donorAddress=donor_address,
                donorName=donor_name,
                message=(donation.message if donation else None) or item.message or "",
                sounds=[self.alert_sound_url] if self.alert_sound_url else [],
                streamerName=streamer_name,
                tokenSymbol=token.symbol if token else "",
                tokenLogo=(token.logo_uri if token else None) or "",
                txHash=item.tx_hash,
                mediaType=media_type,
                mediaUrl=media_url,
                mediaDuration=(donation.media_duration if donation else None) or 0,
                usdValue=float(donation.amount_in_usd) if donation and donation.amount_in_usd else 0.0,
            )

    def mark(self, item_id: str, status: OverlayStatus) -> None:
        with self.db.session() as session:
            LedgerService(session).set_item_status(item_id, status)

    async def process_item(self, item: WorkItem) -> bool:
        """Deliver one work item; True when it ended DISPLAYED"""
        try:
            payload = await asyncio.to_thread(self.build_payload, item)
            delivered = await self.fanout.broadcast(item.streamer_id, payload)
            await asyncio.to_thread(self.mark, item.id, OverlayStatus.DISPLAYED)
            logger.info(f"Overlay {item.id} displayed on {delivered} connection(s)")
            return True
        except Exception as e:
            logger.error(f"Error processing overlay {item.id}: {e}", exc_info=True)

        try:
            await asyncio.to_thread(self.mark, item.id, OverlayStatus.ON_PROCESS)
        except SQLAlchemyError as e:
            logger.error(f"Could not mark overlay {item.id} as {OverlayStatus.ON_PROCESS.value}: {e}")
        return False

    async def run_once(self) -> int:
        """Process one batch; returns the number of items displayed"""
        items = await asyncio.to_thread(self.fetch_batch)
        if not items:
            return 0
        logger.debug(f"Processing {len(items)} queued overlays")
        displayed = 0
        for item in items:
            if await self.process_item(item):
                displayed += 1
        return displayed

    async def run_forever(self) -> None:
        logger.info(
            f"Queue worker started (batch={self.batch_size}, interval={self.poll_interval}s)"
        )
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.error(f"Error in queue polling loop: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in queue polling loop: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue worker stopped")

    def stop(self) -> None:
        self._stopping.set()


def redrive(database: Database, from_status: OverlayStatus = OverlayStatus.ON_PROCESS) -> int:
    """Move failed work items back to PENDING"""
    with database.session() as session:
        count = LedgerService(session).redrive(from_status)
    logger.info(f"Re-drove {count} overlay item(s) from {from_status.value}")
    return count
