"""Event handler: turns decoded chain events into ledger records"""
import enum
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from kubi_pipeline.db import Database
from kubi_pipeline.models.db import Donation, DonationStatus, utcnow
from kubi_pipeline.models.events import ChainEvent, EventKind
from kubi_pipeline.services.ledger import LedgerService

logger = logging.getLogger(__name__)


class HandleResult(str, enum.Enum):
    STORED = "stored"
    REPLAYED = "replayed"
    DROPPED = "dropped"
    FAILED = "failed"


class EventHandler:
    """
    Persists donation events idempotently and enqueues notifications.

    Each event is handled in its own transaction. Missing registry data
    drops the event; persistence errors are logged and the event is
    dropped, relying on watcher replay for recovery.
    """

    def __init__(self, database: Database):
        self.db = database
        self._handlers = {
            EventKind.DONATION: self._handle_donation,
            EventKind.BRIDGE_SEND: self._handle_bridge_send,
            EventKind.BRIDGE_RECEIVE: self._handle_bridge_receive,
        }

    def handle(self, event: ChainEvent) -> HandleResult:
        handler = self._handlers[event.kind]
        try:
            with self.db.session() as session:
                return handler(LedgerService(session), event)
        except SQLAlchemyError as e:
            logger.error(
                f"Dropping {event.kind.value} chain={event.chain_id} tx={event.tx_hash} "
                f"log={event.log_index}: database error: {e}"
            )
        except Exception as e:
            logger.error(
                f"Dropping {event.kind.value} chain={event.chain_id} tx={event.tx_hash}: {e}",
                exc_info=True
            )
        return HandleResult.FAILED

    @staticmethod
    def _event_time(event: ChainEvent) -> datetime:
        return event.block_timestamp or utcnow()

    def _base_values(self, event: ChainEvent, streamer_id: str) -> dict:
        return {
            'streamer_id': streamer_id,
            'donor_wallet': event.args['donor'].lower(),
            'tx_hash': event.tx_hash,
            'log_index': event.log_index,
            'block_number': event.block_number,
            'chain_id': event.chain_id,
            'timestamp': self._event_time(event),
        }

    def _resolve_streamer(self, ledger: LedgerService, event: ChainEvent) -> Optional[str]:
        streamer_id = ledger.find_streamer_id(event.args['streamer'])
        if not streamer_id:
            logger.warning(
                f"Streamer not found for wallet {event.args['streamer']} "
                f"({event.kind.value} tx={event.tx_hash}), dropping"
            )
        return streamer_id

    def _handle_donation(self, ledger: LedgerService, event: ChainEvent) -> HandleResult:
        args = event.args
        logger.info(f"Donation event: chain={event.chain_id} tx={event.tx_hash} log={event.log_index}")

        streamer_id = self._resolve_streamer(ledger, event)
        if not streamer_id:
            return HandleResult.DROPPED

        token_in = ledger.find_token(event.chain_id, args['tokenIn'])
        token_out = ledger.find_token(event.chain_id, args['tokenOut'])
        if not token_in or not token_out:
            logger.warning(
                f"Token not found on chain {event.chain_id}: {args['tokenIn']} or {args['tokenOut']}, dropping"
            )
            return HandleResult.DROPPED

        values = self._base_values(event, streamer_id)
        values.update(
            token_in_id=token_in.id,
            token_out_id=token_out.id,
            amount_in_raw=str(args['amountIn']),
            amount_out_raw=str(args['amountOutToStreamer']),
            fee_raw=str(args['feeAmount']),
            status=DonationStatus.CONFIRMED.value,
        )
        donation, created = ledger.insert_donation(values)

        if not created:
            ledger.set_donation_status(donation.id, DonationStatus.CONFIRMED)
            logger.info(f"Donation replayed, status refreshed: {donation.id}")
            return HandleResult.REPLAYED

        ledger.enqueue_notification(
            streamer_id=streamer_id,
            token_in_id=token_in.id,
            amount_raw=str(args['amountIn']),
            tx_hash=event.tx_hash,
            timestamp=values['timestamp'],
        )
        logger.info(f"Donation indexed and queued for overlay: {donation.id}")
        return HandleResult.STORED

    def _handle_bridge_send(self, ledger: LedgerService, event: ChainEvent) -> HandleResult:
        args = event.args
        message_id = args['messageId']
        logger.info(f"DonationBridged event: chain={event.chain_id} messageId={message_id}")
        ledger.lock_bridge_message(message_id)

        streamer_id = self._resolve_streamer(ledger, event)
        if not streamer_id:
            return HandleResult.DROPPED

        token = ledger.find_token(event.chain_id, args['tokenBridged'])
        if not token:
            logger.warning(f"Token not found on chain {event.chain_id}: {args['tokenBridged']}, dropping")
            return HandleResult.DROPPED

        values = self._base_values(event, streamer_id)
        values.update(
            token_in_id=token.id,
            token_out_id=token.id,
            amount_in_raw=str(args['amount']),
            amount_out_raw=str(args['amount']),
            fee_raw="0",
            status=DonationStatus.PENDING.value,
            is_bridged=True,
            bridge_message_id=message_id,
        )
        origin, created = ledger.insert_donation(values)

        # Receive side may have been indexed first
        destination = ledger.find_bridge_destination(message_id)
        if destination is not None:
            if destination.parent_donation_id is None:
                ledger.link_parent(destination.id, origin.id)
            self._confirm_origin(ledger, origin, destination.timestamp)

        logger.info(f"DonationBridged indexed: {origin.id} messageId={message_id}")
        return HandleResult.STORED if created else HandleResult.REPLAYED

    def _handle_bridge_receive(self, ledger: LedgerService, event: ChainEvent) -> HandleResult:
        args = event.args
        message_id = args['messageId']
        logger.info(f"BridgedDonationReceived: chain={event.chain_id} messageId={message_id}")
        ledger.lock_bridge_message(message_id)

        origin = ledger.find_bridge_origin(message_id)

        streamer_id = self._resolve_streamer(ledger, event)
        if not streamer_id:
            return HandleResult.DROPPED

        token = ledger.find_token(event.chain_id, args['token'])
        if not token:
            logger.warning(f"Token not found on chain {event.chain_id}: {args['token']}, dropping")
            return HandleResult.DROPPED

        values = self._base_values(event, streamer_id)
        values.update(
            token_in_id=token.id,
            token_out_id=token.id,
            amount_in_raw=str(args['amount']),
            amount_out_raw=str(args['amount']),
            fee_raw="0",
            status=DonationStatus.CONFIRMED.value,
            is_bridged=True,
            bridge_message_id=message_id,
            origin_chain_id=int(args['originChain']),
            parent_donation_id=origin.id if origin else None,
        )
        destination, created = ledger.insert_donation(values)

        if origin is None:
            logger.warning(
                f"Bridge origin for messageId={message_id} not indexed yet; "
                f"destination {destination.id} stored unlinked"
            )
        else:
            if destination.parent_donation_id is None:
                ledger.link_parent(destination.id, origin.id)
            self._confirm_origin(ledger, origin, values['timestamp'])

        logger.info(f"BridgedDonationReceived indexed: {destination.id}")
        return HandleResult.STORED if created else HandleResult.REPLAYED

    def _confirm_origin(self, ledger: LedgerService, origin: Donation, received_at: datetime) -> None:
        """Confirm a bridged origin and notify, exactly once per bridge message"""
        if not ledger.confirm_if_pending(origin.id):
            return
        ledger.enqueue_notification(
            streamer_id=origin.streamer_id,
            token_in_id=origin.token_in_id,
            amount_raw=origin.amount_in_raw,
            tx_hash=origin.tx_hash,
            timestamp=received_at,
        )
        logger.info(f"Bridged donation {origin.id} confirmed and queued for overlay")
