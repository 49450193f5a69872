"""SQLAlchemy models for the ledger database"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, BigInteger, JSON,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DonationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ORPHANED = "ORPHANED"


class OverlayStatus(str, enum.Enum):
    PENDING = "PENDING"
    DISPLAYED = "DISPLAYED"
    ON_PROCESS = "ON_PROCESS"


class YieldProviderStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DEPRECATED = "DEPRECATED"


class MediaType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    YOUTUBE = "YOUTUBE"


class User(Base):
    """
    Wallet owners known to the web application.
    Read-only reference data for the pipeline.
    """
    __tablename__ = 'users'

    id = Column(String, primary_key=True, default=new_id)
    wallet = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)


class Streamer(Base):
    """Donation recipients. Read-only reference data."""
    __tablename__ = 'streamers'

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey('users.id'), unique=True, nullable=False)


class Token(Base):
    """Token registry keyed by (chain_id, address). Read-only reference data."""
    __tablename__ = 'tokens'
    __table_args__ = (UniqueConstraint('chain_id', 'address', name='uq_tokens_chain_address'),)

    id = Column(String, primary_key=True, default=new_id)
    chain_id = Column(Integer, nullable=False)
    address = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    decimals = Column(Integer, nullable=False, default=18)
    logo_uri = Column(String, nullable=True)


class Donation(Base):
    """
    One on-chain donation log.

    (tx_hash, log_index) is the idempotency key: replaying a log never
    creates a second row. Bridged donations are stored as an origin row
    and a destination row sharing bridge_message_id.
    """
    __tablename__ = 'donations'
    __table_args__ = (
        UniqueConstraint('tx_hash', 'log_index', name='uq_donations_tx_log'),
        UniqueConstraint('bridge_message_id', 'chain_id', name='uq_donations_bridge_chain'),
        Index('ix_donations_chain_block', 'chain_id', 'block_number'),
    )

    id = Column(String, primary_key=True, default=new_id)
    streamer_id = Column(String, ForeignKey('streamers.id'), nullable=False, index=True)
    donor_wallet = Column(String, nullable=False)
    token_in_id = Column(String, ForeignKey('tokens.id'), nullable=False)
    token_out_id = Column(String, ForeignKey('tokens.id'), nullable=False)
    amount_in_raw = Column(String, nullable=False)
    amount_out_raw = Column(String, nullable=False)
    fee_raw = Column(String, nullable=False, default="0")
    tx_hash = Column(String, nullable=False, index=True)
    log_index = Column(Integer, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    chain_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default=DonationStatus.PENDING.value)

    is_bridged = Column(Boolean, nullable=False, default=False)
    bridge_message_id = Column(String, nullable=True, index=True)
    origin_chain_id = Column(Integer, nullable=True)
    parent_donation_id = Column(String, ForeignKey('donations.id'), nullable=True)

    # Written by the web application when the donor submits a message
    message = Column(String, nullable=True)
    media_type = Column(String(16), nullable=True)
    media_url = Column(String, nullable=True)
    media_duration = Column(Integer, nullable=True)
    amount_in_usd = Column(Float, nullable=True)


class QueueOverlay(Base):
    """
    Durable notification work item.
    Append-only: rows are status-transitioned, never deleted.
    """
    __tablename__ = 'queue_overlays'
    __table_args__ = (Index('ix_queue_overlays_status_ts', 'status', 'timestamp'),)

    id = Column(String, primary_key=True, default=new_id)
    streamer_id = Column(String, ForeignKey('streamers.id'), nullable=False)
    token_in_id = Column(String, ForeignKey('tokens.id'), nullable=False)
    amount_in_raw = Column(String, nullable=False)
    tx_hash = Column(String, nullable=False)
    message = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default=OverlayStatus.PENDING.value)


class YieldProvider(Base):
    """
    Yield provider configuration, managed by admin tooling.
    The pipeline only writes apr_updated_at / updated_at.
    """
    __tablename__ = 'yield_providers'

    id = Column(String, primary_key=True, default=new_id)
    chain_id = Column(Integer, nullable=False, index=True)
    protocol_name = Column(String, nullable=True)
    representative_token_id = Column(String, ForeignKey('tokens.id'), nullable=False)
    status = Column(String(16), nullable=False, default=YieldProviderStatus.ACTIVE.value)
    apr = Column(Float, nullable=True)
    apr_updated_at = Column(DateTime(timezone=True), nullable=True)
    extra_data = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
