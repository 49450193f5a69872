from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from kubi_pipeline.config import NetworkSettings, Settings
from kubi_pipeline.db import Database
from kubi_pipeline.models.db import Streamer, Token, User
from kubi_pipeline.models.events import ChainEvent, EventKind

BASE_SEPOLIA = 84532
MANTLE_SEPOLIA = 5003

DONOR = "0x" + "a" * 40
STREAMER_WALLET = "0x" + "b" * 40
USDC = "0x" + "c" * 40
IDRX = "0x" + "d" * 40
CONTRACT = "0x" + "e" * 40


@pytest.fixture
def database():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database = Database()
    database.init_engine(engine)
    yield database
    database.dispose()


@pytest.fixture
def seed(database):
    """Streamer, donor and tokens on both test networks"""
    with database.session() as session:
        donor = User(id="user-donor", wallet=DONOR, display_name="alice")
        owner = User(id="user-streamer", wallet=STREAMER_WALLET, display_name="bob_streams")
        streamer = Streamer(id="streamer-1", user_id=owner.id)
        tokens = [
            Token(id="usdc-base", chain_id=BASE_SEPOLIA, address=USDC, symbol="USDC", decimals=6,
                  logo_uri="https://cdn.kubi.com/usdc.png"),
            Token(id="idrx-base", chain_id=BASE_SEPOLIA, address=IDRX, symbol="IDRX", decimals=2),
            Token(id="usdc-mantle", chain_id=MANTLE_SEPOLIA, address=USDC, symbol="USDC", decimals=6),
        ]
        session.add_all([donor, owner, streamer, *tokens])

    return SimpleNamespace(
        donor=DONOR,
        streamer_wallet=STREAMER_WALLET,
        streamer_id="streamer-1",
        usdc_base="usdc-base",
        idrx_base="idrx-base",
        usdc_mantle="usdc-mantle",
    )


def at(hour, minute=0, second=0):
    return datetime(2025, 3, 1, hour, minute, second, tzinfo=timezone.utc)


def make_event(kind=EventKind.DONATION, chain_id=BASE_SEPOLIA, tx_hash="0x" + "01" * 32,
               log_index=0, block_number=100, block_timestamp=None, **args):
    return ChainEvent(
        chain_id=chain_id,
        contract_address=CONTRACT,
        kind=kind,
        topic="0x" + "00" * 32,
        args=args,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        block_timestamp=block_timestamp,
    )


def donation_event(amount_in=1_000_000, token_in=USDC, token_out=IDRX, streamer=STREAMER_WALLET,
                   block_timestamp=None, **kw):
    block_timestamp = block_timestamp or at(12)
    return make_event(
        EventKind.DONATION,
        donor=DONOR,
        streamer=streamer,
        tokenIn=token_in,
        amountIn=amount_in,
        feeAmount=10_000,
        tokenOut=token_out,
        amountOutToStreamer=15_000_000,
        timestamp=int(block_timestamp.timestamp()),
        block_timestamp=block_timestamp,
        **kw,
    )


def bridge_send_event(message_id, amount=5_000_000, **kw):
    kw.setdefault("chain_id", BASE_SEPOLIA)
    return make_event(
        EventKind.BRIDGE_SEND,
        donor=DONOR,
        streamer=STREAMER_WALLET,
        destinationChain=MANTLE_SEPOLIA,
        tokenBridged=USDC,
        amount=amount,
        messageId=message_id,
        **kw,
    )


def bridge_receive_event(message_id, amount=5_000_000, **kw):
    kw.setdefault("chain_id", MANTLE_SEPOLIA)
    return make_event(
        EventKind.BRIDGE_RECEIVE,
        originChain=BASE_SEPOLIA,
        donor=DONOR,
        streamer=STREAMER_WALLET,
        token=USDC,
        amount=amount,
        messageId=message_id,
        **kw,
    )


@pytest.fixture
def network():
    return NetworkSettings(
        chain_id=BASE_SEPOLIA,
        name="Base Sepolia",
        contract_address=CONTRACT,
        rpc_urls=["https://rpc.example"],
    )


@pytest.fixture
def settings(network):
    return Settings(
        _env_file=None,
        NETWORKS=[network],
        WATCHER_BLOCK_CHUNK=10,
        WATCHER_REPLAY_BLOCKS=50,
        WATCHER_POLL_INTERVAL=0.01,
    )
