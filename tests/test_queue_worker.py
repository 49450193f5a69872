import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from kubi_pipeline.models.db import Donation, DonationStatus, MediaType, OverlayStatus, QueueOverlay
from kubi_pipeline.queue_worker import NotificationQueueWorker, format_amount, redrive
from kubi_pipeline.services.ledger import LedgerService

from conftest import BASE_SEPOLIA, at


class RecordingFanout:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def broadcast(self, recipient_id, payload):
        if payload.txHash in self.fail_for:
            raise RuntimeError("push channel unavailable")
        self.sent.append((recipient_id, payload))
        return 1


def enqueue(database, seed, n, start=None):
    start = start or at(9)
    ids = []
    with database.session() as session:
        ledger = LedgerService(session)
        for i in range(n):
            item = ledger.enqueue_notification(
                streamer_id=seed.streamer_id,
                token_in_id=seed.usdc_base,
                amount_raw=str((i + 1) * 1_000_000),
                tx_hash=f"0x{i:064x}",
                timestamp=start + timedelta(seconds=i),
            )
            ids.append(item.id)
    return ids


def statuses(database):
    with database.session() as session:
        rows = session.execute(select(QueueOverlay)).scalars()
        return {row.tx_hash: row.status for row in rows}


@pytest.mark.parametrize("raw,decimals,expected", [
    ("1000000", 6, "1"),
    ("1234500000", 6, "1,234.5"),
    ("123456789", 6, "123.4568"),
    ("1", 18, "0"),
    ("25000000000000000000000", 18, "25,000"),
])
def test_format_amount(raw, decimals, expected):
    assert format_amount(raw, decimals) == expected


async def test_batch_with_one_failure(database, seed, monkeypatch):
    enqueue(database, seed, 10)
    fanout = RecordingFanout()
    worker = NotificationQueueWorker(database, fanout, batch_size=10)
    failing = f"0x{4:064x}"

    build = worker.build_payload

    def flaky_build(item):
        if item.tx_hash == failing:
            raise ValueError("token metadata unavailable")
        return build(item)

    monkeypatch.setattr(worker, "build_payload", flaky_build)

    displayed = await worker.run_once()

    assert displayed == 9
    result = statuses(database)
    assert result.pop(failing) == OverlayStatus.ON_PROCESS.value
    assert set(result.values()) == {OverlayStatus.DISPLAYED.value}
    assert len(fanout.sent) == 9


async def test_delivery_failure_marks_on_process(database, seed):
    [item_id] = enqueue(database, seed, 1)
    worker = NotificationQueueWorker(database, RecordingFanout(fail_for={f"0x{0:064x}"}))

    assert await worker.run_once() == 0
    assert statuses(database) == {f"0x{0:064x}": OverlayStatus.ON_PROCESS.value}


async def test_items_drained_oldest_first_in_bounded_batches(database, seed):
    enqueue(database, seed, 5, start=at(9))
    enqueue_late = at(8)
    with database.session() as session:
        LedgerService(session).enqueue_notification(
            streamer_id=seed.streamer_id, token_in_id=seed.usdc_base, amount_raw="1",
            tx_hash="0xearliest", timestamp=enqueue_late,
        )
    fanout = RecordingFanout()
    worker = NotificationQueueWorker(database, fanout, batch_size=3)

    assert await worker.run_once() == 3
    assert [p.txHash for _, p in fanout.sent] == ["0xearliest", f"0x{0:064x}", f"0x{1:064x}"]

    assert await worker.run_once() == 3
    assert await worker.run_once() == 0


async def test_payload_enrichment(database, seed):
    with database.session() as session:
        session.add(Donation(
            id="don-1", streamer_id=seed.streamer_id, donor_wallet=seed.donor,
            token_in_id=seed.usdc_base, token_out_id=seed.idrx_base,
            amount_in_raw="1234500000", amount_out_raw="1", fee_raw="0",
            tx_hash="0xfeed", log_index=0, block_number=1, chain_id=BASE_SEPOLIA,
            timestamp=at(9), status=DonationStatus.CONFIRMED.value,
            message="gg!", media_type=MediaType.IMAGE.value,
            media_url="https://cdn.kubi.com/cat.gif", media_duration=8, amount_in_usd=1234.5,
        ))
        LedgerService(session).enqueue_notification(
            streamer_id=seed.streamer_id, token_in_id=seed.usdc_base,
            amount_raw="1234500000", tx_hash="0xfeed", timestamp=at(9),
        )
    fanout = RecordingFanout()
    worker = NotificationQueueWorker(database, fanout, alert_sound_url="https://cdn.kubi.com/alert.mp3")

    await worker.run_once()

    [(recipient, payload)] = fanout.sent
    assert recipient == seed.streamer_id
    assert payload.type == "overlay"
    assert payload.amount == "1,234.5"
    assert payload.donorAddress == seed.donor
    assert payload.donorName == "alice"
    assert payload.streamerName == "bob_streams"
    assert payload.message == "gg!"
    assert payload.sounds == ["https://cdn.kubi.com/alert.mp3"]
    assert payload.tokenSymbol == "USDC"
    assert payload.tokenLogo == "https://cdn.kubi.com/usdc.png"
    assert payload.mediaType == "IMAGE"
    assert payload.mediaUrl == "https://cdn.kubi.com/cat.gif"
    assert payload.mediaDuration == 8
    assert payload.usdValue == 1234.5


async def test_payload_defaults_without_donation_row(database, seed):
    enqueue(database, seed, 1)
    fanout = RecordingFanout()
    worker = NotificationQueueWorker(database, fanout)

    await worker.run_once()

    [(_, payload)] = fanout.sent
    assert payload.donorName == "Anonymous"
    assert payload.donorAddress == ""
    assert payload.mediaType == "TEXT"
    assert payload.sounds == []
    assert payload.usdValue == 0.0


async def test_unsafe_media_url_is_blanked(database, seed):
    with database.session() as session:
        session.add(Donation(
            id="don-2", streamer_id=seed.streamer_id, donor_wallet=seed.donor,
            token_in_id=seed.usdc_base, token_out_id=seed.usdc_base,
            amount_in_raw="1", amount_out_raw="1", fee_raw="0",
            tx_hash="0xbad", log_index=0, block_number=1, chain_id=BASE_SEPOLIA,
            timestamp=at(9), status=DonationStatus.CONFIRMED.value,
            media_type=MediaType.IMAGE.value, media_url="http://evil.example/x.png",
        ))
        LedgerService(session).enqueue_notification(
            streamer_id=seed.streamer_id, token_in_id=seed.usdc_base,
            amount_raw="1", tx_hash="0xbad", timestamp=at(9),
        )
    fanout = RecordingFanout()

    await NotificationQueueWorker(database, fanout).run_once()

    assert fanout.sent[0][1].mediaUrl == ""


async def test_redrive_returns_failed_items(database, seed):
    enqueue(database, seed, 2)
    worker = NotificationQueueWorker(database, RecordingFanout(fail_for={f"0x{0:064x}", f"0x{1:064x}"}))
    await worker.run_once()

    assert redrive(database) == 2
    assert set(statuses(database).values()) == {OverlayStatus.PENDING.value}

    fanout = RecordingFanout()
    assert await NotificationQueueWorker(database, fanout).run_once() == 2


async def test_worker_loop_survives_unexpected_errors(database, seed, monkeypatch):
    enqueue(database, seed, 1)
    fanout = RecordingFanout()
    worker = NotificationQueueWorker(database, fanout, poll_interval=0.01)
    fetch = worker.fetch_batch
    attempts = []

    def flaky_fetch():
        attempts.append(len(attempts))
        if len(attempts) == 1:
            raise RuntimeError("unexpected row shape")
        return fetch()

    monkeypatch.setattr(worker, "fetch_batch", flaky_fetch)
    task = asyncio.create_task(worker.run_forever())
    for _ in range(300):
        if fanout.sent:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert len(attempts) >= 2
    assert len(fanout.sent) == 1
    assert statuses(database) == {f"0x{0:064x}": OverlayStatus.DISPLAYED.value}
