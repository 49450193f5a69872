from datetime import datetime, timezone

import pytest
from eth_abi import encode

from kubi_pipeline.abis import (
    BRIDGED_DONATION_RECEIVED_EVENT, DONATION_BRIDGED_EVENT, DONATION_EVENT, WATCHED_TOPICS
)
from kubi_pipeline.models.events import EventKind
from kubi_pipeline.services.decoder import LogDecodeError, decode_log

DONOR = "0x" + "a" * 40
STREAMER = "0x" + "b" * 40
TOKEN_IN = "0x" + "c" * 40
TOKEN_OUT = "0x" + "d" * 40
CONTRACT = "0x4AB4a2290cB651065D346299425b2D45eEf9D75D"
MESSAGE_ID = bytes.fromhex("7f" * 32)


def topic(abi_type, value):
    return "0x" + encode([abi_type], [value]).hex()


def raw_log(topics, data, block=0x1a2b, log_index=3, **extra):
    log = {
        "address": CONTRACT,
        "topics": topics,
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "transactionHash": "0x" + "12" * 32,
        "logIndex": hex(log_index),
        "removed": False,
    }
    log.update(extra)
    return log


def test_topics_are_event_signature_hashes():
    assert DONATION_EVENT.signature == (
        "Donation(address,address,address,uint256,uint256,address,uint256,uint256)"
    )
    assert DONATION_BRIDGED_EVENT.signature == (
        "DonationBridged(address,address,uint32,address,uint256,bytes32)"
    )
    assert len(set(WATCHED_TOPICS)) == 3
    assert all(t.startswith("0x") and len(t) == 66 for t in WATCHED_TOPICS)


def test_decode_donation():
    data = encode(
        ["uint256", "uint256", "address", "uint256", "uint256"],
        [1_000_000, 2_500, TOKEN_OUT, 15_000_000, 1_740_830_400],
    )
    log = raw_log(
        [DONATION_EVENT.topic, topic("address", DONOR), topic("address", STREAMER), topic("address", TOKEN_IN)],
        data,
    )

    event = decode_log(log, 84532)

    assert event.kind == EventKind.DONATION
    assert event.chain_id == 84532
    assert event.contract_address == CONTRACT.lower()
    assert event.args["donor"] == DONOR
    assert event.args["streamer"] == STREAMER
    assert event.args["tokenIn"] == TOKEN_IN
    assert event.args["tokenOut"] == TOKEN_OUT
    assert event.args["amountIn"] == 1_000_000
    assert event.args["feeAmount"] == 2_500
    assert event.args["amountOutToStreamer"] == 15_000_000
    assert event.block_number == 0x1a2b
    assert event.log_index == 3
    assert event.block_timestamp == datetime.fromtimestamp(1_740_830_400, tz=timezone.utc)
    assert event.key == ("0x" + "12" * 32, 3)


def test_decode_bridge_events():
    send = decode_log(raw_log(
        [DONATION_BRIDGED_EVENT.topic, topic("address", DONOR), topic("address", STREAMER), topic("uint32", 5003)],
        encode(["address", "uint256", "bytes32"], [TOKEN_IN, 5_000_000, MESSAGE_ID]),
    ), 84532)
    receive = decode_log(raw_log(
        [BRIDGED_DONATION_RECEIVED_EVENT.topic, topic("uint32", 84532), topic("address", DONOR),
         topic("address", STREAMER)],
        encode(["address", "uint256", "bytes32"], [TOKEN_IN, 5_000_000, MESSAGE_ID]),
    ), 5003)

    assert send.kind == EventKind.BRIDGE_SEND
    assert send.args["destinationChain"] == 5003
    assert send.args["tokenBridged"] == TOKEN_IN
    assert send.block_timestamp is None
    assert receive.kind == EventKind.BRIDGE_RECEIVE
    assert receive.args["originChain"] == 84532
    assert receive.args["token"] == TOKEN_IN
    assert send.args["messageId"] == receive.args["messageId"] == "0x" + "7f" * 32


def test_unwatched_topic_is_ignored():
    log = raw_log(["0x" + "ff" * 32], b"")

    assert decode_log(log, 84532) is None
    assert decode_log(raw_log([], b""), 84532) is None


def test_truncated_payload_raises():
    log = raw_log(
        [DONATION_EVENT.topic, topic("address", DONOR), topic("address", STREAMER), topic("address", TOKEN_IN)],
        encode(["uint256"], [1]),
    )

    with pytest.raises(LogDecodeError):
        decode_log(log, 84532)


def test_missing_indexed_topic_raises():
    log = raw_log(
        [DONATION_EVENT.topic, topic("address", DONOR)],
        b"",
    )

    with pytest.raises(LogDecodeError):
        decode_log(log, 84532)


def donation_topics():
    return [DONATION_EVENT.topic, topic("address", DONOR), topic("address", STREAMER), topic("address", TOKEN_IN)]


def test_out_of_range_timestamp_raises():
    data = encode(
        ["uint256", "uint256", "address", "uint256", "uint256"],
        [1_000_000, 0, TOKEN_OUT, 1_000_000, 2 ** 255],
    )

    with pytest.raises(LogDecodeError):
        decode_log(raw_log(donation_topics(), data), 84532)


@pytest.mark.parametrize("field", ["transactionHash", "logIndex", "blockNumber", "address"])
def test_missing_log_field_raises(field):
    send = raw_log(
        [DONATION_BRIDGED_EVENT.topic, topic("address", DONOR), topic("address", STREAMER), topic("uint32", 5003)],
        encode(["address", "uint256", "bytes32"], [TOKEN_IN, 5_000_000, MESSAGE_ID]),
    )
    del send[field]

    with pytest.raises(LogDecodeError):
        decode_log(send, 84532)


def test_non_hex_data_raises():
    log = raw_log(donation_topics(), b"")
    log["data"] = "0xnot-hex"

    with pytest.raises(LogDecodeError):
        decode_log(log, 84532)
