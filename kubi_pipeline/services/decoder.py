"""Raw log decoding into ChainEvent records"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from kubi_pipeline.abis import EVENTS_BY_TOPIC, EventSpec
from kubi_pipeline.models.events import ChainEvent, EventKind

logger = logging.getLogger(__name__)


class LogDecodeError(ValueError):
    """A log matched a watched topic but its payload could not be decoded"""
    pass


def to_hex(value: Any) -> str:
    """Hex string with 0x prefix from str, bytes or HexBytes"""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16) if str(value).startswith("0x") else int(value)


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(str(value).removeprefix("0x"))


def _normalize(value: Any, abi_type: str) -> Any:
    if abi_type == "address":
        return value.lower()
    if abi_type.startswith("bytes"):
        return "0x" + value.hex()
    return value


def _decode_args(spec: EventSpec, topics: list, data: Any) -> Dict[str, Any]:
    indexed = spec.indexed
    if len(topics) - 1 != len(indexed):
        raise LogDecodeError(
            f"{spec.kind.value}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
        )

    args: Dict[str, Any] = {}
    try:
        for (name, abi_type), topic in zip(indexed, topics[1:]):
            (value,) = decode([abi_type], _to_bytes(topic))
            args[name] = _normalize(value, abi_type)

        names = [n for n, _ in spec.data]
        types = [t for _, t in spec.data]
        for name, abi_type, value in zip(names, types, decode(types, _to_bytes(data))):
            args[name] = _normalize(value, abi_type)
    except (DecodingError, ValueError, TypeError) as e:
        raise LogDecodeError(f"{spec.kind.value}: {e}") from e
    return args


def decode_log(log: Dict[str, Any], chain_id: int) -> Optional[ChainEvent]:
    """
    Decode an eth_getLogs / eth_subscription log entry.

    Args:
        log: Raw log with hex string or bytes fields
        chain_id: Network the log was observed on

    Returns:
        ChainEvent, or None when topic0 is not a watched event

    Raises:
        LogDecodeError: If a watched event has a malformed payload
    """
    topics = [to_hex(t) for t in log.get("topics", [])]
    if not topics:
        return None

    spec = EVENTS_BY_TOPIC.get(topics[0])
    if spec is None:
        return None

    args = _decode_args(spec, topics, log.get("data", "0x"))

    try:
        block_timestamp = None
        if spec.kind == EventKind.DONATION:
            block_timestamp = datetime.fromtimestamp(args["timestamp"], tz=timezone.utc)

        return ChainEvent(
            chain_id=chain_id,
            contract_address=to_hex(log["address"]),
            kind=spec.kind,
            topic=topics[0],
            args=args,
            tx_hash=to_hex(log["transactionHash"]),
            log_index=to_int(log["logIndex"]),
            block_number=to_int(log["blockNumber"]),
            block_timestamp=block_timestamp,
        )
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        raise LogDecodeError(f"{spec.kind.value}: malformed log field: {e!r}") from e
