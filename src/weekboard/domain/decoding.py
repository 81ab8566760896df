from __future__ import annotations

import logging
from typing import Iterable, Optional

from eth_utils import big_endian_to_int, decode_hex, int_to_big_endian, keccak

from .errors import DecodeError
from .models import Contribution, DecodedPayload, LogRecord
from .value_types import Address, PayloadLayout, Topic, WeekMs

logger = logging.getLogger(__name__)

ACTION_LOGGED_SIGNATURE = "ActionLogged(address,bytes32,uint256,bytes)"
WEEKLY_ADD_TAG = "WEEKLY_ADD"


def event_topic0(signature: str = ACTION_LOGGED_SIGNATURE) -> Topic:
    return Topic("0x" + keccak(text=signature).hex())


def action_tag_topic(tag: str = WEEKLY_ADD_TAG) -> Topic:
    raw = tag.encode()
    if len(raw) > 32:
        raise ValueError(f"tag longer than 32 bytes: {tag!r}")
    return Topic("0x" + raw.ljust(32, b"\x00").hex())


# --------- 32B word slicing ---------------------------------------------------
def _word(b: bytes, i: int) -> bytes: o = i*32; return b[o:o+32]
def _u256(w: bytes) -> int: return big_endian_to_int(w)
def _u256_word(n: int) -> bytes: return int_to_big_endian(n).rjust(32, b"\x00")


def _to_bytes(data_hex: str) -> bytes:
    if not data_hex:
        return b""
    h = data_hex[2:] if data_hex[:2].lower() == "0x" else data_hex
    if len(h) % 2:
        raise DecodeError("odd-length hex")
    try:
        return decode_hex(h)
    except ValueError as e:
        raise DecodeError(str(e)) from e


def decode_address_from_topic(topic: str) -> Address:
    t = topic[2:] if topic[:2].lower() == "0x" else topic
    if len(t) < 40:
        raise DecodeError(f"topic too short for an address: {topic!r}")
    return Address("0x" + t[-40:].lower())


def extract_bytes_param(data: bytes) -> bytes:
    """
    Pull the dynamic `bytes` argument out of ABI-encoded log data.
    Two historical layouts are live on-chain:
      A) bytes only:     [offset=32][length][bytes...]
      B) uint256, bytes: [timestamp][offset][length][bytes...]
    """
    if len(data) < 64:
        raise DecodeError("data shorter than two words")
    w0 = _u256(_word(data, 0))
    w1 = _u256(_word(data, 1))
    if w0 == 32:
        len_pos = 32
    else:
        len_pos = w1
    if len_pos + 32 > len(data):
        raise DecodeError("length word out of range")
    length = _u256(data[len_pos:len_pos+32])
    start = len_pos + 32
    end = start + length
    if end > len(data):
        raise DecodeError("bytes payload runs past end of data")
    return data[start:end]


def decode_points_and_week(payload: bytes) -> DecodedPayload:
    # payload: uint256 points, uint256 weekStartMs
    if len(payload) < 64:
        raise DecodeError("payload shorter than two words")
    return DecodedPayload(points=_u256(_word(payload, 0)), week_ms=_u256(_word(payload, 1)))


def decode_payload(data_hex: str) -> Optional[DecodedPayload]:
    """Decode a log's `data`; None on anything malformed."""
    try:
        return decode_points_and_week(extract_bytes_param(_to_bytes(data_hex)))
    except DecodeError as e:
        logger.debug("skip undecodable payload: %s", e)
        return None


def decode_log(log: LogRecord, tracked_weeks: Iterable[int]) -> Optional[Contribution]:
    """Map one ActionLogged log to an address contribution for a tracked week."""
    if len(log.topics) < 2:
        logger.debug("skip log without user topic tx=%s idx=%s", log.tx_hash, log.log_index)
        return None
    dec = decode_payload(log.data_hex)
    if dec is None:
        return None
    if dec.week_ms not in set(tracked_weeks):
        logger.debug("skip out-of-window week=%s tx=%s", dec.week_ms, log.tx_hash)
        return None
    try:
        user = decode_address_from_topic(log.topics[1])
    except DecodeError as e:
        logger.debug("skip bad user topic: %s", e)
        return None
    return Contribution(address=user, points=dec.points, week_ms=WeekMs(dec.week_ms))


def encode_payload(
    points: int,
    week_ms: int,
    *,
    layout: PayloadLayout = "bytes",
    timestamp: int = 0,
) -> str:
    """Inverse of `decode_payload`, for either layout. Returns 0x-hex log data."""
    if points < 0 or week_ms < 0:
        raise ValueError("points and week_ms must be non-negative")
    payload = _u256_word(points) + _u256_word(week_ms)
    tail = _u256_word(len(payload)) + payload
    if layout == "bytes":
        data = _u256_word(32) + tail
    elif layout == "timestamped":
        if timestamp == 32:
            raise ValueError("timestamp 32 is indistinguishable from the bytes-only layout")
        data = _u256_word(timestamp) + _u256_word(64) + tail
    else:
        raise ValueError(f"unknown layout: {layout!r}")
    return "0x" + data.hex()
