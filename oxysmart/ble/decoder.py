"""
OxySmart Frame Decoder

Turns the unframed notification byte stream into Readings.

decode() is pure: the carried-over buffer goes in and comes back out, so a
new Session can start from an empty buffer with no state leaking across a
reconnect. FrameDecoder is the per-Session holder of that buffer.

The trailing checksum byte is only verified when a checksum function is
given. Without one, a candidate frame is accepted on its marker, length,
data token and a known frame type.
"""

import logging
import struct
from typing import Callable, List, NamedTuple, Optional

from oxysmart.data.models import Reading
from oxysmart.ble.protocol import (
    FRAME_HEADER, HEADER_SIZE, MIN_FRAME_LENGTH, MAX_FRAME_LENGTH,
    TOKEN_DATA, TYPE_PARAMS, TYPE_WAVEFORM, FRAME_TYPES,
    PARAMS_FORMAT, PARAMS_MIN_PAYLOAD,
    WAVEFORM_VALUE_MASK, WAVEFORM_BEAT_FLAG, SPO2_RANGE, PULSE_RATE_RANGE,
    DEFAULT_MAX_GARBAGE, format_hex, get_frame_type_name,
)

log = logging.getLogger(__name__)

Checksum = Callable[[bytes], int]


class DecodeResult(NamedTuple):
    """Outcome of one decode() call."""
    buffer: bytes            # unconsumed tail, feed it to the next call
    readings: List[Reading]  # in wire order
    discarded: int           # bytes dropped while resynchronizing
    malformed: int           # candidate frames rejected


def _in_range(value: int, bounds) -> bool:
    low, high = bounds
    return low <= value <= high


def parse_params(payload: bytes) -> List[Reading]:
    """Parse a parameter payload (bytes after the type byte, checksum excluded)."""
    if len(payload) < PARAMS_MIN_PAYLOAD:
        log.debug(f"Parameter payload too short: {format_hex(payload)}")
        return []

    spo2, pulse_rate, pi = struct.unpack_from(PARAMS_FORMAT, payload)

    return [Reading(
        spo2=spo2 if _in_range(spo2, SPO2_RANGE) else None,
        pulse_rate=pulse_rate if _in_range(pulse_rate, PULSE_RATE_RANGE) else None,
        perfusion_index=pi / 10 if pi else None,
    )]


def parse_waveform(payload: bytes) -> List[Reading]:
    """Parse a waveform payload into one Reading per sample."""
    return [
        Reading(waveform=b & WAVEFORM_VALUE_MASK, pulse_beat=bool(b & WAVEFORM_BEAT_FLAG))
        for b in payload
    ]


def parse_frame(frame: bytes) -> List[Reading]:
    """Parse a complete, accepted frame.

    Frames the decoder has no reading for (other tokens or types) are
    consumed and produce nothing.
    """
    token = frame[2]
    frame_type = frame[HEADER_SIZE]
    payload = frame[HEADER_SIZE + 1:-1]

    if token != TOKEN_DATA:
        log.debug(f"Ignoring frame with token 0x{token:02x}: {format_hex(frame)}")
        return []
    if frame_type == TYPE_PARAMS:
        return parse_params(payload)
    if frame_type == TYPE_WAVEFORM:
        return parse_waveform(payload)

    log.debug(f"Ignoring {get_frame_type_name(frame_type)} frame: {format_hex(frame)}")
    return []


def _accept(frame: bytes, checksum: Optional[Checksum]) -> bool:
    if checksum is None:
        return frame[2] == TOKEN_DATA and frame[HEADER_SIZE] in FRAME_TYPES
    return checksum(frame[:-1]) == frame[-1]


def decode(buffer: bytes, data: bytes, checksum: Optional[Checksum] = None) -> DecodeResult:
    """Decode as many frames as possible from buffer + data.

    Bytes before the first start marker are discarded. A rejected candidate
    frame (bad length byte, or failing the acceptance check) loses only its
    first marker byte, then scanning resumes, so a valid frame overlapping a
    corrupted one is still found. Work is linear in the input length.

    Args:
        buffer: Tail returned by the previous call (b'' for a new session)
        data: Newly received notification payload
        checksum: Verifies the trailing byte, e.g. protocol.crc8. With None,
            only frames with the data token and a known type are accepted.

    Returns:
        DecodeResult with the new tail and the readings in wire order.
    """
    buf = bytes(buffer) + bytes(data)
    n = len(buf)
    pos = 0
    readings: List[Reading] = []
    discarded = 0
    malformed = 0

    while pos < n:
        start = buf.find(FRAME_HEADER, pos)
        if start < 0:
            # A lone trailing 0xaa may be the first half of the next marker
            keep = n - 1 if buf[n - 1] == FRAME_HEADER[0] else n
            discarded += keep - pos
            pos = keep
            break

        discarded += start - pos
        pos = start

        if n - pos < HEADER_SIZE:
            break

        length = buf[pos + 3]
        if not MIN_FRAME_LENGTH <= length <= MAX_FRAME_LENGTH:
            malformed += 1
            discarded += 1
            pos += 1
            continue

        end = pos + HEADER_SIZE + length
        if end > n:
            break

        frame = buf[pos:end]
        if not _accept(frame, checksum):
            malformed += 1
            discarded += 1
            pos += 1
            continue

        readings.extend(parse_frame(frame))
        pos = end

    return DecodeResult(buf[pos:], readings, discarded, malformed)


class FrameDecoder:
    """Holds one Session's decode buffer and resync bookkeeping."""

    def __init__(self, max_garbage: int = DEFAULT_MAX_GARBAGE,
                 checksum: Optional[Checksum] = None):
        self.buffer = b''
        self.max_garbage = max_garbage
        self.checksum = checksum

        # Bytes thrown away since the last valid frame
        self.garbage_run = 0

        self.frames_rejected = 0
        self.bytes_discarded = 0

    @property
    def exhausted(self) -> bool:
        """True once resynchronization has failed for too long."""
        return self.garbage_run > self.max_garbage

    def feed(self, data: bytes) -> List[Reading]:
        """Decode a notification payload, carrying the buffer forward."""
        pending = len(self.buffer) + len(data)
        result = decode(self.buffer, data, self.checksum)
        self.buffer = result.buffer

        if result.discarded or result.malformed:
            self.bytes_discarded += result.discarded
            self.frames_rejected += result.malformed
            log.debug(f"Resync: discarded {result.discarded} bytes, "
                      f"rejected {result.malformed} candidate frames")

        consumed = pending - len(result.buffer)
        if consumed > result.discarded:
            # At least one valid frame was taken off the stream
            self.garbage_run = 0
        else:
            self.garbage_run += result.discarded

        return result.readings

    def reset(self):
        self.buffer = b''
        self.garbage_run = 0
