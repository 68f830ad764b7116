#!/usr/bin/env python3
"""
test_decoder.py - Frame decoder test suite

Tests:
- Checksum and frame layout
- Acceptance with and without checksum verification
- Parameter and waveform parsing, sentinel values
- Resynchronization after garbage and corrupted frames
- Buffer carry-over across calls and wire ordering
- FrameDecoder garbage bound
"""

import unittest

from oxysmart.data.models import Reading
from oxysmart.ble.decoder import decode, FrameDecoder
from oxysmart.ble.protocol import (
    FRAME_HEADER, TOKEN_DATA, TYPE_PARAMS, MAX_FRAME_LENGTH,
    crc8, crc8_maxim, build_frame, build_params_frame, build_waveform_frame,
)

FRAME_A = build_params_frame(97, 72, 25)
FRAME_B = build_params_frame(98, 70, 30)
READING_A = Reading(spo2=97, pulse_rate=72, perfusion_index=2.5)
READING_B = Reading(spo2=98, pulse_rate=70, perfusion_index=3.0)

# No start marker anywhere, no trailing 0xaa
GARBAGE = bytes([0x01, 0x02, 0xff, 0x55, 0x10, 0x00, 0x0f, 0x08])


class TestProtocol(unittest.TestCase):
    """Checksum and frame builders."""

    def test_01_crc8_check_value(self):
        """CRC-8 (poly 0x07, init 0) standard check value."""
        self.assertEqual(crc8(b"123456789"), 0xf4)
        self.assertEqual(crc8(b""), 0x00)

    def test_02_params_frame_layout(self):
        """Parameter frames start with aa 55 0f 08 01 then SpO2 and pulse rate."""
        self.assertEqual(FRAME_A[:5], bytes([0xaa, 0x55, 0x0f, 0x08, 0x01]))
        self.assertEqual(FRAME_A[5], 97)
        self.assertEqual(FRAME_A[6], 72)
        self.assertEqual(len(FRAME_A), 12)
        self.assertEqual(FRAME_A[-1], crc8(FRAME_A[:-1]))

    def test_03_build_frame_rejects_oversized_payload(self):
        with self.assertRaises(ValueError):
            build_frame(TYPE_PARAMS, bytes(MAX_FRAME_LENGTH))


class TestParsing(unittest.TestCase):
    """Field extraction from single frames."""

    def test_01_params(self):
        result = decode(b'', FRAME_A)
        self.assertEqual(result.readings, [READING_A])
        self.assertEqual(result.buffer, b'')
        self.assertEqual(result.discarded, 0)
        self.assertEqual(result.malformed, 0)

    def test_02_pulse_rate_is_16_bit(self):
        result = decode(b'', build_params_frame(95, 260, 10))
        self.assertEqual(result.readings[0].pulse_rate, 260)

    def test_03_no_finger_is_sentinel_not_error(self):
        """All-zero parameters decode to a reading with no values."""
        result = decode(b'', build_params_frame(0, 0, 0))
        self.assertEqual(result.readings, [Reading()])
        self.assertFalse(result.readings[0].has_vitals)
        self.assertEqual(result.malformed, 0)

    def test_04_out_of_range_values_become_none(self):
        result = decode(b'', build_params_frame(127, 511, 5))
        reading = result.readings[0]
        self.assertIsNone(reading.spo2)
        self.assertIsNone(reading.pulse_rate)
        self.assertEqual(reading.perfusion_index, 0.5)

    def test_05_waveform_samples(self):
        """One reading per sample, bit 7 is the beat flag."""
        result = decode(b'', build_waveform_frame([0x10, 0x90, 0x7f]))
        self.assertEqual(result.readings, [
            Reading(waveform=0x10, pulse_beat=False),
            Reading(waveform=0x10, pulse_beat=True),
            Reading(waveform=0x7f, pulse_beat=False),
        ])
        self.assertTrue(all(r.is_waveform for r in result.readings))

    def test_06_unknown_type_with_valid_checksum_consumed(self):
        frame = build_frame(0x05, b'\x01\x02')
        result = decode(b'', frame + FRAME_A, checksum=crc8)
        self.assertEqual(result.readings, [READING_A])
        self.assertEqual(result.malformed, 0)
        self.assertEqual(result.buffer, b'')

    def test_07_unknown_token_with_valid_checksum_consumed(self):
        frame = build_frame(TYPE_PARAMS, bytes([97, 72, 0, 25, 0, 0]), token=0xf0)
        result = decode(b'', frame, checksum=crc8)
        self.assertEqual(result.readings, [])
        self.assertEqual(result.buffer, b'')

    def test_08_short_params_payload(self):
        result = decode(b'', build_frame(TYPE_PARAMS, b'\x61\x48'))
        self.assertEqual(result.readings, [])
        self.assertEqual(result.buffer, b'')


class TestChecksum(unittest.TestCase):
    """Frame acceptance with and without checksum verification."""

    def test_01_crc8_maxim_check_value(self):
        self.assertEqual(crc8_maxim(b"123456789"), 0xa1)
        self.assertEqual(crc8_maxim(b""), 0x00)

    def test_02_unverified_by_default(self):
        """Frames with a CRC-8/MAXIM trailer decode without any checksum selected."""
        frame = build_params_frame(97, 72, 25, checksum=crc8_maxim)
        self.assertEqual(frame[:-1], bytes.fromhex("aa550f080161480019" "0000"))

        result = decode(b'', frame * 3)
        self.assertEqual(result.readings, [READING_A] * 3)
        self.assertEqual(result.malformed, 0)
        self.assertEqual(result.buffer, b'')

    def test_03_foreign_trailer_byte(self):
        """Any trailing byte is fine unverified; crc8 rejects a mismatch."""
        frame = FRAME_A[:-1] + bytes([FRAME_A[-1] ^ 0xff])
        self.assertEqual(decode(b'', frame).readings, [READING_A])

        result = decode(b'', frame, checksum=crc8)
        self.assertEqual(result.readings, [])
        self.assertEqual(result.malformed, 1)

    def test_04_selected_checksum(self):
        frame = build_params_frame(97, 72, 25, checksum=crc8_maxim)
        self.assertEqual(decode(b'', frame, checksum=crc8_maxim).readings, [READING_A])

        corrupt = frame[:-1] + bytes([frame[-1] ^ 0x01])
        frame_b = build_params_frame(98, 70, 30, checksum=crc8_maxim)
        result = decode(b'', corrupt + frame_b, checksum=crc8_maxim)
        self.assertEqual(result.readings, [READING_B])
        self.assertEqual(result.malformed, 1)

    def test_05_unverified_rejects_unknown_type(self):
        """Without a checksum, only known frame types count as a frame."""
        frame = build_frame(0x05, b'\x01\x02')
        result = decode(b'', frame + FRAME_A)
        self.assertEqual(result.readings, [READING_A])
        self.assertEqual(result.malformed, 1)
        self.assertEqual(result.discarded, len(frame))

    def test_06_unverified_rejects_unknown_token(self):
        frame = build_frame(TYPE_PARAMS, bytes([97, 72, 0, 25, 0, 0]), token=0xf0)
        result = decode(b'', frame + FRAME_B)
        self.assertEqual(result.readings, [READING_B])
        self.assertEqual(result.malformed, 1)

    def test_07_frame_decoder_uses_checksum(self):
        corrupt = FRAME_A[:-1] + bytes([FRAME_A[-1] ^ 0xff])
        self.assertEqual(FrameDecoder().feed(corrupt), [READING_A])

        decoder = FrameDecoder(checksum=crc8)
        self.assertEqual(decoder.feed(corrupt), [])
        self.assertEqual(decoder.frames_rejected, 1)


class TestResync(unittest.TestCase):
    """Recovery from garbage and corrupted frames."""

    def test_01_garbage_then_frames_then_partial(self):
        """[garbage][A][B missing last byte] -> [A], then the last byte -> [B]."""
        first = decode(b'', GARBAGE + FRAME_A + FRAME_B[:-1])
        self.assertEqual(first.readings, [READING_A])
        self.assertEqual(first.buffer, FRAME_B[:-1])
        self.assertEqual(first.discarded, len(GARBAGE))

        second = decode(first.buffer, FRAME_B[-1:])
        self.assertEqual(second.readings, [READING_B])
        self.assertEqual(second.buffer, b'')

    def test_02_bad_checksum_never_emits(self):
        corrupt = FRAME_A[:-1] + bytes([FRAME_A[-1] ^ 0xff])
        result = decode(b'', corrupt + FRAME_B, checksum=crc8)
        self.assertEqual(result.readings, [READING_B])
        self.assertEqual(result.malformed, 1)

    def test_03_bad_length_byte(self):
        for bad_length in (0x00, 0x01, MAX_FRAME_LENGTH + 1, 0xff):
            with self.subTest(length=bad_length):
                corrupt = FRAME_HEADER + bytes([TOKEN_DATA, bad_length])
                result = decode(b'', corrupt + FRAME_A)
                self.assertEqual(result.readings, [READING_A])
                self.assertEqual(result.malformed, 1)

    def test_04_valid_frame_inside_corrupt_candidate(self):
        """A valid frame overlapping a corrupted one is still recovered."""
        head = FRAME_HEADER + bytes([TOKEN_DATA, MAX_FRAME_LENGTH])
        body = head + FRAME_B + bytes(MAX_FRAME_LENGTH - len(FRAME_B) - 1)
        stream = body + bytes([crc8(body) ^ 0xff])

        for checksum in (None, crc8):
            with self.subTest(checksum=checksum):
                result = decode(b'', stream, checksum=checksum)
                self.assertEqual(result.readings, [READING_B])
                self.assertGreaterEqual(result.malformed, 1)

    def test_05_all_garbage(self):
        """No marker: nothing emitted, everything discarded."""
        garbage = bytes(range(256)) * 4
        result = decode(b'', garbage)
        self.assertEqual(result.readings, [])
        self.assertEqual(result.buffer, b'')
        self.assertEqual(result.discarded, len(garbage))

    def test_06_trailing_marker_byte_kept(self):
        result = decode(b'', GARBAGE + b'\xaa')
        self.assertEqual(result.buffer, b'\xaa')
        result = decode(result.buffer, FRAME_A[1:])
        self.assertEqual(result.readings, [READING_A])

    def test_07_interleaved_corruption(self):
        stream = (GARBAGE + FRAME_A + b'\xaa\x55\x0f' + GARBAGE + FRAME_B
                  + FRAME_A[:3] + FRAME_A)
        result = decode(b'', stream)
        self.assertEqual(result.readings, [READING_A, READING_B, READING_A])


class TestBuffering(unittest.TestCase):
    """Carry-over across calls."""

    def test_01_split_at_every_boundary(self):
        """Splitting a frame anywhere yields the same reading as one call."""
        for i in range(len(FRAME_A) + 1):
            with self.subTest(split=i):
                first = decode(b'', FRAME_A[:i])
                second = decode(first.buffer, FRAME_A[i:])
                self.assertEqual(first.readings + second.readings, [READING_A])
                self.assertEqual(second.buffer, b'')

    def test_02_byte_by_byte_ordering(self):
        wave = build_waveform_frame([1, 2])
        stream = FRAME_A + wave + FRAME_B
        buffer = b''
        readings = []
        for b in stream:
            result = decode(buffer, bytes([b]))
            buffer = result.buffer
            readings.extend(result.readings)

        self.assertEqual(readings, [
            READING_A,
            Reading(waveform=1),
            Reading(waveform=2),
            READING_B,
        ])


class TestFrameDecoder(unittest.TestCase):
    """Per-session decoder wrapper."""

    def test_01_feed_carries_buffer(self):
        decoder = FrameDecoder()
        self.assertEqual(decoder.feed(FRAME_A[:5]), [])
        self.assertEqual(decoder.buffer, FRAME_A[:5])
        self.assertEqual(decoder.feed(FRAME_A[5:]), [READING_A])
        self.assertEqual(decoder.buffer, b'')

    def test_02_garbage_run_and_exhaustion(self):
        decoder = FrameDecoder(max_garbage=len(GARBAGE) * 2)
        decoder.feed(GARBAGE)
        decoder.feed(GARBAGE)
        self.assertEqual(decoder.garbage_run, len(GARBAGE) * 2)
        self.assertFalse(decoder.exhausted)

        decoder.feed(GARBAGE)
        self.assertTrue(decoder.exhausted)

    def test_03_valid_frame_resets_garbage_run(self):
        decoder = FrameDecoder(max_garbage=100)
        decoder.feed(GARBAGE)
        self.assertEqual(decoder.feed(FRAME_A), [READING_A])
        self.assertEqual(decoder.garbage_run, 0)
        self.assertEqual(decoder.bytes_discarded, len(GARBAGE))

    def test_04_reset(self):
        decoder = FrameDecoder()
        decoder.feed(GARBAGE + FRAME_A[:3])
        decoder.reset()
        self.assertEqual(decoder.buffer, b'')
        self.assertEqual(decoder.garbage_run, 0)


if __name__ == "__main__":
    unittest.main()
