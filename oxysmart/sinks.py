"""
OxySmart Reading Sinks and Raw Captures

Sinks are plain callables taking one Reading. CsvSink reproduces the
classic `time,spo2,heartrate` console output; JsonLinesSink writes one
object per line. RawCapture records the undecoded notification stream so
it can be replayed through the decoder later.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TextIO

from oxysmart.data.models import Reading

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CsvSink:
    """Write readings as CSV rows with a UTC timestamp."""

    HEADER = "time,spo2,heartrate"
    WAVEFORM_HEADER = "time,spo2,heartrate,pi,waveform,beat"

    def __init__(self, stream: Optional[TextIO] = None, include_waveform: bool = False,
                 show_null: bool = False, clock: Callable[[], str] = _now_iso):
        self.stream = stream or sys.stdout
        self.include_waveform = include_waveform
        self.show_null = show_null
        self.clock = clock
        self._header_written = False

    def _write(self, line: str):
        if not self._header_written:
            header = self.WAVEFORM_HEADER if self.include_waveform else self.HEADER
            self.stream.write(header + "\n")
            self._header_written = True
        self.stream.write(line + "\n")
        self.stream.flush()

    def __call__(self, reading: Reading):
        if reading.is_waveform:
            if self.include_waveform:
                self._write(f"{self.clock()},,,,{reading.waveform},{int(reading.pulse_beat)}")
            return

        if not reading.has_vitals and not self.show_null:
            log.debug("Suppressing null data")
            return

        spo2 = "" if reading.spo2 is None else reading.spo2
        hr = "" if reading.pulse_rate is None else reading.pulse_rate
        if self.include_waveform:
            pi = "" if reading.perfusion_index is None else reading.perfusion_index
            self._write(f"{self.clock()},{spo2},{hr},{pi},,")
        else:
            self._write(f"{self.clock()},{spo2},{hr}")


class JsonLinesSink:
    """Write each reading as a JSON object on its own line."""

    def __init__(self, stream: Optional[TextIO] = None, include_waveform: bool = False,
                 show_null: bool = False, clock: Callable[[], str] = _now_iso):
        self.stream = stream or sys.stdout
        self.include_waveform = include_waveform
        self.show_null = show_null
        self.clock = clock

    def __call__(self, reading: Reading):
        if reading.is_waveform and not self.include_waveform:
            return
        if not reading.is_waveform and not reading.has_vitals and not self.show_null:
            log.debug("Suppressing null data")
            return

        record = {"time": self.clock(), **reading.to_dict()}
        self.stream.write(json.dumps(record) + "\n")
        self.stream.flush()


# ============================================================================
# Raw capture
# ============================================================================

class RawCapture:
    """Append raw notification payloads to a text file.

    Format: one `timestamp|hex_data` line per chunk, `#` lines are comments.
    """

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists()
        self._file = open(self.path, 'a')
        if new_file:
            self._file.write("# OxySmart Raw Capture\n")
            self._file.write(f"# Started: {_now_iso()}\n")
            self._file.write("#\n")
            self._file.write("# Format: timestamp|hex_data\n")
            self._file.write("#\n")
        self.chunks = 0

    def __call__(self, data: bytes):
        self._file.write(f"{_now_iso()}|{data.hex()}\n")
        self._file.flush()
        self.chunks += 1

    def close(self):
        if not self._file.closed:
            self._file.close()
            log.info(f"Saved {self.chunks} raw chunks to {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def read_capture(path) -> Iterator[bytes]:
    """Yield the chunks of a capture file in order.

    Plain hex lines (no timestamp) are accepted too, spaces allowed.
    """
    with open(path, 'r') as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            hex_data = line.rsplit('|', 1)[-1].replace(' ', '')
            try:
                chunk = bytes.fromhex(hex_data)
            except ValueError:
                raise ValueError(f"{path}:{lineno}: not a hex payload: {hex_data!r}") from None
            yield chunk
