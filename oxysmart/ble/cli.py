#!/usr/bin/env python3
"""
OxySmart BLE CLI

Command-line interface for streaming readings from the oximeter.

Usage:
    # Stream SpO2 / pulse rate as CSV, reconnecting forever
    python -m oxysmart.ble.cli

    # Match a specific device and include the pleth waveform
    python -m oxysmart.ble.cli --address AA:BB:CC:DD:EE:FF --waveform

    # Record the raw notification stream while streaming
    python -m oxysmart.ble.cli --capture capture.txt

    # Decode a recorded capture offline
    python -m oxysmart.ble.cli --replay capture.txt

    # List nearby devices
    python -m oxysmart.ble.cli --scan
"""

import asyncio
import argparse
import logging
import signal
import sys
from functools import partial
from typing import Optional

from oxysmart.data.models import DeviceIdentity
from oxysmart.ble.adapter import BleakAdapter
from oxysmart.ble.decoder import FrameDecoder
from oxysmart.ble.protocol import (
    NOTIFY_CHAR_UUID, DEFAULT_NAME_FILTER, DEFAULT_ADAPTER,
    DEFAULT_SCAN_TIMEOUT, DEFAULT_CONNECT_TIMEOUT, DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_RETRY_DELAY, DEFAULT_MAX_RETRY_DELAY, DEFAULT_MAX_GARBAGE,
    DEFAULT_CHECKSUM, CHECKSUMS,
)
from oxysmart.ble.session import Session
from oxysmart.ble.supervisor import Supervisor, ExponentialBackoff
from oxysmart.sinks import CsvSink, JsonLinesSink, RawCapture, read_capture

log = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging to stderr and optionally a file.

    stdout is left to the reading sink.
    """
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    # Root logger stays at WARNING to keep library debug out
    root = logging.getLogger()
    root.setLevel(logging.WARNING)
    root.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file, mode='w')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    # Our loggers - full debug access
    logging.getLogger("oxysmart").setLevel(logging.DEBUG)

    # Suppress chatty libraries
    logging.getLogger("bleak").setLevel(logging.WARNING)
    logging.getLogger("dbus_fast").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='OxySmart pulse oximeter BLE monitor',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Actions
    parser.add_argument('--scan', action='store_true',
                        help='List nearby BLE devices and exit')
    parser.add_argument('--replay', metavar='FILE',
                        help='Decode a raw capture file instead of connecting')

    # Device
    parser.add_argument('--name', default=DEFAULT_NAME_FILTER,
                        help=f'Substring match on device name (default: {DEFAULT_NAME_FILTER})')
    parser.add_argument('--address',
                        help='Exact BLE address, overrides --name')
    parser.add_argument('--adapter', default=DEFAULT_ADAPTER,
                        help='BLE adapter, e.g. hci0 (default: platform default)')
    parser.add_argument('--char-uuid', default=NOTIFY_CHAR_UUID,
                        help='Notification characteristic UUID')
    parser.add_argument('--checksum', choices=sorted(CHECKSUMS), default=DEFAULT_CHECKSUM,
                        help='Verify the trailing frame byte with this checksum (default: none)')

    # Timing
    parser.add_argument('--scan-timeout', type=float, default=DEFAULT_SCAN_TIMEOUT,
                        help='Seconds to scan per attempt')
    parser.add_argument('--connect-timeout', type=float, default=DEFAULT_CONNECT_TIMEOUT,
                        help='Seconds to wait for a connection')
    parser.add_argument('--inactivity-timeout', type=float, default=DEFAULT_INACTIVITY_TIMEOUT,
                        help='Reconnect when no reading arrives for this long (0 disables)')
    parser.add_argument('--retry-delay', type=float, default=DEFAULT_RETRY_DELAY,
                        help='Initial delay between reconnect attempts')
    parser.add_argument('--max-retry-delay', type=float, default=DEFAULT_MAX_RETRY_DELAY,
                        help='Upper bound for the reconnect delay')

    # Output
    parser.add_argument('--format', choices=['csv', 'json'], default='csv',
                        help='Output format on stdout')
    parser.add_argument('--waveform', action='store_true',
                        help='Include pleth waveform samples')
    parser.add_argument('--show-null', action='store_true',
                        help='Also print readings without SpO2 and pulse rate (no finger)')
    parser.add_argument('--capture', metavar='FILE',
                        help='Append raw notification payloads to FILE')
    parser.add_argument('--log-file',
                        help='Also write debug log to this file')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose logging')
    return parser


def make_sink(args):
    sink_cls = JsonLinesSink if args.format == 'json' else CsvSink
    return sink_cls(include_waveform=args.waveform, show_null=args.show_null)


def replay(path: str, sink, checksum=None) -> int:
    """Run a capture file through the decoder into the sink."""
    decoder = FrameDecoder(checksum=checksum)
    count = 0
    try:
        for chunk in read_capture(path):
            for reading in decoder.feed(chunk):
                sink(reading)
                count += 1
    except (OSError, ValueError) as e:
        log.error(f"Cannot replay {path}: {e}")
        return 1

    log.info(f"Decoded {count} readings, {decoder.frames_rejected} frames rejected, "
             f"{decoder.bytes_discarded} bytes discarded")
    return 0


async def scan(adapter, identity: DeviceIdentity, timeout: float) -> int:
    found = await adapter.scan(timeout)
    for device, adv in found:
        name = device.name or getattr(adv, "local_name", None) or "(unknown)"
        rssi = getattr(adv, "rssi", None)
        rssi_str = f" rssi:{rssi}dBm" if rssi is not None else ""
        marker = " *" if identity.matches(device, adv) else ""
        print(f"{name} {device.address}{rssi_str}{marker}", flush=True)
    return 0


async def monitor(args, adapter, identity: DeviceIdentity) -> int:
    """Stream readings until interrupted."""
    sink = make_sink(args)
    capture = RawCapture(args.capture) if args.capture else None

    connect = partial(
        _open_session, adapter, identity,
        characteristic_uuid=args.char_uuid,
        scan_timeout=args.scan_timeout,
        connect_timeout=args.connect_timeout,
        max_garbage=DEFAULT_MAX_GARBAGE,
        checksum=CHECKSUMS[args.checksum],
        on_chunk=capture,
    )
    supervisor = Supervisor(
        connect,
        sink,
        backoff=ExponentialBackoff(args.retry_delay, max(args.retry_delay, args.max_retry_delay)),
        inactivity_timeout=args.inactivity_timeout or None,
    )

    task = asyncio.create_task(supervisor.run())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            # Windows: KeyboardInterrupt reaches asyncio.run instead
            pass

    try:
        await task
    except asyncio.CancelledError:
        log.info(f"Stopped after {supervisor.attempts} attempts, "
                 f"{supervisor.readings_delivered} readings")
    finally:
        if capture:
            capture.close()
    return 0


async def _open_session(adapter, identity, on_stage, **kwargs):
    return await Session.open(adapter, identity, on_stage=on_stage, **kwargs)


def check_args(parser: argparse.ArgumentParser, args):
    """Reject timing values the supervisor cannot work with (exits with 2)."""
    if args.retry_delay <= 0:
        parser.error("--retry-delay must be positive")
    if args.inactivity_timeout < 0:
        parser.error("--inactivity-timeout must be 0 (disabled) or positive")
    for name in ('scan_timeout', 'connect_timeout'):
        if getattr(args, name) <= 0:
            parser.error(f"--{name.replace('_', '-')} must be positive")


async def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    check_args(parser, args)

    setup_logging(args.verbose, args.log_file)

    if args.replay:
        return replay(args.replay, make_sink(args), CHECKSUMS[args.checksum])

    try:
        identity = DeviceIdentity(name_filter=args.name, address=args.address)
    except ValueError as e:
        parser.error(str(e))

    adapter = BleakAdapter(args.adapter)

    if args.scan:
        return await scan(adapter, identity, args.scan_timeout)

    return await monitor(args, adapter, identity)


def cli_main():
    """Entry point for CLI."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted!", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    cli_main()
