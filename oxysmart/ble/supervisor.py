"""
OxySmart Reconnection Supervisor

Keeps a Session alive forever: discover, connect, subscribe, stream, and on
any failure wait a bounded delay and start again from discovery. Only
cancellation of the task running run() stops it.

The current state is inspectable and the delay strategy and sleep function
are injectable, so the loop can be driven in tests without real time passing.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from oxysmart.data.models import Reading
from oxysmart.ble.protocol import (
    DEFAULT_RETRY_DELAY, DEFAULT_MAX_RETRY_DELAY, DEFAULT_INACTIVITY_TIMEOUT,
)
from oxysmart.ble.session import ConnectError, Outcome
from oxysmart.ble.state import ConnectionState

log = logging.getLogger(__name__)


# ============================================================================
# Delay strategies
# ============================================================================

class ExponentialBackoff:
    """Delay doubling per consecutive failure, capped at maximum."""

    def __init__(self, initial: float = DEFAULT_RETRY_DELAY,
                 maximum: float = DEFAULT_MAX_RETRY_DELAY, factor: float = 2.0):
        if initial <= 0:
            raise ValueError(f"initial delay must be positive, got {initial}")
        if maximum < initial:
            raise ValueError(f"maximum delay {maximum} is below initial delay {initial}")
        if factor < 1:
            raise ValueError(f"factor must be >= 1, got {factor}")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor

    def __call__(self, failures: int) -> float:
        """Delay before the retry following the given number of consecutive failures."""
        delay = self.initial
        for _ in range(max(0, failures - 1)):
            delay *= self.factor
            if delay >= self.maximum:
                return self.maximum
        return delay


def fixed_delay(seconds: float) -> Callable[[int], float]:
    """Same delay after every failure."""
    if seconds <= 0:
        raise ValueError(f"delay must be positive, got {seconds}")
    return lambda _failures: seconds


# ============================================================================
# Supervisor
# ============================================================================

class Supervisor:
    """Drives the connection state machine and forwards readings to a sink."""

    def __init__(
        self,
        connect: Callable[[Callable[[ConnectionState], None]], Awaitable],
        sink: Callable[[Reading], None],
        *,
        backoff: Optional[Callable[[int], float]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        inactivity_timeout: Optional[float] = DEFAULT_INACTIVITY_TIMEOUT,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
    ):
        """Initialize supervisor.

        Args:
            connect: Coroutine function taking a stage callback and returning
                an open Session (or raising ConnectError).
            sink: Receives every Reading in wire order.
            backoff: Maps consecutive failures to a delay in seconds.
            sleep: Awaitable delay, replaced in tests.
            inactivity_timeout: Seconds without a Reading before the session
                is treated as stalled. None disables the check.
            on_state_change: Called on every state transition.
        """
        self._connect = connect
        self.sink = sink
        self.backoff = backoff or ExponentialBackoff()
        self._sleep = sleep
        self.inactivity_timeout = inactivity_timeout
        self.on_state_change = on_state_change

        self.state = ConnectionState.IDLE
        self.session = None
        self.last_error: Optional[str] = None

        self.attempts = 0
        self.failures = 0
        self.sessions_started = 0
        self.readings_delivered = 0

    def _set_state(self, state: ConnectionState):
        if state == self.state:
            return
        log.debug(f"State: {self.state} -> {state}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    async def run(self):
        """Run until cancelled. Never returns normally."""
        try:
            while True:
                await self._attempt()
                self.failures += 1
                self._set_state(ConnectionState.FAILED)

                delay = self.backoff(self.failures)
                log.info(f"Retrying in {delay:.1f}s (consecutive failures: {self.failures})")
                await self._sleep(delay)
        finally:
            await self._release()
            self._set_state(ConnectionState.STOPPED)

    async def _attempt(self):
        """One discover/connect/stream cycle. Returns when it has failed."""
        self.attempts += 1
        log.info(f"Connection attempt #{self.attempts}")
        self._set_state(ConnectionState.DISCOVERING)

        try:
            self.session = await self._connect(self._set_state)
        except ConnectError as e:
            self.last_error = str(e)
            log.warning(f"Failed to connect: {e}")
            return

        self.sessions_started += 1
        self.failures = 0
        self._set_state(ConnectionState.STREAMING)
        log.info("Streaming readings")

        try:
            outcome = await self._stream(self.session)
        finally:
            await self._release()

        self.last_error = str(outcome)
        log.warning(f"Session ended: {outcome}")

    async def _stream(self, session) -> Outcome:
        while True:
            result = await session.next_readings(self.inactivity_timeout)
            if isinstance(result, Outcome):
                return result
            for reading in result:
                self.sink(reading)
                self.readings_delivered += 1

    async def _release(self):
        session, self.session = self.session, None
        if session is not None:
            await session.close()
