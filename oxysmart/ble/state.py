"""Connection lifecycle states reported by the supervisor."""

from enum import Enum


class ConnectionState(Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    FAILED = "failed"
    STOPPED = "stopped"          # cancelled and fully torn down

    def __str__(self):
        return self.value
