"""
ConnectionMonitor - Connection quality inferred from completed requests.

States:
- ONLINE: Requests complete quickly
- DEGRADED: A completed request exceeded the slow threshold
- OFFLINE: A request failed without any response, or the network went down

Transitions:
- any → DEGRADED: Completed request slower than slow_threshold
- DEGRADED → ONLINE: Completed request faster than slow_threshold
- any → OFFLINE: Transport failure with no response / network-down signal
- OFFLINE → ONLINE: Only on an explicit connectivity-restored signal
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable

from loguru import logger


class ConnectionState(str, Enum):
    """Connection states."""

    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


Listener = Callable[[ConnectionState], None]


class ConnectionMonitor:
    """
    Observational connection state.

    Consumers only read it:

        monitor.get()
        unsubscribe = monitor.subscribe(lambda state: print(state))
    """

    def __init__(self, slow_threshold_ms: float = 3000):
        self.slow_threshold_ms = slow_threshold_ms
        self._state = ConnectionState.ONLINE
        self._listeners: list[Listener] = []
        self._changed_at: datetime | None = None
        self._last_latency_ms: float | None = None

    def get(self) -> ConnectionState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state != ConnectionState.OFFLINE

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Signals

    def record_exchange(self, duration_ms: float) -> None:
        """A request completed (any status) after ``duration_ms``."""
        self._last_latency_ms = duration_ms
        if duration_ms > self.slow_threshold_ms:
            self._transition(ConnectionState.DEGRADED, f"slow response ({duration_ms:.0f}ms)")
        elif self._state == ConnectionState.DEGRADED:
            self._transition(ConnectionState.ONLINE, f"fast response ({duration_ms:.0f}ms)")

    def record_timeout(self) -> None:
        """An attempt timed out; counts as a slow exchange unless offline."""
        if self._state != ConnectionState.OFFLINE:
            self._transition(ConnectionState.DEGRADED, "request timed out")

    def record_no_response(self) -> None:
        """A request failed at the transport level with no response."""
        self._transition(ConnectionState.OFFLINE, "no response")

    def notify_network_down(self) -> None:
        self._transition(ConnectionState.OFFLINE, "network down")

    def notify_connectivity_restored(self) -> None:
        self._transition(ConnectionState.ONLINE, "connectivity restored")

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "state": self._state.value,
            "changed_at": self._changed_at.isoformat() if self._changed_at else None,
            "last_latency_ms": self._last_latency_ms,
            "slow_threshold_ms": self.slow_threshold_ms,
        }

    def _transition(self, new_state: ConnectionState, reason: str) -> None:
        if new_state == self._state:
            return

        previous = self._state
        self._state = new_state
        self._changed_at = datetime.now()

        if new_state == ConnectionState.OFFLINE:
            logger.warning(f"Connection {previous.value} → {new_state.value} ({reason})")
        else:
            logger.info(f"Connection {previous.value} → {new_state.value} ({reason})")

        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Error in connection state listener: {e}")
