"""Tests for connection-state inference."""

from catalog.services.connection import ConnectionMonitor, ConnectionState


def test_starts_online() -> None:
    assert ConnectionMonitor().get() == ConnectionState.ONLINE


def test_slow_exchange_degrades_and_fast_one_recovers() -> None:
    monitor = ConnectionMonitor(slow_threshold_ms=3000)

    monitor.record_exchange(3500)
    assert monitor.get() == ConnectionState.DEGRADED

    monitor.record_exchange(200)
    assert monitor.get() == ConnectionState.ONLINE


def test_no_response_goes_offline_from_any_state() -> None:
    monitor = ConnectionMonitor(slow_threshold_ms=100)
    monitor.record_exchange(500)

    monitor.record_no_response()

    assert monitor.get() == ConnectionState.OFFLINE
    assert not monitor.is_online


def test_fast_exchange_never_promotes_from_offline() -> None:
    monitor = ConnectionMonitor()
    monitor.notify_network_down()

    monitor.record_exchange(10)
    assert monitor.get() == ConnectionState.OFFLINE

    monitor.notify_connectivity_restored()
    assert monitor.get() == ConnectionState.ONLINE


def test_timeout_degrades_unless_offline() -> None:
    monitor = ConnectionMonitor()
    monitor.record_timeout()
    assert monitor.get() == ConnectionState.DEGRADED

    monitor.record_no_response()
    monitor.record_timeout()
    assert monitor.get() == ConnectionState.OFFLINE


def test_listeners_notified_on_change_only() -> None:
    monitor = ConnectionMonitor(slow_threshold_ms=100)
    seen = []
    unsubscribe = monitor.subscribe(seen.append)

    monitor.record_exchange(10)  # still online, no event
    monitor.record_exchange(500)
    monitor.record_exchange(600)  # still degraded, no event
    monitor.record_no_response()

    assert seen == [ConnectionState.DEGRADED, ConnectionState.OFFLINE]

    unsubscribe()
    monitor.notify_connectivity_restored()
    assert len(seen) == 2


def test_failing_listener_does_not_break_others() -> None:
    monitor = ConnectionMonitor()
    seen = []

    def broken(state):
        raise RuntimeError("listener bug")

    monitor.subscribe(broken)
    monitor.subscribe(seen.append)
    monitor.notify_network_down()

    assert seen == [ConnectionState.OFFLINE]


def test_status_dict() -> None:
    monitor = ConnectionMonitor(slow_threshold_ms=100)
    monitor.record_exchange(250)

    status = monitor.get_status()
    assert status["state"] == "degraded"
    assert status["last_latency_ms"] == 250
    assert status["changed_at"] is not None
