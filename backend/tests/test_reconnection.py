import asyncio

import pytest

from engine.reconnection import ConnectionStatus, ReconnectionController, backoff_delay_ms
from models.errors import ReconnectionExhausted


class FlakyReconnect:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {self.calls} refused")


def make_controller(reconnect, delays=None, **kwargs):
    statuses = []
    exhausted = []

    async def sleep(seconds):
        if delays is not None:
            delays.append(seconds)
        await asyncio.sleep(0)

    ctl = ReconnectionController(
        "game-1",
        reconnect=reconnect,
        on_status=lambda status, attempt, max_attempts: statuses.append((status, attempt)),
        on_exhausted=exhausted.append,
        max_attempts=5,
        base_delay_ms=1000,
        max_delay_ms=16000,
        sleep=sleep,
        **kwargs,
    )
    return ctl, statuses, exhausted


def test_backoff_doubles_then_caps():
    assert [backoff_delay_ms(n, 1000, 16000) for n in range(1, 7)] == [
        1000, 2000, 4000, 8000, 16000, 16000,
    ]


@pytest.mark.asyncio
async def test_five_failures_exhaust_without_a_sixth_attempt():
    reconnect = FlakyReconnect(failures=100)
    ctl, statuses, exhausted = make_controller(reconnect)

    ctl.connection_lost()
    await ctl.wait_until_settled()

    assert reconnect.calls == 5
    assert ctl.attempts_started == 5
    assert ctl.exhausted
    assert not ctl.is_reconnecting
    assert len(exhausted) == 1
    assert isinstance(exhausted[0], ReconnectionExhausted)
    assert statuses[-1] == (ConnectionStatus.EXHAUSTED, 5)

    # further drops after giving up are ignored
    ctl.connection_lost()
    assert len(exhausted) == 1
    assert not ctl.has_pending_retry


@pytest.mark.asyncio
async def test_delays_follow_exponential_backoff():
    delays = []
    ctl, _, _ = make_controller(FlakyReconnect(failures=100), delays=delays)

    ctl.connection_lost()
    await ctl.wait_until_settled()

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]


@pytest.mark.asyncio
async def test_success_on_third_attempt_resets_counter():
    reconnect = FlakyReconnect(failures=2)
    ctl, statuses, exhausted = make_controller(reconnect)

    ctl.connection_lost()
    await ctl.wait_until_settled()

    assert reconnect.calls == 3
    assert ctl.attempt == 0
    assert ctl.is_reconnecting is False
    assert not ctl.exhausted
    assert exhausted == []
    assert [s for s, _ in statuses].count(ConnectionStatus.RECONNECTING) == 3
    assert statuses[-1] == (ConnectionStatus.CONNECTED, 0)
    assert ctl.status_message() == "Connected"


@pytest.mark.asyncio
async def test_budget_starts_over_after_a_successful_reconnect():
    reconnect = FlakyReconnect(failures=0)
    ctl, _, exhausted = make_controller(reconnect)

    for _ in range(7):
        ctl.connection_lost()
        await ctl.wait_until_settled()

    assert reconnect.calls == 7
    assert exhausted == []


@pytest.mark.asyncio
async def test_drop_while_already_reconnecting_gives_up():
    ctl, statuses, exhausted = make_controller(FlakyReconnect(failures=0))

    ctl.connection_lost()
    assert ctl.is_reconnecting
    assert ctl.status_message() == "Reconnecting, attempt 1 of 5"
    ctl.connection_lost()

    assert ctl.exhausted
    assert len(exhausted) == 1
    ctl.cancel()


@pytest.mark.asyncio
async def test_cancel_drops_pending_timer():
    gate = asyncio.Event()
    reconnect = FlakyReconnect(failures=0)

    async def gated_sleep(seconds):
        await gate.wait()

    ctl = ReconnectionController(
        "game-1", reconnect=reconnect, max_attempts=5, sleep=gated_sleep,
    )
    ctl.connection_lost()
    assert ctl.has_pending_retry

    ctl.cancel()
    ctl.cancel()
    gate.set()
    await asyncio.sleep(0)

    assert not ctl.has_pending_retry
    assert reconnect.calls == 0
