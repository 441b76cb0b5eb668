import asyncio

import pytest

from engine.game_client import GameClient
from engine.reconnection import ConnectionStatus
from models.errors import ReconnectionExhausted

from test_reconciler import seed_game


async def fast_sleep(seconds):
    if seconds > 60:
        # poll intervals: park until teardown cancels the loop
        await asyncio.Event().wait()
    await asyncio.sleep(0)


def make_client(store, clock, statuses=None):
    return GameClient(
        store,
        "ann",
        clock=clock,
        on_status=(lambda status, attempt, limit: statuses.append(status)) if statuses is not None else None,
        sleep=fast_sleep,
        waiting_poll_interval=3600,
        question_poll_interval=3600,
        refetch_delay_ms=0,
    )


@pytest.mark.asyncio
async def test_game_end_tears_everything_down(store, clock):
    session = seed_game(store, clock)
    client = make_client(store, clock)
    snap = await client.connect(session.id)
    assert snap.question.question_index == 0
    assert store.live_subscriptions(session.id) == 3

    store.sessions[session.id] = store.sessions[session.id].completed(clock.advance(60))
    await store.push_session(session.id)

    assert client.final_snapshot is not None
    assert client.final_snapshot.game_ended
    assert client.reconciler.torn_down
    assert client.reconciler.active_poll_count == 0
    assert store.live_subscriptions(session.id) == 0


@pytest.mark.asyncio
async def test_reconnect_resyncs_missed_progress(store, clock):
    statuses = []
    session = seed_game(store, clock)
    client = make_client(store, clock, statuses)
    await client.connect(session.id)

    store.put_session(session.id, current_question_index=2, updated_at=clock.advance(40))
    store.fail("get_game_session", times=2)
    client.connection_lost()
    await client.reconnection.wait_until_settled()

    assert statuses == [ConnectionStatus.RECONNECTING] * 3 + [ConnectionStatus.CONNECTED]
    assert client.reconnection.attempt == 0
    assert client.error is None
    assert client.snapshot.question.question_index == 2
    assert store.live_subscriptions(session.id) == 3
    client.teardown()
    assert store.live_subscriptions(session.id) == 0


@pytest.mark.asyncio
async def test_exhausted_reconnection_surfaces_error_and_stops(store, clock):
    session = seed_game(store, clock)
    client = make_client(store, clock)
    await client.connect(session.id)

    store.fail("get_game_session", times=100)
    client.connection_lost()
    await client.reconnection.wait_until_settled()

    assert isinstance(client.error, ReconnectionExhausted)
    # one load on connect plus five retries
    assert store.calls["get_game_session"] == 6
    assert client.reconciler.torn_down
    assert store.live_subscriptions(session.id) == 0

    client.connection_lost()
    assert not client.reconnection.has_pending_retry


@pytest.mark.asyncio
async def test_seconds_remaining_counts_from_each_question_origin(store, clock):
    session = seed_game(store, clock)
    client = make_client(store, clock)
    assert client.seconds_remaining() is None
    await client.connect(session.id)

    # First question counts from game start
    clock.advance(12)
    assert client.seconds_remaining() == 18.0

    store.put_session(session.id, current_question_index=1, updated_at=clock.advance(5))
    await client.reconciler.poll_question_once()
    assert client.snapshot.question.question_index == 1

    clock.advance(10)
    assert client.seconds_remaining() == 20.0
    clock.advance(25)
    assert client.seconds_remaining() == 0.0
    client.teardown()
