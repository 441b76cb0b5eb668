import asyncio
import random

import pytest

from engine.reconciler import (
    Effect, GameSnapshot, RealtimeReconciler, UpdateSource, reconcile,
)
from models.game import GameConfig, GameQuestion, GameSession, GameStatus, QuestionData


def seed_game(store, clock, count=5, start=True, with_questions=True) -> GameSession:
    now = clock.now()
    session = GameSession(
        room_id="room-1",
        host_id="host",
        config=GameConfig(question_count=count),
        created_at=now,
        updated_at=now,
    )
    if start:
        session = session.started(now)
    store.sessions[session.id] = session
    if with_questions:
        store.questions[session.id] = [
            GameQuestion(
                game_session_id=session.id,
                question_index=i,
                question_data=QuestionData(question=f"Question {i}?", options=["A", "B"]),
                correct_answer="A",
            )
            for i in range(count)
        ]
    return session


def make_reconciler(store, clock, session_id, **kwargs) -> RealtimeReconciler:
    options = dict(
        clock=clock,
        waiting_poll_interval=3600,
        question_poll_interval=3600,
        refetch_delay_ms=0,
    )
    options.update(kwargs)
    return RealtimeReconciler(store, session_id, **options)


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------

def test_reconcile_ignores_other_sessions(store, clock):
    session = seed_game(store, clock)
    other = seed_game(store, clock)
    snap = GameSnapshot(session_id=session.id)

    result = reconcile(snap, other, UpdateSource.PUSH)

    assert result.effects == []
    assert result.snapshot is snap


def test_reconcile_first_sight_of_running_game_fetches(store, clock):
    session = seed_game(store, clock)

    result = reconcile(GameSnapshot(session_id=session.id), session, UpdateSource.PUSH)

    assert Effect.FETCH_QUESTION in result.effects
    assert result.snapshot.question_key == 0
    assert result.snapshot.question_started_at == session.started_at


def test_reconcile_rejects_status_regression(store, clock):
    session = seed_game(store, clock)
    snap = GameSnapshot(session_id=session.id, session=session, question_key=0)
    waiting = session.model_copy(update={"status": GameStatus.WAITING})

    result = reconcile(snap, waiting, UpdateSource.WAITING_POLL)

    assert result.effects == []
    assert result.snapshot.session.status == GameStatus.IN_PROGRESS


def test_reconcile_ignores_everything_after_game_end(store, clock):
    session = seed_game(store, clock)
    ended = session.completed(clock.advance(10))
    snap = reconcile(GameSnapshot(session_id=session.id, session=session), ended, UpdateSource.PUSH).snapshot

    assert snap.game_ended
    again = reconcile(snap, ended, UpdateSource.QUESTION_POLL)
    assert again.effects == []


def test_reconcile_metadata_only_change_keeps_question(store, clock):
    session = seed_game(store, clock)
    question = store.questions[session.id][0]
    snap = GameSnapshot(session_id=session.id, session=session, question=question, question_key=0)
    touched = session.model_copy(update={"updated_at": clock.advance(1)})

    result = reconcile(snap, touched, UpdateSource.PUSH)

    assert Effect.FETCH_QUESTION not in result.effects
    assert result.snapshot.question is question


# ---------------------------------------------------------------------------
# RealtimeReconciler
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_question_poll_picks_up_index_change(store, clock):
    session = seed_game(store, clock)
    store.put_session(session.id, current_question_index=2, updated_at=clock.advance(60))
    rec = make_reconciler(store, clock, session.id)
    await rec.start()
    assert rec.snapshot.question.question_index == 2
    rec.mark_answered()

    changed_at = clock.advance(30)
    store.put_session(session.id, current_question_index=3, updated_at=changed_at)
    await rec.poll_question_once()

    snap = rec.snapshot
    assert snap.question.question_index == 3
    assert snap.has_answered is False
    assert snap.question_started_at == changed_at
    assert snap.question_started_at != session.started_at
    rec.teardown()


@pytest.mark.asyncio
async def test_push_and_polls_apply_each_transition_once(store, clock):
    session = seed_game(store, clock)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()

    store.put_session(session.id, current_question_index=1, updated_at=clock.advance(5))
    await store.push_session(session.id)
    await rec.poll_question_once()
    await store.push_session(session.id)  # redelivered

    assert rec.applied_questions == [0, 1]
    assert store.calls["get_current_question"] == 2
    rec.teardown()


@pytest.mark.asyncio
async def test_random_interleavings_never_go_backwards(store, clock):
    rng = random.Random(11)
    session = seed_game(store, clock, count=6)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()

    stale = []
    for index in range(1, 6):
        stale.append(store.sessions[session.id])
        store.put_session(session.id, current_question_index=index, updated_at=clock.advance(10))
        steps = ["push", "poll", "push", "stale"]
        rng.shuffle(steps)
        for step in steps:
            if step == "push":
                await store.push_session(session.id)
            elif step == "poll":
                await rec.poll_question_once()
            else:
                await store.push_session(session.id, rng.choice(stale))

    assert rec.applied_questions == [0, 1, 2, 3, 4, 5]
    assert rec.snapshot.session.current_question_index == 5
    rec.teardown()


@pytest.mark.asyncio
async def test_waiting_poll_detects_start(store, clock):
    session = seed_game(store, clock, start=False)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()
    assert rec.snapshot.question is None
    assert rec.active_poll_count == 1

    started = store.sessions[session.id].started(clock.advance(3))
    store.sessions[session.id] = started
    clock.advance(2)
    await rec.poll_waiting_once()

    assert rec.snapshot.question.question_index == 0
    assert rec.snapshot.question_started_at == started.started_at
    # waiting poll handed over to the question poll
    assert rec.active_poll_count == 1
    assert rec._waiting_task is None
    rec.teardown()


@pytest.mark.asyncio
async def test_terminal_state_stops_polling(store, clock):
    session = seed_game(store, clock)
    ended = []
    rec = make_reconciler(store, clock, session.id, on_game_ended=ended.append)
    await rec.start()
    assert rec.active_poll_count == 1

    store.sessions[session.id] = store.sessions[session.id].completed(clock.advance(30))
    await rec.poll_question_once()

    assert rec.snapshot.game_ended
    assert rec.active_poll_count == 0
    assert len(ended) == 1
    rec.teardown()


@pytest.mark.asyncio
async def test_missing_question_is_retried_on_next_tick(store, clock):
    session = seed_game(store, clock, with_questions=False)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()
    await rec.poll_question_once()
    assert rec.snapshot.question is None

    seed = seed_game(store, clock)  # borrow its questions
    store.questions[session.id] = [
        q.model_copy(update={"game_session_id": session.id}) for q in store.questions[seed.id]
    ]
    await rec.poll_question_once()

    assert rec.snapshot.question.question_index == 0
    assert rec.applied_questions == [0]
    rec.teardown()


@pytest.mark.asyncio
async def test_push_waits_before_refetch(store, clock):
    delays = []

    async def recording_sleep(seconds):
        delays.append(seconds)
        if seconds > 1:
            # poll intervals: park until teardown cancels the loop
            await asyncio.Event().wait()

    session = seed_game(store, clock)
    rec = make_reconciler(store, clock, session.id, refetch_delay_ms=150, sleep=recording_sleep)
    await rec.start()
    delays.clear()

    store.put_session(session.id, current_question_index=1, updated_at=clock.advance(5))
    await rec.on_session_event(store.sessions[session.id])

    assert 0.15 in delays
    assert rec.snapshot.question.question_index == 1
    rec.teardown()


@pytest.mark.asyncio
async def test_leaderboard_refresh_failure_is_tolerated(store, clock):
    session = seed_game(store, clock)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()

    store.fail("get_game_leaderboard")
    await store.push_scores(session.id)
    assert rec.snapshot.leaderboard == []
    assert not rec.torn_down

    await store.push_scores(session.id)
    assert store.calls["get_game_leaderboard"] == 3
    rec.teardown()


@pytest.mark.asyncio
async def test_teardown_twice_leaves_nothing_running(store, clock):
    session = seed_game(store, clock)
    rec = make_reconciler(store, clock, session.id)
    await rec.start()
    assert store.live_subscriptions(session.id) == 3
    assert rec.active_poll_count == 1

    rec.teardown()
    rec.teardown()

    assert store.live_subscriptions(session.id) == 0
    assert rec.subscription_count == 0
    assert rec.active_poll_count == 0
    assert rec.snapshot.session is None


@pytest.mark.asyncio
async def test_in_flight_fetch_after_teardown_is_a_no_op(store, clock):
    gate = asyncio.Event()

    async def gated_sleep(seconds):
        await gate.wait()

    session = seed_game(store, clock)
    rec = make_reconciler(store, clock, session.id, refetch_delay_ms=150, sleep=gated_sleep)
    await rec.start()
    applied = list(rec.applied_questions)

    store.put_session(session.id, current_question_index=1, updated_at=clock.advance(5))
    pending = asyncio.ensure_future(rec.on_session_event(store.sessions[session.id]))
    await asyncio.sleep(0)
    rec.teardown()
    gate.set()
    await pending

    assert rec.applied_questions == applied
    assert rec.snapshot.question is None
    assert rec.snapshot.session is None
