"""
Per-client mirror of one game session.

Three sources feed session state in: the session push subscription, the
waiting poll and the question poll. All of them go through `reconcile()`,
which compares the incoming session against the locally held one and decides
what to do. Comparing against previously observed values (never event order)
is what makes a transition seen twice apply only once.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel

from config import settings
from models.errors import GameError, NotFound
from models.game import (
    GameSession, GameQuestion, LeaderboardEntry, AnswerRecord, STATUS_ORDER,
)
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

QuestionKey = Optional[Union[int, str]]


class UpdateSource(str, Enum):
    PUSH = "push"
    WAITING_POLL = "waiting_poll"
    QUESTION_POLL = "question_poll"


class Effect(str, Enum):
    FETCH_QUESTION = "fetch_question"
    ENSURE_WAITING_POLL = "ensure_waiting_poll"
    ENSURE_QUESTION_POLL = "ensure_question_poll"
    STOP_POLLING = "stop_polling"
    GAME_ENDED = "game_ended"


class GameSnapshot(BaseModel):
    session_id: Optional[str] = None
    session: Optional[GameSession] = None
    question: Optional[GameQuestion] = None
    # Key of the question in `question`, or of the one being fetched for it
    question_key: Union[int, str, None] = None
    question_started_at: Optional[datetime] = None  # timer origin
    has_answered: bool = False
    leaderboard: List[LeaderboardEntry] = []
    game_ended: bool = False

    def seconds_remaining(self, now: datetime) -> Optional[float]:
        if self.question is None or self.question_started_at is None:
            return None
        elapsed = (now - self.question_started_at).total_seconds()
        return max(self.question.time_limit_seconds - elapsed, 0.0)


class ReconcileResult(BaseModel):
    snapshot: GameSnapshot
    effects: List[Effect] = []

    @property
    def changed(self) -> bool:
        return bool(self.effects)


def _is_stale(current: GameSession, incoming: GameSession) -> bool:
    if STATUS_ORDER[incoming.status] < STATUS_ORDER[current.status]:
        return True
    if incoming.status == current.status:
        if incoming.current_question_index < current.current_question_index:
            return True
        if incoming.updated_at < current.updated_at:
            return True
    return False


def _question_missing(previous: GameSnapshot, incoming: GameSession) -> bool:
    key = incoming.question_key
    return incoming.is_in_progress() and key is not None and key != previous.question_key


def reconcile(
    previous: GameSnapshot, incoming: Optional[GameSession], source: UpdateSource
) -> ReconcileResult:
    """Pure decision point shared by push events and both polls."""
    unchanged = ReconcileResult(snapshot=previous)
    if incoming is None or previous.game_ended:
        return unchanged
    if previous.session_id is not None and incoming.id != previous.session_id:
        return unchanged

    current = previous.session
    if current is not None and _is_stale(current, incoming):
        logger.debug(f"[{incoming.id}] Ignoring stale {source.value} update")
        return unchanged
    if current is not None and incoming == current and not _question_missing(previous, incoming):
        return unchanged

    if incoming.has_ended():
        snapshot = previous.model_copy(update={"session": incoming, "game_ended": True})
        return ReconcileResult(snapshot=snapshot, effects=[Effect.STOP_POLLING, Effect.GAME_ENDED])

    if incoming.is_waiting():
        snapshot = previous.model_copy(update={"session": incoming})
        return ReconcileResult(snapshot=snapshot, effects=[Effect.ENSURE_WAITING_POLL])

    # in_progress from here on
    index_changed = current is not None and incoming.current_question_index != current.current_question_index
    started = current is None or current.is_waiting()
    missing = previous.question is None
    key = incoming.question_key

    if key == previous.question_key:
        # Same question (or its fetch is already in flight): metadata only
        snapshot = previous.model_copy(update={"session": incoming})
        return ReconcileResult(snapshot=snapshot, effects=[Effect.ENSURE_QUESTION_POLL])

    logger.debug(
        f"[{incoming.id}] {source.value}: question {previous.question_key} -> {key} "
        f"(index_changed={index_changed} started={started} missing={missing})"
    )
    snapshot = previous.model_copy(update={
        "session": incoming,
        "question": None,
        "question_key": key,
        "question_started_at": incoming.question_opened_at,
        "has_answered": False,
    })
    effects = [Effect.ENSURE_QUESTION_POLL]
    if key is not None:
        effects.append(Effect.FETCH_QUESTION)
    return ReconcileResult(snapshot=snapshot, effects=effects)


class RealtimeReconciler:
    """Keeps a GameSnapshot current for one client until teardown()."""

    def __init__(
        self,
        store,
        session_id: str,
        clock: Clock = system_clock,
        on_change: Optional[Callable[[GameSnapshot], None]] = None,
        on_game_ended: Optional[Callable[[GameSnapshot], Any]] = None,
        waiting_poll_interval: Optional[float] = None,
        question_poll_interval: Optional[float] = None,
        refetch_delay_ms: Optional[int] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.session_id = session_id
        self.clock = clock
        self._on_change = on_change
        self._on_game_ended = on_game_ended
        self.waiting_poll_interval = (
            waiting_poll_interval if waiting_poll_interval is not None
            else settings.waiting_poll_interval_sec
        )
        self.question_poll_interval = (
            question_poll_interval if question_poll_interval is not None
            else settings.question_poll_interval_sec
        )
        self.refetch_delay_ms = refetch_delay_ms if refetch_delay_ms is not None else settings.refetch_delay_ms
        self._sleep = sleep

        self.snapshot = GameSnapshot(session_id=session_id)
        self.applied_questions: List[QuestionKey] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._waiting_task: Optional[asyncio.Task] = None
        self._question_task: Optional[asyncio.Task] = None
        self._torn_down = False

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def subscription_count(self) -> int:
        return len(self._unsubscribers)

    @property
    def active_poll_count(self) -> int:
        return sum(1 for t in (self._waiting_task, self._question_task) if t is not None and not t.done())

    def seconds_remaining(self) -> Optional[float]:
        return self.snapshot.seconds_remaining(self.clock.now())

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.subscribe()
        await self.load_snapshot()

    def subscribe(self) -> None:
        if self._torn_down:
            return
        self.unsubscribe_all()
        self._unsubscribers = [
            self.store.subscribe_to_game_session(self.session_id, self.on_session_event),
            self.store.subscribe_to_game_questions(self.session_id, self.on_questions_event),
            self.store.subscribe_to_game_scores(self.session_id, self.on_scores_event),
        ]
        logger.debug(f"[{self.session_id}] Subscribed to session, questions, scores")

    def unsubscribe_all(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            try:
                unsubscribe()
            except Exception:
                logger.warning(f"[{self.session_id}] Unsubscribe failed", exc_info=True)

    async def resync(self) -> None:
        """Resubscribe then replace local state with a full snapshot. Raises on failure."""
        self.subscribe()
        await self.load_snapshot()

    async def load_snapshot(self) -> None:
        """Pull session, current question and leaderboard and apply them wholesale."""
        session = await self.store.get_game_session(self.session_id)
        if session is None:
            raise NotFound(f"game session {self.session_id} not found", self.session_id)
        question = None
        if session.is_in_progress() and session.question_key is not None:
            question = await self.store.get_current_question(self.session_id)
        leaderboard = await self.store.get_game_leaderboard(self.session_id)
        if self._torn_down:
            return

        previous = self.snapshot
        key = session.question_key if question is not None else None
        same_question = key is not None and key == previous.question_key and previous.question is not None
        self.snapshot = GameSnapshot(
            session_id=self.session_id,
            session=session,
            question=question,
            question_key=key,
            question_started_at=(
                previous.question_started_at if same_question else
                session.question_opened_at if question is not None else None
            ),
            has_answered=previous.has_answered if same_question else False,
            leaderboard=leaderboard,
            game_ended=session.has_ended(),
        )
        if question is not None and not same_question:
            self.applied_questions.append(key)
        logger.info(f"[{self.session_id}] Snapshot loaded: {session.status.value}, question {key}")

        if session.has_ended():
            self._run_effects([Effect.STOP_POLLING, Effect.GAME_ENDED], None)
        elif session.is_waiting():
            self._run_effects([Effect.ENSURE_WAITING_POLL], None)
        else:
            self._run_effects([Effect.ENSURE_QUESTION_POLL], None)
        self._notify()

    def teardown(self) -> None:
        """Stop polls, drop subscriptions and forget all state. Idempotent."""
        if not self._torn_down:
            logger.info(f"[{self.session_id}] Reconciler teardown")
        self._torn_down = True
        self._stop_polls()
        self.unsubscribe_all()
        self.snapshot = GameSnapshot()

    def mark_answered(self) -> None:
        if not self._torn_down:
            self.snapshot = self.snapshot.model_copy(update={"has_answered": True})

    # ── Ingest ────────────────────────────────────────────────────────────────

    async def ingest(self, session: Optional[GameSession], source: UpdateSource) -> ReconcileResult:
        if self._torn_down:
            return ReconcileResult(snapshot=self.snapshot)
        result = reconcile(self.snapshot, session, source)
        if not result.changed:
            return result
        self.snapshot = result.snapshot
        self._run_effects(result.effects, source)
        self._notify()
        if Effect.FETCH_QUESTION in result.effects:
            delay_ms = self.refetch_delay_ms if source == UpdateSource.PUSH else 0
            await self._fetch_question(result.snapshot.question_key, delay_ms)
        return result

    async def on_session_event(self, session: Optional[GameSession]) -> None:
        await self.ingest(session, UpdateSource.PUSH)

    async def on_questions_event(self, questions: List[GameQuestion]) -> None:
        # Questions may land after the session moved on; fill the gap if we can
        snap = self.snapshot
        if self._torn_down or snap.question is not None or snap.question_key is None:
            return
        for q in questions:
            if self._matches(q, snap.question_key):
                self._apply_question(q, snap.question_key)
                return

    async def on_scores_event(self, records: List[AnswerRecord]) -> None:
        await self.refresh_leaderboard()

    async def refresh_leaderboard(self) -> None:
        """Best effort: a failed refresh is healed by the next score event or resync."""
        if self._torn_down:
            return
        try:
            leaderboard = await self.store.get_game_leaderboard(self.session_id)
        except GameError as e:
            logger.warning(f"[{self.session_id}] Leaderboard refresh failed: {e.message}")
            return
        if self._torn_down:
            return
        self.snapshot = self.snapshot.model_copy(update={"leaderboard": leaderboard})
        self._notify()

    # ── Question fetch ────────────────────────────────────────────────────────

    @staticmethod
    def _matches(question: GameQuestion, key: QuestionKey) -> bool:
        if isinstance(key, str):
            return question.id == key
        return question.question_index == key

    async def _fetch_question(self, key: QuestionKey, delay_ms: int) -> None:
        if delay_ms:
            # Let the replica catch up with the write that produced the event
            await self._sleep(delay_ms / 1000)
        if self._torn_down or self.snapshot.question_key != key:
            return
        try:
            question = await self.store.get_current_question(self.session_id)
        except GameError as e:
            logger.warning(f"[{self.session_id}] Question fetch failed: {e.message}")
            question = None
        if self._torn_down or self.snapshot.question_key != key or self.snapshot.question is not None:
            return
        if question is None or not self._matches(question, key):
            # Not visible yet; clearing the key lets the next tick try again
            self.snapshot = self.snapshot.model_copy(update={"question_key": None})
            return
        self._apply_question(question, key)

    def _apply_question(self, question: GameQuestion, key: QuestionKey) -> None:
        self.snapshot = self.snapshot.model_copy(update={"question": question})
        self.applied_questions.append(key)
        logger.info(f"[{self.session_id}] Showing question {key}")
        self._notify()

    # ── Polling fallback ──────────────────────────────────────────────────────

    async def poll_waiting_once(self) -> None:
        await self._poll_once(UpdateSource.WAITING_POLL)

    async def poll_question_once(self) -> None:
        await self._poll_once(UpdateSource.QUESTION_POLL)

    async def _poll_once(self, source: UpdateSource) -> None:
        try:
            session = await self.store.get_game_session(self.session_id)
        except GameError as e:
            logger.warning(f"[{self.session_id}] {source.value} tick failed: {e.message}")
            return
        await self.ingest(session, source)

    async def _waiting_loop(self) -> None:
        while not self._torn_down:
            await self._sleep(self.waiting_poll_interval)
            await self.poll_waiting_once()
            session = self.snapshot.session
            if session is None or not session.is_waiting():
                break
        logger.debug(f"[{self.session_id}] Waiting poll stopped")

    async def _question_loop(self) -> None:
        while not self._torn_down and not self.snapshot.game_ended:
            await self._sleep(self.question_poll_interval)
            await self.poll_question_once()
        logger.debug(f"[{self.session_id}] Question poll stopped")

    def _run_effects(self, effects: List[Effect], source: Optional[UpdateSource]) -> None:
        for effect in effects:
            if effect == Effect.ENSURE_WAITING_POLL:
                if self._waiting_task is None or self._waiting_task.done():
                    self._waiting_task = asyncio.get_running_loop().create_task(
                        self._waiting_loop(), name=f"waiting-poll-{self.session_id}"
                    )
            elif effect == Effect.ENSURE_QUESTION_POLL:
                self._waiting_task = self._cancel(self._waiting_task)
                if self._question_task is None or self._question_task.done():
                    self._question_task = asyncio.get_running_loop().create_task(
                        self._question_loop(), name=f"question-poll-{self.session_id}"
                    )
            elif effect == Effect.STOP_POLLING:
                self._stop_polls()
            elif effect == Effect.GAME_ENDED:
                session = self.snapshot.session
                logger.info(f"[{self.session_id}] Game {session.status.value if session else 'ended'}")
                if self._on_game_ended:
                    self._on_game_ended(self.snapshot)

    def _stop_polls(self) -> None:
        self._waiting_task = self._cancel(self._waiting_task)
        self._question_task = self._cancel(self._question_task)

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        # A loop that stops itself just exits; only foreign tasks get cancelled
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return None

    def _notify(self) -> None:
        if self._on_change and not self._torn_down:
            self._on_change(self.snapshot)
