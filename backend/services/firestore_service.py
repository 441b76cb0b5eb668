import asyncio
import logging
import os
from typing import Optional, List, Set, Callable, Awaitable

from google.api_core.exceptions import AlreadyExists, GoogleAPIError

from models.game import (
    GameSession, GameQuestion, AnswerRecord, LeaderboardEntry, Participant,
    GameStatus, aggregate_leaderboard,
)
from models.errors import GameError, DuplicateAnswer, NotFound, PersistenceError
from utils.clock import Clock, system_clock
from config import settings

logger = logging.getLogger(__name__)

SessionHandler = Callable[[Optional[GameSession]], Awaitable[None]]
QuestionsHandler = Callable[[List[GameQuestion]], Awaitable[None]]
ScoresHandler = Callable[[List[AnswerRecord]], Awaitable[None]]
Unsubscribe = Callable[[], None]

ACTIVE_STATUSES = [GameStatus.WAITING.value, GameStatus.IN_PROGRESS.value]


class FirestoreService:
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop. Switch to AsyncClient once stable.

    Also the realtime collaborator: on_snapshot listeners run on a Firestore
    background thread and are handed back to the event loop that subscribed.
    """

    def __init__(self, clock: Clock = system_clock, db=None):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = db if db is not None else firestore.Client(project=settings.google_cloud_project or None)
        self.clock = clock
        # Handler tasks spawned from snapshot callbacks, held until they finish
        self._handler_tasks: Set[asyncio.Task] = set()

    async def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except GameError:
            raise
        except GoogleAPIError as e:
            raise PersistenceError(f"Firestore request failed: {e}") from e

    # ── Collection helpers ────────────────────────────────────────────────────

    def _session_ref(self, session_id: str):
        return self.db.collection("game_sessions").document(session_id)

    def _questions_ref(self, session_id: str):
        return self._session_ref(session_id).collection("questions")

    def _players_ref(self, session_id: str):
        return self._session_ref(session_id).collection("players")

    def _answers_ref(self, session_id: str):
        return self._session_ref(session_id).collection("answers")

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_game_session(self, session: GameSession) -> GameSession:
        data = session.model_dump(mode="json")
        await self._run(lambda: self._session_ref(session.id).set(data))
        return session

    async def get_game_session(self, session_id: str) -> Optional[GameSession]:
        doc = await self._run(lambda: self._session_ref(session_id).get())
        if doc.exists:
            return GameSession(**doc.to_dict())
        return None

    async def get_active_game_for_room(self, room_id: str) -> Optional[GameSession]:
        query = (
            self.db.collection("game_sessions")
            .where("room_id", "==", room_id)
            .where("status", "in", ACTIVE_STATUSES)
        )
        docs = await self._run(lambda: list(query.stream()))
        sessions = [GameSession(**d.to_dict()) for d in docs]
        if not sessions:
            return None
        if len(sessions) > 1:
            logger.warning("Room %s has %d active games; using the newest", room_id, len(sessions))
        return max(sessions, key=lambda s: s.created_at)

    async def update_session(
        self, session_id: str, mutate: Callable[[GameSession], GameSession]
    ) -> GameSession:
        """Read-modify-write a session inside a Firestore transaction.

        `mutate` may raise a GameError to abort; nothing is written then.
        """
        ref = self._session_ref(session_id)
        firestore = self._firestore

        @firestore.transactional
        def _apply(transaction) -> GameSession:
            snap = ref.get(transaction=transaction)
            if not snap.exists:
                raise NotFound(f"game session {session_id} not found", session_id)
            current = GameSession(**snap.to_dict())
            updated = mutate(current)
            if updated is not current:
                transaction.set(ref, updated.model_dump(mode="json"))
            return updated

        return await self._run(lambda: _apply(self.db.transaction()))

    async def start_game(self, session_id: str) -> GameSession:
        now = self.clock.now()
        return await self.update_session(session_id, lambda s: s.started(now))

    async def next_question(self, session_id: str, expected_index: int) -> GameSession:
        now = self.clock.now()
        return await self.update_session(session_id, lambda s: s.advanced(expected_index, now))

    async def complete_game(self, session_id: str) -> GameSession:
        now = self.clock.now()
        return await self.update_session(session_id, lambda s: s.completed(now))

    async def cancel_game(self, session_id: str) -> GameSession:
        now = self.clock.now()
        return await self.update_session(session_id, lambda s: s.cancelled(now))

    # ── Participants ──────────────────────────────────────────────────────────

    async def add_player(self, session_id: str, user_id: str) -> Participant:
        """Register a participant. Re-joining keeps the original join time."""
        player = Participant(user_id=user_id, joined_at=self.clock.now())
        ref = self._players_ref(session_id).document(user_id)

        def _create():
            try:
                ref.create(player.model_dump(mode="json"))
            except AlreadyExists:
                logger.debug(f"[{session_id}] {user_id} rejoined")

        await self._run(_create)
        return player

    async def get_players(self, session_id: str) -> List[str]:
        """User ids in join order."""
        ref = self._players_ref(session_id).order_by("joined_at")
        docs = await self._run(lambda: list(ref.stream()))
        return [Participant(**d.to_dict()).user_id for d in docs]

    # ── Questions ─────────────────────────────────────────────────────────────

    async def create_game_questions(
        self, session_id: str, questions: List[GameQuestion]
    ) -> List[GameQuestion]:
        def _write():
            batch = self.db.batch()
            for q in questions:
                batch.set(self._questions_ref(session_id).document(q.id), q.model_dump(mode="json"))
            batch.commit()

        await self._run(_write)
        return questions

    async def get_game_question(self, session_id: str, question_id: str) -> Optional[GameQuestion]:
        doc = await self._run(lambda: self._questions_ref(session_id).document(question_id).get())
        if doc.exists:
            return GameQuestion(**doc.to_dict())
        return None

    async def get_game_questions(self, session_id: str) -> List[GameQuestion]:
        ref = self._questions_ref(session_id).order_by("question_index")
        docs = await self._run(lambda: list(ref.stream()))
        return [GameQuestion(**d.to_dict()) for d in docs]

    async def get_current_question(self, session_id: str) -> Optional[GameQuestion]:
        """The question the session currently points at, or None (e.g. Jeopardy board)."""
        session = await self.get_game_session(session_id)
        if session is None:
            raise NotFound(f"game session {session_id} not found", session_id)
        key = session.question_key
        if key is None:
            return None
        if isinstance(key, str):
            return await self.get_game_question(session_id, key)
        ref = self._questions_ref(session_id).where("question_index", "==", key).limit(1)
        docs = await self._run(lambda: list(ref.stream()))
        return GameQuestion(**docs[0].to_dict()) if docs else None

    # ── Answers and scores ────────────────────────────────────────────────────

    async def submit_answer(self, record: AnswerRecord) -> AnswerRecord:
        ref = self._answers_ref(record.game_session_id).document(record.record_id)
        data = record.model_dump(mode="json")

        def _create():
            # create() fails if the document exists: at most one answer per player per question
            try:
                ref.create(data)
            except AlreadyExists as e:
                raise DuplicateAnswer(
                    f"{record.user_id} already answered {record.question_id}",
                    record.game_session_id,
                ) from e

        await self._run(_create)
        return record

    async def get_answers(
        self, session_id: str, question_id: Optional[str] = None
    ) -> List[AnswerRecord]:
        ref = self._answers_ref(session_id)
        if question_id is not None:
            ref = ref.where("question_id", "==", question_id)
        docs = await self._run(lambda: list(ref.stream()))
        return [AnswerRecord(**d.to_dict()) for d in docs]

    async def get_player_score(self, session_id: str, user_id: str) -> int:
        ref = self._answers_ref(session_id).where("user_id", "==", user_id)
        docs = await self._run(lambda: list(ref.stream()))
        return sum(AnswerRecord(**d.to_dict()).points_earned for d in docs)

    async def get_game_leaderboard(self, session_id: str) -> List[LeaderboardEntry]:
        return aggregate_leaderboard(await self.get_answers(session_id))

    # ── Realtime subscriptions ────────────────────────────────────────────────

    def _bridge(self, session_id: str, handler, convert) -> Callable:
        """Wrap an async handler as an on_snapshot callback for the running loop."""
        loop = asyncio.get_running_loop()

        def _on_snapshot(snapshots, changes, read_time):
            try:
                payload = convert(snapshots)
            except Exception:
                logger.exception(f"[{session_id}] Could not decode snapshot")
                return
            loop.call_soon_threadsafe(self._spawn_handler, session_id, handler, payload)

        return _on_snapshot

    def _spawn_handler(self, session_id: str, handler, payload) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(handler(payload))
        self._handler_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._handler_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"[{session_id}] Snapshot handler failed: {exc}", exc_info=exc)

        task.add_done_callback(_done)
        return task

    def subscribe_to_game_session(self, session_id: str, handler: SessionHandler) -> Unsubscribe:
        def convert(snapshots):
            doc = snapshots[0] if snapshots else None
            return GameSession(**doc.to_dict()) if doc is not None and doc.exists else None

        watch = self._session_ref(session_id).on_snapshot(self._bridge(session_id, handler, convert))
        return watch.unsubscribe

    def subscribe_to_game_questions(self, session_id: str, handler: QuestionsHandler) -> Unsubscribe:
        def convert(snapshots):
            questions = [GameQuestion(**d.to_dict()) for d in snapshots]
            return sorted(questions, key=lambda q: q.question_index)

        watch = self._questions_ref(session_id).on_snapshot(self._bridge(session_id, handler, convert))
        return watch.unsubscribe

    def subscribe_to_game_scores(self, session_id: str, handler: ScoresHandler) -> Unsubscribe:
        def convert(snapshots):
            return [AnswerRecord(**d.to_dict()) for d in snapshots]

        watch = self._answers_ref(session_id).on_snapshot(self._bridge(session_id, handler, convert))
        return watch.unsubscribe


_firestore_service: Optional["FirestoreService"] = None


def get_firestore_service() -> "FirestoreService":
    """Lazy singleton - initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService()
    return _firestore_service
