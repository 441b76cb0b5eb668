import os
import sys
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

# Ensure the backend root (containing models/, engine/, ...) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from models.errors import DuplicateAnswer, NotFound, PersistenceError
from models.game import (
    AnswerRecord, GameQuestion, GameSession, Participant, RawQuestion,
    Difficulty, aggregate_leaderboard,
)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class ManualClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


# ---------------------------------------------------------------------------
# In-memory store with the same async API as FirestoreService
# ---------------------------------------------------------------------------

class FakeGameStore:
    """Nothing is pushed automatically; tests fire subscriptions with push_*()."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.sessions: Dict[str, GameSession] = {}
        self.questions: Dict[str, List[GameQuestion]] = {}
        self.answers: Dict[str, Dict[str, AnswerRecord]] = {}
        self.players: Dict[str, List[Participant]] = {}
        self.session_handlers: Dict[str, List[Callable]] = {}
        self.question_handlers: Dict[str, List[Callable]] = {}
        self.score_handlers: Dict[str, List[Callable]] = {}
        self.calls: Dict[str, int] = {}
        # method name -> number of upcoming calls that should fail
        self.failures: Dict[str, int] = {}

    def _enter(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        remaining = self.failures.get(name, 0)
        if remaining:
            self.failures[name] = remaining - 1
            raise PersistenceError(f"{name} failed (simulated)")

    def fail(self, name: str, times: int = 1) -> None:
        self.failures[name] = times

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_game_session(self, session: GameSession) -> GameSession:
        self._enter("create_game_session")
        self.sessions[session.id] = session
        return session

    async def get_game_session(self, session_id: str) -> Optional[GameSession]:
        self._enter("get_game_session")
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_game_for_room(self, room_id: str) -> Optional[GameSession]:
        self._enter("get_active_game_for_room")
        active = [s for s in self.sessions.values() if s.room_id == room_id and s.is_active()]
        return max(active, key=lambda s: s.created_at) if active else None

    async def update_session(self, session_id: str, mutate) -> GameSession:
        self._enter("update_session")
        current = self.sessions.get(session_id)
        if current is None:
            raise NotFound(f"game session {session_id} not found", session_id)
        updated = mutate(current)
        self.sessions[session_id] = updated
        return updated

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

    def put_session(self, session_id: str, **changes) -> GameSession:
        """Simulate another client's write."""
        session = self.sessions[session_id].model_copy(update=changes)
        self.sessions[session_id] = session
        return session

    # ── Participants ──────────────────────────────────────────────────────────

    async def add_player(self, session_id: str, user_id: str) -> Participant:
        self._enter("add_player")
        players = self.players.setdefault(session_id, [])
        for p in players:
            if p.user_id == user_id:
                return p
        player = Participant(user_id=user_id, joined_at=self.clock.now())
        players.append(player)
        return player

    async def get_players(self, session_id: str) -> List[str]:
        self._enter("get_players")
        return [p.user_id for p in self.players.get(session_id, [])]

    # ── Questions ─────────────────────────────────────────────────────────────

    async def create_game_questions(self, session_id: str, questions: List[GameQuestion]) -> List[GameQuestion]:
        self._enter("create_game_questions")
        self.questions.setdefault(session_id, []).extend(questions)
        return questions

    async def get_game_question(self, session_id: str, question_id: str) -> Optional[GameQuestion]:
        self._enter("get_game_question")
        for q in self.questions.get(session_id, []):
            if q.id == question_id:
                return q
        return None

    async def get_game_questions(self, session_id: str) -> List[GameQuestion]:
        self._enter("get_game_questions")
        return sorted(self.questions.get(session_id, []), key=lambda q: q.question_index)

    async def get_current_question(self, session_id: str) -> Optional[GameQuestion]:
        self._enter("get_current_question")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"game session {session_id} not found", session_id)
        key = session.question_key
        for q in self.questions.get(session_id, []):
            if (isinstance(key, str) and q.id == key) or (isinstance(key, int) and q.question_index == key):
                return q
        return None

    # ── Answers ───────────────────────────────────────────────────────────────

    async def submit_answer(self, record: AnswerRecord) -> AnswerRecord:
        self._enter("submit_answer")
        answers = self.answers.setdefault(record.game_session_id, {})
        if record.record_id in answers:
            raise DuplicateAnswer("already answered", record.game_session_id)
        answers[record.record_id] = record
        return record

    async def get_answers(self, session_id: str, question_id: Optional[str] = None) -> List[AnswerRecord]:
        self._enter("get_answers")
        records = list(self.answers.get(session_id, {}).values())
        if question_id is not None:
            records = [r for r in records if r.question_id == question_id]
        return records

    async def get_player_score(self, session_id: str, user_id: str) -> int:
        self._enter("get_player_score")
        return sum(r.points_earned for r in self.answers.get(session_id, {}).values() if r.user_id == user_id)

    async def get_game_leaderboard(self, session_id: str):
        self._enter("get_game_leaderboard")
        return aggregate_leaderboard(list(self.answers.get(session_id, {}).values()))

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def _subscribe(self, registry: Dict[str, List[Callable]], session_id: str, handler: Callable):
        registry.setdefault(session_id, []).append(handler)

        def unsubscribe():
            handlers = registry.get(session_id, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_to_game_session(self, session_id: str, handler):
        return self._subscribe(self.session_handlers, session_id, handler)

    def subscribe_to_game_questions(self, session_id: str, handler):
        return self._subscribe(self.question_handlers, session_id, handler)

    def subscribe_to_game_scores(self, session_id: str, handler):
        return self._subscribe(self.score_handlers, session_id, handler)

    def live_subscriptions(self, session_id: str) -> int:
        return sum(
            len(registry.get(session_id, []))
            for registry in (self.session_handlers, self.question_handlers, self.score_handlers)
        )

    async def push_session(self, session_id: str, session: Optional[GameSession] = None) -> None:
        payload = session if session is not None else self.sessions.get(session_id)
        for handler in list(self.session_handlers.get(session_id, [])):
            await handler(payload.model_copy(deep=True) if payload else None)

    async def push_questions(self, session_id: str) -> None:
        for handler in list(self.question_handlers.get(session_id, [])):
            await handler(list(self.questions.get(session_id, [])))

    async def push_scores(self, session_id: str) -> None:
        for handler in list(self.score_handlers.get(session_id, [])):
            await handler(list(self.answers.get(session_id, {}).values()))


# ---------------------------------------------------------------------------
# Question generation
# ---------------------------------------------------------------------------

def make_raw_questions(count: int = 5) -> List[RawQuestion]:
    return [
        RawQuestion(
            question=f"Question {i + 1}?",
            options=["A", "B", "C", "D"],
            correct_answer="A",
            category="Science",
            difficulty=Difficulty.MEDIUM,
        )
        for i in range(count)
    ]


def make_board(columns: int = 5, with_final: bool = True) -> List[RawQuestion]:
    board = [
        RawQuestion(
            question=f"Clue worth {col * 100}",
            correct_answer=f"answer {col}",
            category="History",
            column_position=col,
        )
        for col in range(1, columns + 1)
    ]
    if with_final:
        board.append(RawQuestion(question="Final clue", correct_answer="final", is_final_round=True))
    return board


class FakeGenerator:
    def __init__(self, questions: Optional[List[RawQuestion]] = None, error: Optional[Exception] = None):
        self.questions = questions if questions is not None else make_raw_questions(10)
        self.error = error
        self.calls = 0

    async def generate(self, study_source, game_type, config) -> List[RawQuestion]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.questions)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def store(clock):
    return FakeGameStore(clock)


@pytest.fixture()
def rng():
    return random.Random(7)


@pytest.fixture()
def generator():
    return FakeGenerator()


@pytest.fixture()
def coordinator(store, generator, clock, rng):
    from engine.game_coordinator import GameSessionCoordinator
    from engine.question_processor import GameQuestionProcessor
    return GameSessionCoordinator(
        store,
        generator=generator,
        processor=GameQuestionProcessor(rng=rng),
        clock=clock,
    )
