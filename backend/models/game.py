from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Annotated, Optional, List, Dict, Any, Literal, Union, ClassVar
from enum import Enum
from datetime import datetime, timezone
import uuid

from models.errors import IllegalTransition


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class GameType(str, Enum):
    QUIZ_BATTLE = "quiz_battle"
    JEOPARDY = "jeopardy"
    BINGO = "bingo"
    FLASHCARDS = "flashcards"


class GameStatus(str, Enum):
    WAITING = "waiting"          # lobby, questions may still be generating
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"      # terminal
    CANCELLED = "cancelled"      # terminal


TERMINAL_STATUSES = frozenset({GameStatus.COMPLETED, GameStatus.CANCELLED})

# Forward-only ordering used to reject stale snapshots (in_progress never goes back to waiting)
STATUS_ORDER: Dict[GameStatus, int] = {
    GameStatus.WAITING: 0,
    GameStatus.IN_PROGRESS: 1,
    GameStatus.COMPLETED: 2,
    GameStatus.CANCELLED: 2,
}


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    MIXED = "mixed"  # config only; individual questions are never "mixed"


class JeopardyRound(str, Enum):
    REGULAR = "regular"
    FINAL = "final"


GAME_TYPE_NAMES: Dict[GameType, str] = {
    GameType.QUIZ_BATTLE: "Quiz Battle",
    GameType.JEOPARDY: "Jeopardy",
    GameType.BINGO: "Study Bingo",
    GameType.FLASHCARDS: "Collaborative Flashcards",
}


class GameConfig(BaseModel):
    """Immutable after creation."""

    model_config = ConfigDict(frozen=True)

    question_count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = Difficulty.MIXED
    categories: List[str] = []
    points_per_question: int = Field(default=100, ge=10, le=1000)
    time_per_question: int = Field(default=30, ge=5, le=300)  # seconds
    team_mode: bool = False
    bingo_grid_size: Optional[int] = Field(default=None, ge=3, le=7)


# ── Per-mode session state (tagged variant on `kind`) ─────────────────────────

class QuizBattleMode(BaseModel):
    kind: Literal["quiz_battle"] = "quiz_battle"
    grid: ClassVar[bool] = False


class JeopardyMode(BaseModel):
    kind: Literal["jeopardy"] = "jeopardy"
    grid: ClassVar[bool] = True
    selected_question_id: Optional[str] = None
    current_player_id: Optional[str] = None  # whose turn it is to pick from the board
    round: JeopardyRound = JeopardyRound.REGULAR
    answered_question_ids: List[str] = []


class BingoMode(BaseModel):
    kind: Literal["bingo"] = "bingo"
    grid: ClassVar[bool] = False
    grid_size: int = 5


class FlashcardsMode(BaseModel):
    kind: Literal["flashcards"] = "flashcards"
    grid: ClassVar[bool] = False


GameMode = Annotated[
    Union[QuizBattleMode, JeopardyMode, BingoMode, FlashcardsMode],
    Field(discriminator="kind"),
]


def mode_for(game_type: GameType, config: GameConfig) -> "GameMode":
    """Initial per-mode state for a freshly created session."""
    if game_type == GameType.JEOPARDY:
        return JeopardyMode()
    if game_type == GameType.BINGO:
        return BingoMode(grid_size=config.bingo_grid_size or 5)
    if game_type == GameType.FLASHCARDS:
        return FlashcardsMode()
    return QuizBattleMode()


# ── Game session ──────────────────────────────────────────────────────────────

class GameSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    room_id: str
    host_id: Optional[str] = None
    mode: GameMode = Field(default_factory=QuizBattleMode)
    status: GameStatus = GameStatus.WAITING
    config: GameConfig = Field(default_factory=GameConfig)
    current_question_index: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)  # version clock for timers

    @property
    def game_type(self) -> GameType:
        return GameType(self.mode.kind)

    @property
    def display_name(self) -> str:
        return GAME_TYPE_NAMES.get(self.game_type, "Unknown Game")

    @property
    def total_questions(self) -> int:
        return self.config.question_count

    @property
    def question_key(self) -> Optional[Union[int, str]]:
        """Identity of the question players should currently see.

        Sequential modes use the index; Jeopardy uses the selected board
        question, which is None while the board is showing.
        """
        if isinstance(self.mode, JeopardyMode):
            return self.mode.selected_question_id
        return self.current_question_index

    def is_waiting(self) -> bool:
        return self.status == GameStatus.WAITING

    def is_in_progress(self) -> bool:
        return self.status == GameStatus.IN_PROGRESS

    def has_ended(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_active(self) -> bool:
        return not self.has_ended()

    @property
    def question_opened_at(self) -> Optional[datetime]:
        """Timer origin for the current question.

        The first sequential question counts from game start; every later
        question (and every board pick) counts from the write that opened it.
        """
        if not self.mode.grid and self.current_question_index == 0:
            return self.started_at or self.updated_at
        return self.updated_at

    def is_last_question(self) -> bool:
        return self.current_question_index >= self.total_questions - 1

    def progress_percentage(self) -> int:
        if self.total_questions == 0:
            return 0
        return int(self.current_question_index / self.total_questions * 100)

    def duration_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.ended_at or now or _utcnow()
        return (end - self.started_at).total_seconds()

    # ── Lifecycle transitions ─────────────────────────────────────────────────
    # Each returns a new session and leaves self untouched. Stores run these
    # inside a transaction so concurrent callers cannot double-apply one.

    def started(self, now: datetime) -> "GameSession":
        if not self.is_waiting():
            raise IllegalTransition(f"cannot start a game that is {self.status.value}", self.id)
        return self.model_copy(update={
            "status": GameStatus.IN_PROGRESS,
            "current_question_index": 0,
            "started_at": now,
            "updated_at": now,
        })

    def advanced(self, expected_index: int, now: datetime) -> "GameSession":
        if not self.is_in_progress():
            raise IllegalTransition(f"cannot advance a game that is {self.status.value}", self.id)
        if self.current_question_index != expected_index:
            raise IllegalTransition(
                f"question {expected_index} is no longer current "
                f"(now {self.current_question_index})",
                self.id,
            )
        if self.is_last_question():
            raise IllegalTransition("already on the last question", self.id)
        return self.model_copy(update={
            "current_question_index": self.current_question_index + 1,
            "updated_at": now,
        })

    def completed(self, now: datetime) -> "GameSession":
        if not self.is_in_progress():
            raise IllegalTransition(f"cannot complete a game that is {self.status.value}", self.id)
        return self.model_copy(update={
            "status": GameStatus.COMPLETED,
            "ended_at": now,
            "updated_at": now,
        })

    def cancelled(self, now: datetime) -> "GameSession":
        if self.has_ended():
            return self
        return self.model_copy(update={
            "status": GameStatus.CANCELLED,
            "ended_at": now,
            "updated_at": now,
        })

    def with_mode(self, mode: "GameMode", now: datetime) -> "GameSession":
        if self.has_ended():
            raise IllegalTransition(f"game is already {self.status.value}", self.id)
        return self.model_copy(update={"mode": mode, "updated_at": now})


# ── Questions ─────────────────────────────────────────────────────────────────

def _check_option_count(options: List[str]) -> List[str]:
    if options and not 2 <= len(options) <= 6:
        raise ValueError("multiple choice questions need 2 to 6 options")
    return options


class QuestionData(BaseModel):
    question: str = Field(min_length=1, max_length=1000)
    options: List[str] = []
    question_type: str = "multiple_choice"
    explanation: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_validator("options")
    @classmethod
    def _check_options(cls, v: List[str]) -> List[str]:
        return _check_option_count(v)


class GameQuestion(BaseModel):
    """Created once in bulk at session setup; never mutated afterwards."""

    id: str = Field(default_factory=_new_id)
    game_session_id: str
    question_index: int = Field(ge=0)
    question_data: QuestionData
    correct_answer: str = ""  # blank in client-facing copies
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    points: int = Field(default=100, ge=0, le=10000)
    time_limit_seconds: int = Field(default=30, ge=5, le=300)
    column_position: Optional[int] = None  # grid modes: 1..5 → 100..500 points
    is_daily_double: bool = False
    is_final_round: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_wager_question(self) -> bool:
        return self.is_daily_double or self.is_final_round

    def is_correct_answer(self, answer: str) -> bool:
        given = (answer or "").strip().lower()
        expected = self.correct_answer.strip().lower()
        if not expected:
            return False
        if self.question_data.options:
            return given == expected
        # Short answer: accept a response that contains the expected text
        return given == expected or expected in given

    def to_client(self) -> Dict[str, Any]:
        """Representation safe to send while the question is open."""
        return self.model_dump(mode="json", exclude={"correct_answer"})


class RawQuestion(BaseModel):
    """Candidate produced by the AI generator, before point/flag assignment."""

    question: str = Field(min_length=1, max_length=1000)
    options: List[str] = []
    correct_answer: str
    explanation: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    column_position: Optional[int] = Field(default=None, ge=1, le=5)
    is_final_round: bool = False

    @field_validator("options")
    @classmethod
    def _check_options(cls, v: List[str]) -> List[str]:
        return _check_option_count(v)


# ── Participants ──────────────────────────────────────────────────────────────

class Participant(BaseModel):
    user_id: str
    joined_at: datetime = Field(default_factory=_utcnow)


# ── Answers and leaderboard ───────────────────────────────────────────────────

class AnswerRecord(BaseModel):
    """One per (game_session_id, question_id, user_id). Immutable once written."""

    game_session_id: str
    question_id: str
    user_id: str
    answer: str = ""
    is_correct: bool = False
    points_earned: int = 0
    buzzer_rank: Optional[int] = None
    wager_amount: Optional[int] = None
    time_taken_ms: Optional[int] = None
    answered_at: datetime = Field(default_factory=_utcnow)

    @property
    def record_id(self) -> str:
        return f"{self.question_id}_{self.user_id}"


class LeaderboardEntry(BaseModel):
    user_id: str
    total_score: int = 0
    correct_answers: int = 0
    total_answers: int = 0
    average_time_ms: float = 0.0
    rank: int = 0


def aggregate_leaderboard(records: List[AnswerRecord]) -> List[LeaderboardEntry]:
    """Derive the leaderboard from answer records. Score desc, then avg time asc."""
    totals: Dict[str, Dict[str, Any]] = {}
    for r in records:
        t = totals.setdefault(r.user_id, {"score": 0, "correct": 0, "answers": 0, "times": []})
        t["score"] += r.points_earned
        t["answers"] += 1
        if r.is_correct:
            t["correct"] += 1
        if r.time_taken_ms is not None:
            t["times"].append(r.time_taken_ms)

    entries = [
        LeaderboardEntry(
            user_id=user_id,
            total_score=t["score"],
            correct_answers=t["correct"],
            total_answers=t["answers"],
            average_time_ms=(sum(t["times"]) / len(t["times"])) if t["times"] else 0.0,
        )
        for user_id, t in totals.items()
    ]
    entries.sort(key=lambda e: (-e.total_score, e.average_time_ms))
    for i, e in enumerate(entries):
        e.rank = i + 1
    return entries


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateGameRequest(BaseModel):
    room_id: str
    host_id: str
    game_type: str  # validated by the coordinator so unknown types surface as ValidationError
    config: Dict[str, Any] = {}
    study_source: Optional[str] = None  # notes/transcript the generator draws questions from


class CreateGameResponse(BaseModel):
    session_id: str
    status: GameStatus


class ActorRequest(BaseModel):
    user_id: Optional[str] = None


class SubmitAnswerRequest(BaseModel):
    user_id: str
    question_id: str
    answer: str
    time_taken_ms: Optional[int] = None
    wager_amount: Optional[int] = None


class QuestionActionRequest(BaseModel):
    user_id: str
    question_id: str
