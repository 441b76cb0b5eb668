import logging
from datetime import datetime
from typing import Optional, Tuple

from models.errors import InvalidWager
from models.game import AnswerRecord, GameQuestion
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


def validate_wager(wager: Optional[int], current_score: int, session_id: Optional[str] = None) -> int:
    """A wager must lie in [0, max(current_score, 0)]."""
    ceiling = max(current_score, 0)
    if wager is None:
        raise InvalidWager("this question requires a wager", session_id)
    if wager < 0 or wager > ceiling:
        raise InvalidWager(f"wager must be between 0 and {ceiling}, got {wager}", session_id)
    return wager


def score_answer(
    question: GameQuestion, answer: str, wager: Optional[int] = None
) -> Tuple[bool, int]:
    """Return (is_correct, points_earned).

    Standard questions never go negative; wager questions win or lose the wager.
    """
    correct = question.is_correct_answer(answer)
    if question.is_wager_question:
        stake = wager or 0
        return correct, (stake if correct else -stake)
    return correct, (question.points if correct else 0)


class AnswerScoringEngine:
    def __init__(self, store, clock: Clock = system_clock):
        self.store = store
        self.clock = clock

    async def submit_answer(
        self,
        question: GameQuestion,
        user_id: str,
        answer: str,
        wager: Optional[int] = None,
        time_taken_ms: Optional[int] = None,
        opened_at: Optional[datetime] = None,
        buzzer_rank: Optional[int] = None,
    ) -> AnswerRecord:
        """Score and persist one answer. Raises InvalidWager or DuplicateAnswer."""
        session_id = question.game_session_id
        now = self.clock.now()

        if question.is_wager_question:
            current = await self.store.get_player_score(session_id, user_id)
            wager = validate_wager(wager, current, session_id)
        else:
            wager = None

        if time_taken_ms is None and opened_at is not None:
            time_taken_ms = max(int((now - opened_at).total_seconds() * 1000), 0)

        is_correct, points = score_answer(question, answer, wager)
        record = AnswerRecord(
            game_session_id=session_id,
            question_id=question.id,
            user_id=user_id,
            answer=answer,
            is_correct=is_correct,
            points_earned=points,
            buzzer_rank=buzzer_rank,
            wager_amount=wager,
            time_taken_ms=time_taken_ms,
            answered_at=now,
        )
        await self.store.submit_answer(record)
        logger.info(
            "[%s] %s answered question %d: %s (%+d)",
            session_id, user_id, question.question_index,
            "correct" if is_correct else "wrong", points,
        )
        return record
