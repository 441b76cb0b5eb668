"""
Shapes raw generator output into persistable GameQuestion records.

Grid modes (Jeopardy) get column-based point values, Daily Double flags and
the final-round question ordered last. Sequential modes are capped at the
configured question count and use the configured flat point value.
"""
import logging
import random
from typing import List, Optional

from config import settings
from models.game import (
    GameSession, GameQuestion, QuestionData, RawQuestion, Difficulty,
)

logger = logging.getLogger(__name__)

# Five-tier board: easy sits in the 100 column, hard in the 500 column
DIFFICULTY_COLUMN = {
    Difficulty.EASY: 1,
    Difficulty.MEDIUM: 3,
    Difficulty.HARD: 5,
}
DEFAULT_COLUMN = 3
POINTS_PER_COLUMN = 100


def column_for(raw: RawQuestion) -> int:
    if raw.column_position is not None:
        return raw.column_position
    return DIFFICULTY_COLUMN.get(raw.difficulty, DEFAULT_COLUMN)


class GameQuestionProcessor:
    def __init__(
        self,
        rng: Optional[random.Random] = None,
        daily_doubles: Optional[int] = None,
    ):
        self.rng = rng or random.Random()
        self.daily_doubles = (
            daily_doubles if daily_doubles is not None else settings.daily_doubles_per_board
        )

    def process(self, session: GameSession, raw_questions: List[RawQuestion]) -> List[GameQuestion]:
        if session.mode.grid:
            return self._process_grid(session, raw_questions)
        return self._process_sequential(session, raw_questions)

    # ── Sequential modes ──────────────────────────────────────────────────────

    def _process_sequential(
        self, session: GameSession, raw_questions: List[RawQuestion]
    ) -> List[GameQuestion]:
        regular = [r for r in raw_questions if not r.is_final_round]
        chosen = regular[: session.config.question_count]
        if len(chosen) < session.config.question_count:
            # Sessions advance through exactly question_count indexes
            logger.warning(
                f"[{session.id}] Only {len(chosen)} of {session.config.question_count} "
                f"questions available; discarding the set"
            )
            return []
        return [
            self._build(session, raw, index, points=session.config.points_per_question)
            for index, raw in enumerate(chosen)
        ]

    # ── Grid modes ────────────────────────────────────────────────────────────

    def _process_grid(
        self, session: GameSession, raw_questions: List[RawQuestion]
    ) -> List[GameQuestion]:
        regular = [r for r in raw_questions if not r.is_final_round]
        final = [r for r in raw_questions if r.is_final_round]

        questions: List[GameQuestion] = []
        for raw in regular:
            column = column_for(raw)
            questions.append(
                self._build(
                    session, raw, len(questions),
                    points=column * POINTS_PER_COLUMN,
                    column=column,
                )
            )

        eligible = [q for q in questions if q.column_position > 1]
        picks = self.rng.sample(eligible, min(self.daily_doubles, len(eligible)))
        for q in picks:
            q.is_daily_double = True

        # Final round always goes after every regular question
        for raw in final:
            questions.append(
                self._build(
                    session, raw, len(questions),
                    points=0,
                    column=None,
                    final=True,
                )
            )

        logger.info(
            f"[{session.id}] Board ready: {len(regular)} regular, {len(picks)} daily doubles, "
            f"{len(final)} final"
        )
        return questions

    def _build(
        self,
        session: GameSession,
        raw: RawQuestion,
        index: int,
        points: int,
        column: Optional[int] = None,
        final: bool = False,
    ) -> GameQuestion:
        return GameQuestion(
            game_session_id=session.id,
            question_index=index,
            question_data=QuestionData(
                question=raw.question,
                options=raw.options,
                question_type="multiple_choice" if raw.options else "short_answer",
                explanation=raw.explanation,
            ),
            correct_answer=raw.correct_answer,
            category=raw.category,
            difficulty=raw.difficulty,
            points=points,
            time_limit_seconds=session.config.time_per_question,
            column_position=column,
            is_final_round=final,
        )
