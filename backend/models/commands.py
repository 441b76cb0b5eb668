from pydantic import BaseModel
from typing import Optional
from enum import Enum


class CommandType(str, Enum):
    SUBMIT_ANSWER = "submit_answer"
    START_GAME = "start_game"
    CLOSE_GAME = "close_game"          # from the completion screen
    EXIT_GAME = "exit_game"            # mid-game exit → cancel
    NEXT_QUESTION = "next_question"
    TIMER_EXPIRED = "timer_expired"    # same path as NEXT_QUESTION
    BUZZ = "buzz"
    SKIP_QUESTION = "skip_question"
    SELECT_QUESTION = "select_question"


class GameCommand(BaseModel):
    type: CommandType
    session_id: str
    user_id: Optional[str] = None
    question_id: Optional[str] = None
    answer: Optional[str] = None
    time_taken_ms: Optional[int] = None
    wager_amount: Optional[int] = None
    # next_question / timer_expired: the index the sender saw, so stale timers cannot skip ahead
    expected_index: Optional[int] = None
