"""
Buzz-in arbitration for the Jeopardy mode.

One BuzzerCycle exists per open question. Ranks follow receipt order on the
coordinator; client timestamps are never consulted. A wrong answer locks the
player out for that question and starts a fresh ranking among the rest.
Cycles live in coordinator memory and are discarded once the question resolves.
"""
import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from models.errors import BuzzerRejected

logger = logging.getLogger(__name__)


class BuzzerState(str, Enum):
    AWAITING_BUZZ = "awaiting_buzz"
    ANSWERING = "answering"
    RESOLVED = "resolved"


class BuzzOutcome(str, Enum):
    CORRECT = "correct"
    REOPENED = "reopened"      # wrong answer, others may still buzz
    EXHAUSTED = "exhausted"    # everyone eligible has been wrong
    SKIPPED = "skipped"


TERMINAL_OUTCOMES = frozenset({BuzzOutcome.CORRECT, BuzzOutcome.EXHAUSTED, BuzzOutcome.SKIPPED})


class BuzzerCycle:
    def __init__(self, session_id: str, question_id: str, players: Iterable[str]):
        self.session_id = session_id
        self.question_id = question_id
        self.players: List[str] = list(dict.fromkeys(players))
        self.locked_out: Set[str] = set()
        self.queue: List[str] = []
        self.cycle = 1
        self.state = BuzzerState.AWAITING_BUZZ
        self.winner: Optional[str] = None

    @property
    def answering(self) -> Optional[str]:
        if self.state == BuzzerState.ANSWERING:
            return self.queue[0]
        return None

    def is_eligible(self, user_id: str) -> bool:
        return user_id in self.players and user_id not in self.locked_out

    def remaining(self) -> List[str]:
        return [p for p in self.players if p not in self.locked_out]

    def ranks(self) -> Dict[str, int]:
        return {user_id: i + 1 for i, user_id in enumerate(self.queue)}

    def buzz(self, user_id: str) -> int:
        """Queue a buzz and return its rank. Repeat buzzes keep their rank."""
        if self.state == BuzzerState.RESOLVED:
            raise BuzzerRejected("question is no longer open", self.session_id)
        if not self.is_eligible(user_id):
            raise BuzzerRejected(f"{user_id} cannot buzz on this question", self.session_id)
        if user_id in self.queue:
            return self.queue.index(user_id) + 1
        self.queue.append(user_id)
        if self.state == BuzzerState.AWAITING_BUZZ:
            self.state = BuzzerState.ANSWERING
        return len(self.queue)

    def require_answering(self, user_id: str) -> int:
        """Rank of the player allowed to answer right now; anyone else is rejected."""
        if self.answering != user_id:
            raise BuzzerRejected(f"{user_id} does not hold the buzzer", self.session_id)
        return 1

    def record_answer(self, user_id: str, correct: bool) -> BuzzOutcome:
        self.require_answering(user_id)
        if correct:
            self.state = BuzzerState.RESOLVED
            self.winner = user_id
            return BuzzOutcome.CORRECT

        self.locked_out.add(user_id)
        if not self.remaining():
            self.state = BuzzerState.RESOLVED
            return BuzzOutcome.EXHAUSTED

        self.cycle += 1
        self.queue = []
        self.state = BuzzerState.AWAITING_BUZZ
        return BuzzOutcome.REOPENED

    def skip(self) -> BuzzOutcome:
        self.state = BuzzerState.RESOLVED
        return BuzzOutcome.SKIPPED

    def to_dict(self) -> Dict:
        return {
            "question_id": self.question_id,
            "state": self.state.value,
            "cycle": self.cycle,
            "ranks": self.ranks(),
            "answering": self.answering,
            "locked_out": sorted(self.locked_out),
        }


class BuzzerArbiter:
    """Holds the open cycle for each session (at most one question is open at a time)."""

    def __init__(self):
        self._cycles: Dict[str, BuzzerCycle] = {}

    def open(self, session_id: str, question_id: str, players: Iterable[str]) -> BuzzerCycle:
        cycle = BuzzerCycle(session_id, question_id, players)
        self._cycles[session_id] = cycle
        logger.info(f"[{session_id}] Buzzer open for {question_id} ({len(cycle.players)} players)")
        return cycle

    def get(self, session_id: str, question_id: Optional[str] = None) -> Optional[BuzzerCycle]:
        cycle = self._cycles.get(session_id)
        if cycle is None or (question_id is not None and cycle.question_id != question_id):
            return None
        return cycle

    def _require(self, session_id: str, question_id: str) -> BuzzerCycle:
        cycle = self.get(session_id, question_id)
        if cycle is None:
            raise BuzzerRejected(f"question {question_id} is not open for buzzing", session_id)
        return cycle

    def buzz(self, session_id: str, question_id: str, user_id: str) -> int:
        rank = self._require(session_id, question_id).buzz(user_id)
        logger.debug(f"[{session_id}] {user_id} buzzed, rank {rank}")
        return rank

    def require_answering(self, session_id: str, question_id: str, user_id: str) -> int:
        return self._require(session_id, question_id).require_answering(user_id)

    def record_answer(
        self, session_id: str, question_id: str, user_id: str, correct: bool
    ) -> BuzzOutcome:
        outcome = self._require(session_id, question_id).record_answer(user_id, correct)
        if outcome in TERMINAL_OUTCOMES:
            self.discard(session_id)
        logger.info(f"[{session_id}] Buzzer answer by {user_id}: {outcome.value}")
        return outcome

    def skip(self, session_id: str, question_id: str) -> BuzzOutcome:
        outcome = self._require(session_id, question_id).skip()
        self.discard(session_id)
        return outcome

    def discard(self, session_id: str) -> None:
        self._cycles.pop(session_id, None)
