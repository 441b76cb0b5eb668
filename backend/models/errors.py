"""
Error taxonomy for the trivia engine.

Every failure the engine surfaces derives from GameError so transport layers
(HTTP routes, WebSocket dispatcher) can map them with a single except clause.
"""
from typing import Optional


class GameError(Exception):
    """Root of all engine errors."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(GameError):
    """Unknown game type or malformed config/request. Never persisted."""


class DuplicateAnswer(ValidationError):
    """A second answer for the same (session, question, user)."""


class IllegalTransition(GameError):
    """Requested lifecycle move is not allowed from the current state."""


class BuzzerRejected(IllegalTransition):
    """Buzz or answer attempted out of turn, or by an ineligible player."""


class NotFound(GameError):
    """Session or question does not exist."""


class InvalidWager(GameError):
    """Wager outside [0, max(current_score, 0)]."""


class PersistenceError(GameError):
    """Underlying store request failed."""


class ReconnectionExhausted(GameError):
    """Automatic reconnection gave up. The only error that disables retry."""
