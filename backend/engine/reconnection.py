"""
Bounded exponential-backoff reconnection for one client.

connection_lost() either schedules the next attempt (1s, 2s, 4s, 8s, 16s) or,
once the budget is spent, signals ReconnectionExhausted exactly once. Each
attempt runs the supplied `reconnect` coroutine, which is expected to
resubscribe and pull a full snapshot; any exception counts as a failure.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from config import settings
from models.errors import ReconnectionExhausted

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


StatusCallback = Callable[[ConnectionStatus, int, int], None]
ExhaustedCallback = Callable[[ReconnectionExhausted], None]


def backoff_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base_ms * 2 ** (attempt - 1), max_ms)


class ReconnectionController:
    def __init__(
        self,
        session_id: str,
        reconnect: Callable[[], Awaitable[None]],
        on_status: Optional[StatusCallback] = None,
        on_exhausted: Optional[ExhaustedCallback] = None,
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_id = session_id
        self._reconnect = reconnect
        self._on_status = on_status
        self._on_exhausted = on_exhausted
        self.max_attempts = max_attempts if max_attempts is not None else settings.reconnect_max_attempts
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.reconnect_base_delay_ms
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.reconnect_max_delay_ms
        self._sleep = sleep

        self.attempt = 0
        self.is_reconnecting = False
        self.exhausted = False
        self.attempts_started = 0
        self._retry_task: Optional[asyncio.Task] = None

    @property
    def has_pending_retry(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def status_message(self) -> str:
        if self.exhausted:
            return "Connection lost. Please leave the game and rejoin."
        if self.is_reconnecting:
            return f"Reconnecting, attempt {self.attempt} of {self.max_attempts}"
        return "Connected"

    def connection_lost(self) -> None:
        if self.exhausted:
            return
        if self.is_reconnecting or self.attempt >= self.max_attempts:
            self._exhaust()
            return

        self.attempt += 1
        self.is_reconnecting = True
        delay_ms = backoff_delay_ms(self.attempt, self.base_delay_ms, self.max_delay_ms)
        logger.warning(
            "[%s] Connection lost, retry %d/%d in %dms",
            self.session_id, self.attempt, self.max_attempts, delay_ms,
        )
        self._emit(ConnectionStatus.RECONNECTING)
        self._retry_task = asyncio.get_running_loop().create_task(
            self._retry(delay_ms), name=f"reconnect-{self.session_id}-{self.attempt}"
        )

    async def _retry(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        self.attempts_started += 1
        try:
            await self._reconnect()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Reconnect attempt %d failed", self.session_id, self.attempt)
            self.is_reconnecting = False
            self.connection_lost()
            return

        logger.info("[%s] Reconnected after %d attempt(s)", self.session_id, self.attempt)
        self.attempt = 0
        self.is_reconnecting = False
        self._emit(ConnectionStatus.CONNECTED)

    def _exhaust(self) -> None:
        self.exhausted = True
        self.is_reconnecting = False
        logger.error("[%s] Giving up after %d reconnect attempts", self.session_id, self.attempt)
        self._emit(ConnectionStatus.EXHAUSTED)
        if self._on_exhausted:
            self._on_exhausted(ReconnectionExhausted(
                f"could not reconnect after {self.attempt} attempts", self.session_id
            ))

    def _emit(self, status: ConnectionStatus) -> None:
        if self._on_status:
            self._on_status(status, self.attempt, self.max_attempts)

    def cancel(self) -> None:
        """Drop any pending backoff timer. Safe to call repeatedly."""
        task = self._retry_task
        self._retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_until_settled(self) -> None:
        """Wait until no retry is pending (reconnected, exhausted or cancelled)."""
        while self.has_pending_retry:
            await asyncio.wait({self._retry_task})
