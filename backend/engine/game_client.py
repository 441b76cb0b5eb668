"""
One connected player's view of a session: a RealtimeReconciler plus the
ReconnectionController that rebuilds it after a dropped connection.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

from engine.reconciler import GameSnapshot, RealtimeReconciler
from engine.reconnection import ConnectionStatus, ReconnectionController
from models.errors import ReconnectionExhausted
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class GameClient:
    def __init__(
        self,
        store,
        user_id: str,
        clock: Clock = system_clock,
        on_change: Optional[Callable[[GameSnapshot], None]] = None,
        on_status: Optional[Callable[[ConnectionStatus, int, int], None]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        **reconciler_options: Any,
    ):
        self.store = store
        self.user_id = user_id
        self.clock = clock
        self._on_change = on_change
        self._on_status = on_status
        self._sleep = sleep
        self._reconciler_options = reconciler_options

        self.session_id: Optional[str] = None
        self.reconciler: Optional[RealtimeReconciler] = None
        self.reconnection: Optional[ReconnectionController] = None
        self.final_snapshot: Optional[GameSnapshot] = None
        self.error: Optional[ReconnectionExhausted] = None

    @property
    def snapshot(self) -> Optional[GameSnapshot]:
        return self.reconciler.snapshot if self.reconciler is not None else None

    async def connect(self, session_id: str) -> GameSnapshot:
        """Subscribe and load the session. Replaces any previous connection."""
        if self.reconciler is not None:
            self.teardown()
        self.session_id = session_id
        self.error = None
        self.final_snapshot = None
        self.reconciler = RealtimeReconciler(
            self.store,
            session_id,
            clock=self.clock,
            on_change=self._on_change,
            on_game_ended=self._game_ended,
            sleep=self._sleep,
            **self._reconciler_options,
        )
        self.reconnection = ReconnectionController(
            session_id,
            reconnect=self.reconciler.resync,
            on_status=self._on_status,
            on_exhausted=self._exhausted,
            sleep=self._sleep,
        )
        await self.reconciler.start()
        logger.info(f"[{session_id}] {self.user_id} connected")
        return self.reconciler.snapshot

    def connection_lost(self) -> None:
        if self.reconciler is None or self.reconciler.torn_down:
            return
        if self.reconnection is not None:
            self.reconnection.connection_lost()

    def mark_answered(self) -> None:
        if self.reconciler is not None:
            self.reconciler.mark_answered()

    def seconds_remaining(self) -> Optional[float]:
        if self.reconciler is None:
            return None
        return self.reconciler.seconds_remaining()

    def _game_ended(self, snapshot: GameSnapshot) -> None:
        self.final_snapshot = snapshot
        self.teardown()

    def _exhausted(self, error: ReconnectionExhausted) -> None:
        self.error = error
        self.teardown()

    def teardown(self) -> None:
        """Clear polls, backoff timer and subscriptions in one pass. Idempotent."""
        if self.reconnection is not None:
            self.reconnection.cancel()
        if self.reconciler is not None:
            self.reconciler.teardown()
        if self.session_id is not None:
            logger.debug(f"[{self.session_id}] {self.user_id} torn down")
