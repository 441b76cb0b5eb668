"""
Bounded per-session command queue between the transport layer and the coordinator.

Commands for one session are handled strictly one at a time, in arrival order,
so two clients racing on "next question" resolve to one advance and one
IllegalTransition rather than interleaving.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from config import settings
from models.commands import GameCommand
from models.errors import IllegalTransition

logger = logging.getLogger(__name__)

Handler = Callable[[GameCommand], Awaitable[Any]]


class CommandChannel:
    def __init__(self, session_id: str, handler: Handler, maxsize: Optional[int] = None):
        self.session_id = session_id
        self._handler = handler
        self._queue: "asyncio.Queue[Tuple[GameCommand, asyncio.Future]]" = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else settings.command_queue_size
        )
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._busy = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(
                self.run(), name=f"commands-{self.session_id}"
            )

    async def request(self, command: GameCommand) -> Any:
        """Enqueue a command and wait for the coordinator's result (or error)."""
        if self._closed:
            raise IllegalTransition("command channel is closed", self.session_id)
        self.start()
        future = asyncio.get_running_loop().create_future()
        # Blocks when the queue is full
        await self._queue.put((command, future))
        if self._closed:
            # Closed while this request waited for room in the queue
            self._reject_queued()
        return await future

    async def run(self) -> None:
        while not self._closed:
            command, future = await self._queue.get()
            self._busy = True
            try:
                if future.cancelled():
                    continue
                try:
                    result = await self._handler(command)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._busy = False
                self._queue.task_done()

    def _reject_queued(self) -> None:
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._queue.task_done()
            if not future.done():
                future.set_exception(IllegalTransition("command channel closed", self.session_id))

    async def close(self) -> None:
        """Reject queued commands and wait for the one in flight, if any, to finish."""
        self._closed = True
        self._reject_queued()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            if not self._busy:
                # Idle worker is parked on an empty queue
                worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
            self._reject_queued()
        logger.debug(f"[{self.session_id}] Command channel closed")
