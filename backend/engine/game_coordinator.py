"""
Game Session Coordinator - authoritative lifecycle for trivia sessions.

Responsibilities:
- Create / start / join / advance / complete / cancel sessions
- Keep at most one active session per room
- Run question generation in the background and announce "questions ready"
- Route answers through the buzzer and scoring engine
- Drive the Jeopardy board (select, buzz, resolve, final round)
- Serialise commands per session through a CommandChannel

State machine: waiting → in_progress → completed, with cancelled reachable from
either non-terminal state. Nothing leaves a terminal state.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from agents.question_generator import question_generator
from engine.buzzer import BuzzerArbiter, BuzzerCycle, BuzzOutcome, TERMINAL_OUTCOMES
from engine.command_channel import CommandChannel
from engine.question_processor import GameQuestionProcessor
from engine.scoring import AnswerScoringEngine
from models.commands import CommandType, GameCommand
from models.errors import (
    BuzzerRejected, IllegalTransition, NotFound, PersistenceError, ValidationError,
)
from models.game import (
    AnswerRecord, GameConfig, GameQuestion, GameSession, GameType, JeopardyMode,
    JeopardyRound, mode_for,
)
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

QuestionsReadyListener = Callable[[str, int], Any]
EventListener = Callable[[str, str, Dict[str, Any]], Any]


async def _call_listener(listener: Callable, *args) -> None:
    result = listener(*args)
    if inspect.isawaitable(result):
        await result


class GameSessionCoordinator:
    def __init__(
        self,
        store,
        generator=None,
        processor: Optional[GameQuestionProcessor] = None,
        scoring: Optional[AnswerScoringEngine] = None,
        buzzer: Optional[BuzzerArbiter] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.generator = generator or question_generator
        self.processor = processor or GameQuestionProcessor()
        self.clock = clock
        self.scoring = scoring or AnswerScoringEngine(store, clock)
        self.buzzer = buzzer or BuzzerArbiter()

        self._channels: Dict[str, CommandChannel] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._generation_tasks: Dict[str, asyncio.Task] = {}
        self._ready_listeners: List[QuestionsReadyListener] = []
        self._event_listeners: List[EventListener] = []

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_questions_ready_listener(self, listener: QuestionsReadyListener) -> Callable[[], None]:
        self._ready_listeners.append(listener)
        return lambda: self._remove(self._ready_listeners, listener)

    def add_event_listener(self, listener: EventListener) -> Callable[[], None]:
        self._event_listeners.append(listener)
        return lambda: self._remove(self._event_listeners, listener)

    @staticmethod
    def _remove(listeners: List, listener: Callable) -> None:
        if listener in listeners:
            listeners.remove(listener)

    async def _emit(self, session_id: str, event: str, data: Dict[str, Any]) -> None:
        for listener in list(self._event_listeners):
            try:
                await _call_listener(listener, session_id, event, data)
            except Exception:
                logger.warning(f"[{session_id}] {event} listener failed", exc_info=True)

    async def _notify_ready(self, session_id: str, count: int) -> None:
        for listener in list(self._ready_listeners):
            try:
                await _call_listener(listener, session_id, count)
            except Exception:
                logger.warning(f"[{session_id}] questions-ready listener failed", exc_info=True)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _require(self, session_id: str) -> GameSession:
        session = await self.store.get_game_session(session_id)
        if session is None:
            raise NotFound(f"game session {session_id} not found", session_id)
        return session

    async def _require_question(self, session_id: str, question_id: str) -> GameQuestion:
        question = await self.store.get_game_question(session_id, question_id)
        if question is None:
            raise NotFound(f"question {question_id} not found", session_id)
        return question

    async def _critical(self, session_id: str, action: str, coro) -> GameSession:
        """Lifecycle writes: log persistence failures, then let them propagate."""
        try:
            return await coro
        except PersistenceError:
            logger.exception(f"[{session_id}] {action} failed")
            raise

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def create_game(
        self,
        room_id: str,
        host_id: str,
        game_type: Union[str, GameType],
        config: Union[GameConfig, Dict[str, Any], None] = None,
        study_source: Optional[str] = None,
    ) -> GameSession:
        """Persist a waiting session and start generating its questions in the background."""
        try:
            gtype = GameType(game_type)
        except ValueError:
            raise ValidationError(f"unknown game type: {game_type!r}")
        try:
            cfg = config if isinstance(config, GameConfig) else GameConfig(**(config or {}))
        except PydanticValidationError as e:
            raise ValidationError(f"invalid game config: {e.errors()[0]['msg']}") from e

        # Check-cancel-create must not interleave with another create for the same room
        async with self._room_lock(room_id):
            existing = await self.store.get_active_game_for_room(room_id)
            if existing is not None:
                logger.info(f"[{existing.id}] Cancelling previous game in room {room_id}")
                await self.cancel(existing.id)

            now = self.clock.now()
            session = GameSession(
                room_id=room_id,
                host_id=host_id,
                mode=mode_for(gtype, cfg),
                config=cfg,
                created_at=now,
                updated_at=now,
            )
            await self._critical(session.id, "create", self.store.create_game_session(session))
        await self.store.add_player(session.id, host_id)
        logger.info(f"[{session.id}] {session.display_name} created in room {room_id} by {host_id}")

        self._generation_tasks[session.id] = asyncio.get_running_loop().create_task(
            self._generate_questions(session, study_source),
            name=f"questions-{session.id}",
        )
        return session

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    async def _generate_questions(self, session: GameSession, study_source: Optional[str]) -> None:
        count = 0
        try:
            raw = await self.generator.generate(study_source, session.game_type, session.config)
            questions = self.processor.process(session, raw)
            if questions:
                await self.store.create_game_questions(session.id, questions)
            count = len(questions)
            if count:
                logger.info(f"[{session.id}] {count} questions ready")
            else:
                logger.warning(f"[{session.id}] Question generation produced nothing")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{session.id}] Question generation failed")
        finally:
            self._generation_tasks.pop(session.id, None)
        await self._notify_ready(session.id, count)

    async def wait_for_questions(self, session_id: str) -> None:
        task = self._generation_tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})

    async def start_game(self, session_id: str, user_id: Optional[str]) -> GameSession:
        """Host-only. waiting → in_progress."""
        session = await self._require(session_id)
        if user_id is None or user_id != session.host_id:
            raise IllegalTransition("only the host can start the game", session_id)
        if not session.is_waiting():
            raise IllegalTransition(f"cannot start a game that is {session.status.value}", session_id)
        questions = await self.store.get_game_questions(session_id)
        if not questions:
            raise IllegalTransition("questions are not ready yet", session_id)
        if not session.mode.grid and len(questions) < session.total_questions:
            raise IllegalTransition(
                f"only {len(questions)} of {session.total_questions} questions exist", session_id
            )

        if isinstance(session.mode, JeopardyMode):
            now = self.clock.now()

            def _start_board(s: GameSession) -> GameSession:
                started = s.started(now)
                return started.with_mode(
                    started.mode.model_copy(update={"current_player_id": s.host_id}), now
                )

            session = await self._critical(
                session_id, "start", self.store.update_session(session_id, _start_board)
            )
        else:
            session = await self._critical(session_id, "start", self.store.start_game(session_id))
        logger.info(f"[{session_id}] Game started")
        return session

    async def join_game(self, session_id: str, user_id: Optional[str] = None) -> GameSession:
        """Attach a participant. Never changes the session status."""
        session = await self._require(session_id)
        if user_id is not None and session.is_active():
            await self.store.add_player(session_id, user_id)
            logger.debug(f"[{session_id}] {user_id} joined")
        return session

    async def advance(self, session_id: str, expected_index: Optional[int] = None) -> GameSession:
        """Move to the next question, or complete the game after the last one."""
        session = await self._require(session_id)
        if not session.is_in_progress():
            raise IllegalTransition(f"cannot advance a game that is {session.status.value}", session_id)

        if isinstance(session.mode, JeopardyMode):
            return await self._advance_board(session)

        if expected_index is not None and expected_index != session.current_question_index:
            raise IllegalTransition(
                f"question {expected_index} is no longer current", session_id
            )
        # Check before incrementing so the index never runs past the question list
        if session.is_last_question():
            return await self.complete(session_id)

        session = await self._critical(
            session_id, "advance",
            self.store.next_question(session_id, session.current_question_index),
        )
        logger.info(f"[{session_id}] Question {session.current_question_index + 1}/{session.total_questions}")
        return session

    async def complete(self, session_id: str) -> GameSession:
        session = await self._critical(session_id, "complete", self.store.complete_game(session_id))
        logger.info(f"[{session_id}] Game completed")
        await self._finish(session_id)
        return session

    async def cancel(self, session_id: str) -> GameSession:
        """Cancel any non-terminal session. Already-ended sessions are returned unchanged."""
        session = await self._critical(session_id, "cancel", self.store.cancel_game(session_id))
        logger.info(f"[{session_id}] Game {session.status.value}")
        await self._finish(session_id)
        return session

    async def close_game(self, session_id: str) -> GameSession:
        session = await self._require(session_id)
        if session.is_in_progress():
            return await self.complete(session_id)
        if session.is_waiting():
            return await self.cancel(session_id)
        return session

    async def get_active_game(self, room_id: str) -> Optional[GameSession]:
        return await self.store.get_active_game_for_room(room_id)

    async def _finish(self, session_id: str) -> None:
        self.buzzer.discard(session_id)
        task = self._generation_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
        channel = self._channels.pop(session_id, None)
        if channel is not None:
            await channel.close()

    # ── Answers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _is_open(session: GameSession, question: GameQuestion) -> bool:
        if isinstance(session.mode, JeopardyMode):
            return session.mode.selected_question_id == question.id
        return question.question_index == session.current_question_index

    async def submit_answer(
        self,
        session_id: str,
        user_id: str,
        question_id: str,
        answer: str,
        time_taken_ms: Optional[int] = None,
        wager_amount: Optional[int] = None,
    ) -> AnswerRecord:
        session = await self._require(session_id)
        if not session.is_in_progress():
            raise IllegalTransition("game is not in progress", session_id)
        question = await self._require_question(session_id, question_id)
        if not self._is_open(session, question):
            raise IllegalTransition(f"question {question_id} is not open", session_id)

        submit = dict(
            question=question,
            user_id=user_id,
            answer=answer,
            wager=wager_amount,
            time_taken_ms=time_taken_ms,
            opened_at=session.question_opened_at,
        )

        if not isinstance(session.mode, JeopardyMode) or question.is_final_round:
            return await self.scoring.submit_answer(**submit)

        if question.is_daily_double:
            if user_id != session.mode.current_player_id:
                raise BuzzerRejected("only the selecting player answers a Daily Double", session_id)
            record = await self.scoring.submit_answer(**submit)
            winner = user_id if record.is_correct else None
            outcome = BuzzOutcome.CORRECT if record.is_correct else BuzzOutcome.EXHAUSTED
            await self._resolve_board_question(session_id, question.id, outcome, winner)
            return record

        cycle = await self._ensure_cycle(session, question)
        rank = cycle.require_answering(user_id)
        record = await self.scoring.submit_answer(buzzer_rank=rank, **submit)
        outcome = self.buzzer.record_answer(session_id, question.id, user_id, record.is_correct)
        await self._emit(session_id, "buzz", {
            "question_id": question.id,
            "user_id": user_id,
            "outcome": outcome.value,
            **cycle.to_dict(),
        })
        if outcome in TERMINAL_OUTCOMES:
            winner = user_id if outcome == BuzzOutcome.CORRECT else None
            await self._resolve_board_question(session_id, question.id, outcome, winner)
        return record

    # ── Jeopardy board ────────────────────────────────────────────────────────

    async def _ensure_cycle(self, session: GameSession, question: GameQuestion) -> BuzzerCycle:
        """The open buzzer cycle, rebuilt from stored answers if this process lost it."""
        cycle = self.buzzer.get(session.id, question.id)
        if cycle is not None:
            return cycle
        players = await self.store.get_players(session.id)
        cycle = self.buzzer.open(session.id, question.id, players)
        for record in await self.store.get_answers(session.id, question.id):
            if not record.is_correct:
                cycle.locked_out.add(record.user_id)
        return cycle

    async def select_question(self, session_id: str, question_id: str, user_id: str) -> GameSession:
        session = await self._require(session_id)
        if not isinstance(session.mode, JeopardyMode):
            raise IllegalTransition("question selection is only for Jeopardy", session_id)
        if not session.is_in_progress():
            raise IllegalTransition("game is not in progress", session_id)
        question = await self._require_question(session_id, question_id)
        if question.is_final_round:
            raise IllegalTransition("the final question cannot be picked from the board", session_id)

        now = self.clock.now()

        def _select(s: GameSession) -> GameSession:
            mode = s.mode
            if mode.round != JeopardyRound.REGULAR:
                raise IllegalTransition("the board is closed", s.id)
            if mode.selected_question_id is not None:
                raise IllegalTransition("a question is already open", s.id)
            if mode.current_player_id and user_id != mode.current_player_id:
                raise IllegalTransition(f"it is {mode.current_player_id}'s turn to pick", s.id)
            if question_id in mode.answered_question_ids:
                raise IllegalTransition("that question has already been played", s.id)
            return s.with_mode(mode.model_copy(update={"selected_question_id": question_id}), now)

        session = await self._critical(session_id, "select", self.store.update_session(session_id, _select))
        if not question.is_daily_double:
            players = await self.store.get_players(session_id)
            self.buzzer.open(session_id, question_id, players)
        logger.info(
            f"[{session_id}] {user_id} picked {question.category} for {question.points}"
            f"{' (Daily Double)' if question.is_daily_double else ''}"
        )
        return session

    async def buzz(self, session_id: str, question_id: str, user_id: str) -> int:
        session = await self._require(session_id)
        if not isinstance(session.mode, JeopardyMode) or not session.is_in_progress():
            raise BuzzerRejected("buzzing is not available", session_id)
        if session.mode.selected_question_id != question_id:
            raise BuzzerRejected(f"question {question_id} is not open", session_id)
        question = await self._require_question(session_id, question_id)
        if question.is_wager_question:
            raise BuzzerRejected("wager questions are not buzzed", session_id)

        cycle = await self._ensure_cycle(session, question)
        rank = self.buzzer.buzz(session_id, question_id, user_id)
        await self._emit(session_id, "buzz", {"question_id": question_id, "user_id": user_id, **cycle.to_dict()})
        return rank

    async def skip_question(
        self, session_id: str, question_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> GameSession:
        session = await self._require(session_id)
        if not isinstance(session.mode, JeopardyMode) or not session.is_in_progress():
            raise IllegalTransition("nothing to skip", session_id)
        selected = session.mode.selected_question_id
        if selected is None or (question_id is not None and question_id != selected):
            raise IllegalTransition("that question is not open", session_id)
        if self.buzzer.get(session_id, selected) is not None:
            self.buzzer.skip(session_id, selected)
        logger.info(f"[{session_id}] Question {selected} skipped{f' by {user_id}' if user_id else ''}")
        return await self._resolve_board_question(session_id, selected, BuzzOutcome.SKIPPED, None)

    async def _lowest_scorer(self, session_id: str) -> Optional[str]:
        players = await self.store.get_players(session_id)
        if not players:
            return None
        scores = {e.user_id: e.total_score for e in await self.store.get_game_leaderboard(session_id)}
        # min() keeps the first player in join order on ties
        return min(players, key=lambda p: scores.get(p, 0))

    async def _resolve_board_question(
        self,
        session_id: str,
        question_id: str,
        outcome: BuzzOutcome,
        winner: Optional[str],
    ) -> GameSession:
        """Close the open board question and pick who chooses next."""
        questions = await self.store.get_game_questions(session_id)
        next_player = winner or await self._lowest_scorer(session_id)
        final = next((q for q in questions if q.is_final_round), None)
        now = self.clock.now()
        board_done = False

        def _resolve(s: GameSession) -> GameSession:
            nonlocal board_done
            mode = s.mode
            if mode.selected_question_id != question_id:
                raise IllegalTransition(f"question {question_id} is already resolved", s.id)
            answered = mode.answered_question_ids + [question_id]
            left = [q for q in questions if not q.is_final_round and q.id not in answered]
            update: Dict[str, Any] = {
                "answered_question_ids": answered,
                "selected_question_id": None,
                "current_player_id": next_player or mode.current_player_id,
            }
            if not left and final is not None:
                update.update(round=JeopardyRound.FINAL, selected_question_id=final.id)
            board_done = not left
            return s.with_mode(mode.model_copy(update=update), now)

        session = await self._critical(session_id, "resolve", self.store.update_session(session_id, _resolve))
        self.buzzer.discard(session_id)
        await self._emit(session_id, "question_resolved", {
            "question_id": question_id,
            "outcome": outcome.value,
            "winner": winner,
            "next_player_id": session.mode.current_player_id,
            "round": session.mode.round.value,
        })
        if board_done and final is None:
            return await self.complete(session_id)
        if board_done:
            logger.info(f"[{session_id}] Board cleared, final round")
        return session

    async def _advance_board(self, session: GameSession) -> GameSession:
        mode = session.mode
        if mode.round == JeopardyRound.FINAL:
            return await self.complete(session.id)
        if mode.selected_question_id is not None:
            return await self.skip_question(session.id, mode.selected_question_id)
        raise IllegalTransition("no question is open; pick one from the board", session.id)

    # ── Commands ──────────────────────────────────────────────────────────────

    def open_channel(self, session_id: str) -> CommandChannel:
        channel = self._channels.get(session_id)
        if channel is None or channel.closed:
            channel = CommandChannel(session_id, self.handle_command)
            self._channels[session_id] = channel
        return channel

    async def dispatch(self, command: GameCommand) -> Any:
        """Queue a command behind any others for the same session and await its result."""
        return await self.open_channel(command.session_id).request(command)

    @staticmethod
    def _need(command: GameCommand, *fields: str) -> None:
        missing = [f for f in fields if getattr(command, f) is None]
        if missing:
            raise ValidationError(
                f"{command.type.value} requires {', '.join(missing)}", command.session_id
            )

    async def handle_command(self, command: GameCommand) -> Any:
        sid = command.session_id
        ctype = command.type

        if ctype == CommandType.SUBMIT_ANSWER:
            self._need(command, "user_id", "question_id", "answer")
            return await self.submit_answer(
                sid, command.user_id, command.question_id, command.answer,
                time_taken_ms=command.time_taken_ms, wager_amount=command.wager_amount,
            )

        elif ctype == CommandType.START_GAME:
            self._need(command, "user_id")
            return await self.start_game(sid, command.user_id)

        elif ctype == CommandType.CLOSE_GAME:
            return await self.close_game(sid)

        elif ctype == CommandType.EXIT_GAME:
            return await self.cancel(sid)

        elif ctype in (CommandType.NEXT_QUESTION, CommandType.TIMER_EXPIRED):
            return await self.advance(sid, command.expected_index)

        elif ctype == CommandType.BUZZ:
            self._need(command, "user_id", "question_id")
            return await self.buzz(sid, command.question_id, command.user_id)

        elif ctype == CommandType.SKIP_QUESTION:
            return await self.skip_question(sid, command.question_id, command.user_id)

        elif ctype == CommandType.SELECT_QUESTION:
            self._need(command, "user_id", "question_id")
            return await self.select_question(sid, command.question_id, command.user_id)

        raise ValidationError(f"unsupported command {ctype}", sid)

    async def shutdown(self) -> None:
        for task in list(self._generation_tasks.values()):
            task.cancel()
        await asyncio.gather(*self._generation_tasks.values(), return_exceptions=True)
        self._generation_tasks.clear()
        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()


_coordinator: Optional[GameSessionCoordinator] = None


def get_coordinator() -> GameSessionCoordinator:
    """Lazy singleton backed by Firestore. Use as a FastAPI dependency: Depends(get_coordinator)"""
    global _coordinator
    if _coordinator is None:
        from services.firestore_service import get_firestore_service
        _coordinator = GameSessionCoordinator(get_firestore_service())
    return _coordinator
