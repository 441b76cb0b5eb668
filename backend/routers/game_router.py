"""
Game HTTP endpoints.

Routes:
  POST /api/games                           - Create game (cancels any active game in the room)
  GET  /api/games/{session_id}              - Session state
  POST /api/games/{session_id}/join         - Participant joins
  POST /api/games/{session_id}/start        - Host starts the game
  POST /api/games/{session_id}/advance      - Next question (completes after the last)
  POST /api/games/{session_id}/cancel       - Exit mid-game
  POST /api/games/{session_id}/close        - Close from the completion screen
  GET  /api/games/{session_id}/question     - Current question (answer hidden)
  GET  /api/games/{session_id}/leaderboard  - Aggregated scores
  POST /api/games/{session_id}/answers      - Submit an answer
  POST /api/games/{session_id}/buzz         - Buzz in (Jeopardy)
  POST /api/games/{session_id}/select       - Pick a board question (Jeopardy)
  POST /api/games/{session_id}/skip         - Skip the open board question (Jeopardy)
  GET  /api/rooms/{room_id}/active-game     - The room's active session, if any

Mutating game commands go through the coordinator's per-session command
channel, so HTTP and WebSocket commands for one session never interleave.
Engine errors are mapped to status codes by the handler in main.py.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from engine.game_coordinator import GameSessionCoordinator, get_coordinator
from models.commands import CommandType, GameCommand
from models.errors import NotFound
from models.game import (
    ActorRequest, CreateGameRequest, CreateGameResponse, GameSession,
    QuestionActionRequest, SubmitAnswerRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["games"])


def session_view(session: GameSession) -> Dict[str, Any]:
    data = session.model_dump(mode="json")
    data.update(
        game_type=session.game_type.value,
        display_name=session.display_name,
        total_questions=session.total_questions,
        progress_percentage=session.progress_percentage(),
        duration_seconds=session.duration_seconds(),
    )
    return data


@router.post("/games", response_model=CreateGameResponse, status_code=201)
async def create_game(
    body: CreateGameRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    """Create a waiting session. Questions are generated in the background."""
    session = await coordinator.create_game(
        room_id=body.room_id,
        host_id=body.host_id,
        game_type=body.game_type,
        config=body.config,
        study_source=body.study_source,
    )
    return CreateGameResponse(session_id=session.id, status=session.status)


@router.get("/games/{session_id}")
async def get_game(session_id: str, coordinator: GameSessionCoordinator = Depends(get_coordinator)):
    session = await coordinator.store.get_game_session(session_id)
    if session is None:
        raise NotFound(f"game session {session_id} not found", session_id)
    return session_view(session)


@router.post("/games/{session_id}/join")
async def join_game(
    session_id: str,
    body: ActorRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.join_game(session_id, body.user_id)
    return session_view(session)


@router.post("/games/{session_id}/start")
async def start_game(
    session_id: str,
    body: ActorRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.START_GAME, session_id=session_id, user_id=body.user_id,
    ))
    return session_view(session)


@router.post("/games/{session_id}/advance")
async def advance(
    session_id: str,
    body: ActorRequest,
    expected_index: Optional[int] = Query(None, description="Index the caller is advancing from"),
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.NEXT_QUESTION, session_id=session_id,
        user_id=body.user_id, expected_index=expected_index,
    ))
    return session_view(session)


@router.post("/games/{session_id}/cancel")
async def cancel_game(
    session_id: str,
    body: ActorRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.EXIT_GAME, session_id=session_id, user_id=body.user_id,
    ))
    return session_view(session)


@router.post("/games/{session_id}/close")
async def close_game(
    session_id: str,
    body: ActorRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.CLOSE_GAME, session_id=session_id, user_id=body.user_id,
    ))
    return session_view(session)


@router.get("/games/{session_id}/question")
async def current_question(session_id: str, coordinator: GameSessionCoordinator = Depends(get_coordinator)):
    question = await coordinator.store.get_current_question(session_id)
    return {"question": question.to_client() if question else None}


@router.get("/games/{session_id}/leaderboard")
async def leaderboard(session_id: str, coordinator: GameSessionCoordinator = Depends(get_coordinator)):
    entries = await coordinator.store.get_game_leaderboard(session_id)
    return {"leaderboard": [e.model_dump() for e in entries]}


@router.post("/games/{session_id}/answers", status_code=201)
async def submit_answer(
    session_id: str,
    body: SubmitAnswerRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    record = await coordinator.dispatch(GameCommand(
        type=CommandType.SUBMIT_ANSWER,
        session_id=session_id,
        user_id=body.user_id,
        question_id=body.question_id,
        answer=body.answer,
        time_taken_ms=body.time_taken_ms,
        wager_amount=body.wager_amount,
    ))
    return record.model_dump(mode="json")


@router.post("/games/{session_id}/buzz")
async def buzz(
    session_id: str,
    body: QuestionActionRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    rank = await coordinator.dispatch(GameCommand(
        type=CommandType.BUZZ, session_id=session_id,
        user_id=body.user_id, question_id=body.question_id,
    ))
    return {"rank": rank}


@router.post("/games/{session_id}/select")
async def select_question(
    session_id: str,
    body: QuestionActionRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.SELECT_QUESTION, session_id=session_id,
        user_id=body.user_id, question_id=body.question_id,
    ))
    return session_view(session)


@router.post("/games/{session_id}/skip")
async def skip_question(
    session_id: str,
    body: QuestionActionRequest,
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.dispatch(GameCommand(
        type=CommandType.SKIP_QUESTION, session_id=session_id,
        user_id=body.user_id, question_id=body.question_id,
    ))
    return session_view(session)


@router.get("/rooms/{room_id}/active-game")
async def active_game(room_id: str, coordinator: GameSessionCoordinator = Depends(get_coordinator)):
    session = await coordinator.get_active_game(room_id)
    return {"session": session_view(session) if session else None}
