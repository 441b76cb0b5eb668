"""
WebSocket hub.

Each player opens /ws/{session_id}?userId=... and sends command messages of
the form {"type": <CommandType>, "data": {...}}. Every command gets exactly one
reply: {"type": "result", ...} or {"type": "error", "code", "message"}.
Coordinator events (buzz, question_resolved, questions_ready) are broadcast to
everyone connected to the session.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError as PydanticValidationError

from engine.game_coordinator import GameSessionCoordinator, get_coordinator
from models.commands import CommandType, GameCommand
from models.errors import GameError

logger = logging.getLogger(__name__)

router = APIRouter()

# Fields a client may set on a command; user_id always comes from the connection
COMMAND_FIELDS = ("question_id", "answer", "time_taken_ms", "wager_amount", "expected_index")


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections per session.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {session_id: {user_id: WebSocket}}
        self._sessions: Dict[str, Dict[str, WebSocket]] = {}

    async def connect(self, session_id: str, user_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._sessions.setdefault(session_id, {})[user_id] = ws
        logger.debug(f"[{session_id}] {user_id} connected ({self.count(session_id)} total)")

    def disconnect(self, session_id: str, user_id: str) -> None:
        conns = self._sessions.get(session_id, {})
        conns.pop(user_id, None)
        if not conns:
            self._sessions.pop(session_id, None)

    def count(self, session_id: str) -> int:
        return len(self._sessions.get(session_id, {}))

    async def send_to(self, session_id: str, user_id: str, message: Dict) -> None:
        ws = self._sessions.get(session_id, {}).get(user_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{session_id}] send_to {user_id} failed: {exc}")
                self.disconnect(session_id, user_id)

    async def broadcast(self, session_id: str, message: Dict) -> None:
        for uid, ws in list(self._sessions.get(session_id, {}).items()):
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{session_id}] broadcast to {uid} failed: {exc}")
                self.disconnect(session_id, uid)


manager = ConnectionManager()


def attach_broadcasts(coordinator: GameSessionCoordinator, conns: ConnectionManager = manager) -> None:
    """Fan coordinator events out to every socket on the session."""

    async def on_questions_ready(session_id: str, count: int) -> None:
        await conns.broadcast(session_id, {"type": "questions_ready", "data": {"count": count}})

    async def on_event(session_id: str, event: str, data: Dict[str, Any]) -> None:
        await conns.broadcast(session_id, {"type": event, "data": data})

    coordinator.add_questions_ready_listener(on_questions_ready)
    coordinator.add_event_listener(on_event)


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{session_id}")
async def websocket_endpoint(
    ws: WebSocket,
    session_id: str,
    userId: str = Query(..., description="Participant id"),
    coordinator: GameSessionCoordinator = Depends(get_coordinator),
):
    session = await coordinator.store.get_game_session(session_id)
    if not session:
        await ws.close(code=4404, reason="Game not found")
        return

    await manager.connect(session_id, userId, ws)
    session = await coordinator.join_game(session_id, userId)
    await manager.send_to(session_id, userId, {
        "type": "connected",
        "userId": userId,
        "session": session.model_dump(mode="json"),
    })

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(session_id, userId, {
                    "type": "error", "code": "PARSE_ERROR", "message": "Invalid JSON",
                })
                continue
            if not isinstance(data, dict):
                data = {}
            msg_type = data.get("type", "")
            inner = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(coordinator, session_id, userId, msg_type, inner)
    except WebSocketDisconnect:
        logger.debug(f"[{session_id}] {userId} disconnected")
    finally:
        manager.disconnect(session_id, userId)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    coordinator: GameSessionCoordinator,
    session_id: str,
    user_id: str,
    msg_type: str,
    data: Dict,
) -> None:
    if msg_type == "ping":
        await manager.send_to(session_id, user_id, {"type": "pong"})
        return

    try:
        command = GameCommand(
            type=CommandType(msg_type),
            session_id=session_id,
            user_id=user_id,
            **{k: data[k] for k in COMMAND_FIELDS if k in data},
        )
    except (ValueError, PydanticValidationError):
        await manager.send_to(session_id, user_id, {
            "type": "error",
            "code": "UNKNOWN_TYPE",
            "message": f"Unknown or malformed message: '{msg_type}'",
        })
        return

    try:
        result = await coordinator.dispatch(command)
    except GameError as exc:
        await manager.send_to(session_id, user_id, {
            "type": "error", "code": exc.code, "message": exc.message,
        })
        return
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", session_id, msg_type)
        await manager.send_to(session_id, user_id, {
            "type": "error", "code": "SERVER_ERROR", "message": "Internal server error",
        })
        return

    await manager.send_to(session_id, user_id, {
        "type": "result",
        "command": command.type.value,
        "data": _jsonable(result),
    })
