import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from models.errors import (
    GameError, ValidationError, InvalidWager, IllegalTransition, NotFound, PersistenceError,
)

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

# Checked in order, so subclasses (DuplicateAnswer, BuzzerRejected) inherit their parent's code
ERROR_STATUS = [
    (ValidationError, 422),
    (InvalidWager, 422),
    (IllegalTransition, 409),
    (NotFound, 404),
    (PersistenceError, 503),
]


def status_for(exc: GameError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    from engine.game_coordinator import get_coordinator
    from routers.ws_router import attach_broadcasts

    logger.info("Trivia game engine starting up...")
    # Honour test overrides so startup never touches Firestore there
    coordinator = app.dependency_overrides.get(get_coordinator, get_coordinator)()
    attach_broadcasts(coordinator)
    yield
    await coordinator.shutdown()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Trivia Sync",
    version="0.1.0",
    description="Realtime multiplayer trivia game engine",
    lifespan=lifespan,
)

origins = list(settings.allowed_origins)
if settings.extra_origin:
    origins.append(settings.extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"[{exc.session_id}] {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "trivia-sync", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
