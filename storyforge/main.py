import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyforge.api import playback
from storyforge.api.websocket import PlaybackNotifier, WebSocketManager
from storyforge.config import get_settings
from storyforge.exceptions import StoryforgeError
from storyforge.render.player import TimelinePlayer

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    player = TimelinePlayer()
    manager = WebSocketManager()
    player.add_listener(PlaybackNotifier(manager))
    app.state.player = player
    app.state.websocket_manager = manager
    yield
    # Shutdown: an unfinished run must not outlive the app
    run = app.state.player.active_run
    if run is not None and run.task is not None:
        run.task.cancel()
        try:
            await run.task
        except asyncio.CancelledError:
            logger.info(f"Run {run.id} stopped on shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoryforgeError)
async def storyforge_exception_handler(request: Request, exc: StoryforgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Routers
app.include_router(playback.router, prefix="/api", tags=["playback"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}


@app.get("/api/version")
async def get_version() -> dict[str, str]:
    """Return the backend version info."""
    return {"version": settings.app_version, "git_hash": settings.git_hash}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting {settings.app_name} {settings.app_version}")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
