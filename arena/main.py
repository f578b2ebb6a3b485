import logging
from contextlib import asynccontextmanager

from docker.errors import DockerException
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from arena.db import init_db
from arena.errors import ArenaError
from arena.platform import Arena, get_container_runtime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    runtime = get_container_runtime()
    arena = Arena.from_settings(runtime=runtime)
    app.state.arena = arena
    arena.start()
    logger.info("Arena started")
    yield
    arena.shutdown()
    # Containers left behind by a previous crash carry the managed label too
    if runtime is not None:
        logger.info("Cleaning up sandbox containers...")
        try:
            runtime.cleanup_all_managed()
        except DockerException as e:
            logger.warning(f"Cleanup error: {e}")


app = FastAPI(title="Arena CTF", version="0.1.0", lifespan=lifespan)


@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError):
    if exc.detail:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.detail}")
    return JSONResponse({"detail": exc.client_message}, status_code=exc.status_code)


@app.get("/health")
async def health():
    return {"status": "ok"}


# Import routers after app is created to avoid circular imports
from arena.api.challenges import router as challenges_router  # noqa: E402
from arena.api.logs import router as logs_router  # noqa: E402
from arena.api.scoreboard import router as scoreboard_router  # noqa: E402
from arena.auth.router import router as auth_router  # noqa: E402

app.include_router(auth_router)
app.include_router(challenges_router)
app.include_router(scoreboard_router)
app.include_router(logs_router)
