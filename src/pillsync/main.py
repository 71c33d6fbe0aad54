"""PillSync application entrypoint."""

import base64
import binascii
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from pillsync import database as db_module
from pillsync.config import settings
from pillsync.runtime import build_context
from pillsync.tasks.queue import TaskWorker

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

# Paths reachable without Basic auth
_PUBLIC_PATHS = ("/health",)
_PUBLIC_PREFIXES = ("/tasks/",)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    db_module.init_db(db_module.engine)
    logger.info("Database initialized at %s", settings.db_path)

    app.state.context = build_context(db_module.engine, settings)

    worker: TaskWorker | None = None
    if settings.task_worker_enabled:
        worker = TaskWorker(
            db_module.engine,
            poll_interval=settings.task_poll_interval,
            max_attempts=settings.task_max_attempts,
            retry_backoff=settings.task_retry_backoff,
        )
        await worker.start()
    else:
        logger.info("Task worker disabled")

    if not settings.check_missed_dose_url:
        logger.warning("check_missed_dose_url not configured; missed-dose checks are disabled")

    yield

    if worker is not None:
        await worker.stop()


app = FastAPI(
    title="PillSync",
    description="Dispenser state sync and missed-dose verification",
    version="0.1.0",
    lifespan=lifespan,
)


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic Authentication middleware.

    Protects all routes except /health and the task callbacks, which carry
    their own shared secret.
    """

    def __init__(self, app, username: str, password: str):
        super().__init__(app)
        self.username = username
        self.password = password

    async def dispatch(self, request, call_next):
        path = request.url.path
        if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Basic "):
            return self._unauthorized_response()

        try:
            decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
            provided_username, provided_password = decoded.split(":", 1)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return self._unauthorized_response()

        # Timing-safe comparison
        username_match = secrets.compare_digest(provided_username.encode(), self.username.encode())
        password_match = secrets.compare_digest(provided_password.encode(), self.password.encode())

        if not (username_match and password_match):
            return self._unauthorized_response()

        return await call_next(request)

    def _unauthorized_response(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="PillSync"'},
        )


if settings.auth_password:
    app.add_middleware(
        BasicAuthMiddleware, username=settings.auth_username, password=settings.auth_password
    )
    logger.info("HTTP Basic Auth enabled")


# Register routers
from pillsync.api.routes import router as api_router  # noqa: E402
from pillsync.api.tasks import router as tasks_router  # noqa: E402

app.include_router(api_router)
app.include_router(tasks_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting PillSync on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
