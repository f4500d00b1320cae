import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import auth, feedback, notifications, slots, student_requests, users, ws
from app.core.config import _ENV_FILE, settings
from app.core.db import async_session_maker, init_db
from app.core.errors import SchedulingError
from app.services.notification_service import NotificationEmitter
from app.services.waitlist_service import expire_stale_requests

if not settings.is_production:
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


async def _run_housekeeping() -> None:
    """Close waitlist entries and alternate offers whose date has passed."""
    try:
        async with async_session_maker() as session:
            emitter = NotificationEmitter(session)
            try:
                n = await expire_stale_requests(session, emitter)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        if n:
            logger.info("Housekeeping: closed %d expired request(s)", n)
        await emitter.deliver()
    except Exception as e:
        logger.exception("Housekeeping failed: %s", e)


async def _housekeeping_loop() -> None:
    while True:
        await asyncio.sleep(settings.housekeeping_interval_seconds)
        await _run_housekeeping()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    if settings.auto_create_tables:
        await init_db()
    await _run_housekeeping()
    task = asyncio.create_task(_housekeeping_loop())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="Therapy Scheduling API",
    description="Campus therapy scheduling: slots, requests, waitlists, feedback, notifications",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(slots.router, prefix="/api")
app.include_router(student_requests.router, prefix="/api")
app.include_router(feedback.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(ws.router)


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the real error; clients get a generic 500 with CORS headers."""
    headers = _cors_headers(request.headers.get("origin"))
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
