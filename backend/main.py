from fastapi import FastAPI, Request, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import logging
import time
import uuid

from api_admin import router as admin_router
from api_messages import router as messages_router
from api_session import router as session_router
from api_voice import router as voice_router
from api_voice_stream import router as voice_stream_router
from api_wallet import router as wallet_router

from config import CORS_ORIGINS, REQUEST_TIMEOUT_SECONDS, STORAGE_BACKEND
from config_webhooks import get_webhook_routes
from dependencies import current_voice_coordinator
from middleware_timeout import TimeoutMiddleware
from request_identity import structured_log_line
from services_chat import ConversationNotFound
from services_rate_limit import QuotaExceeded
from services_tts import SynthesisError

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("au_gold")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: validate webhook routing and create tables.
    Shutdown: tear down any live voice streams.
    """
    # Raises ValueError on a missing or non-http(s) route; startup must fail.
    routes = get_webhook_routes(force_reload=True)
    logger.info(structured_log_line({"event": "startup_webhook_routes", "count": len(routes.urls)}))

    if STORAGE_BACKEND == "postgres":
        from db_postgres import init_postgres_db
        init_postgres_db()
        logger.info("[startup] Postgres schema ready")

    yield

    coordinator = current_voice_coordinator()
    if coordinator is not None:
        logger.info(f"[shutdown] Closing {coordinator.active_count} voice stream(s)")
        await coordinator.close_all()


app = FastAPI(
    title="AU Gold Backend",
    description="Token-gated AI chat with tiered quotas, personality enrichment and streaming voice.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TimeoutMiddleware, timeout_seconds=REQUEST_TIMEOUT_SECONDS)

# CORS is added last so it wraps everything, including timeout responses
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(session_router)
app.include_router(wallet_router)
app.include_router(messages_router)
app.include_router(voice_router)
app.include_router(voice_stream_router)
app.include_router(admin_router)


@app.middleware("http")
async def observability(request: Request, call_next):
    start = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id

    response = None
    try:
        response = await call_next(request)
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        status_code = getattr(response, "status_code", 500)

        logger.info(
            structured_log_line(
                {
                    "event": "request",
                    "request_id": request_id,
                    # Set by get_current_session once the session is resolved
                    "session_id": getattr(request.state, "session_id", None),
                    "route": request.url.path,
                    "method": request.method,
                    "status": status_code,
                    "latency_ms": latency_ms,
                }
            )
        )

    if isinstance(response, Response):
        response.headers["x-request-id"] = request_id
    return response


# Domain errors -> stable client-facing codes
@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    # Logged at info by the rate limiter; a denial is not an error.
    return JSONResponse(
        status_code=429,
        content={
            "code": "rate_limited",
            "detail": f"{exc.resource.value} limit reached",
            "resource": exc.resource.value,
            "reset_time": exc.result.reset_time.isoformat(),
            "remaining": exc.result.remaining,
            "limit": exc.result.limit,
        },
    )


@app.exception_handler(ConversationNotFound)
async def conversation_not_found_handler(request: Request, exc: ConversationNotFound):
    logger.warning(
        f"Conversation not found on {request.method} {request.url.path}",
        extra={"session_id": getattr(request.state, "session_id", None), "path": request.url.path},
    )
    return JSONResponse(
        status_code=404,
        content={"code": "conversation_not_found", "detail": "Conversation not found"},
    )


@app.exception_handler(SynthesisError)
async def synthesis_error_handler(request: Request, exc: SynthesisError):
    logger.error(
        f"Speech synthesis failed on {request.method} {request.url.path}: {exc}",
        extra={"session_id": getattr(request.state, "session_id", None), "path": request.url.path},
    )
    return JSONResponse(
        status_code=502,
        content={"code": "synthesis_failed", "detail": "Speech synthesis failed"},
    )


# Centralized error handling
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTP exceptions (4xx, 5xx).
    Logs the error with appropriate level and returns JSON response.
    """
    # Log 4xx errors at WARNING level, 5xx at ERROR level
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code} error on {request.method} {request.url.path}",
            extra={
                "status_code": exc.status_code,
                "method": request.method,
                "path": request.url.path,
                "detail": exc.detail,
            },
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})

    logger.warning(
        f"HTTP {exc.status_code} error on {request.method} {request.url.path}: {exc.detail}",
        extra={
            "status_code": exc.status_code,
            "method": request.method,
            "path": request.url.path,
            "detail": exc.detail,
        },
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle request validation errors (422).
    These are client errors, so log at WARNING level.
    """
    logger.warning(
        f"Validation error on {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "errors": exc.errors(),
        },
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unhandled exceptions.
    Logs full stack trace but returns sanitized error message to client.
    """
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "session_id": getattr(request.state, "session_id", None),
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
        },
    )

    # Return sanitized error message (don't leak internal details)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/api/health")
def health():
    return {"status": "ok"}
