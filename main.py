# main.py
# Creates the FastAPI app, configures logging and Sentry, builds the storage
# backend once from config, adds middleware and includes the routers.
import contextvars
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from limits.util import parse_many
from pythonjsonlogger import jsonlogger
from sentry_sdk.integrations.logging import LoggingIntegration
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from config import ALGORITHM, SECRET_KEY, SENTRY_DSN, load_storage_config
from db.database import create_db_and_tables
from rate_limiter import get_dynamic_rate_limit, limiter
from routers import auth as auth_router
from routers import health as health_router
from routers import images as images_router
from routers import processing as processing_router
from routers import watermark as watermark_router
from services.storage_service import StorageService

RequestResponseCall = Callable[[StarletteRequest], Awaitable[StarletteResponse]]


# --- Logging Configuration ---
log_handler = logging.StreamHandler()
formatter = jsonlogger.JsonFormatter(
    '%(asctime)s %(levelname)s %(name)s %(module)s %(funcName)s %(lineno)d %(message)s '
    '%(request_id)s %(user_id)s %(path)s %(method)s %(status_code)s %(response_time_ms)s'
)
log_handler.setFormatter(formatter)

root_logger = logging.getLogger()
root_logger.setLevel(logging.INFO)
for handler in root_logger.handlers[:]:
    root_logger.removeHandler(handler)
root_logger.addHandler(log_handler)

logger = logging.getLogger(__name__)

# Request context for log records. Worker threads of a batch start without it.
request_id_var = contextvars.ContextVar("request_id", default="N/A")
user_id_var = contextvars.ContextVar("user_id", default=None)

_original_record_factory = logging.getLogRecordFactory()

def _record_factory(*args, **kwargs):
    record = _original_record_factory(*args, **kwargs)
    record.request_id = request_id_var.get()
    record.user_id = user_id_var.get()
    return record

logging.setLogRecordFactory(_record_factory)


# --- Sentry Initialization ---
if SENTRY_DSN and SENTRY_DSN != "your-sentry-dsn-goes-here":
    sentry_logging = LoggingIntegration(
        level=logging.DEBUG,
        event_level=logging.ERROR
    )
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[sentry_logging],
        traces_sample_rate=1.0,
    )
    logger.info("Sentry initialized.")
else:
    logger.warning("Sentry DSN not found or is a placeholder. Sentry will not be initialized.")


# --- Middleware Definitions ---

class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next: RequestResponseCall) -> StarletteResponse:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        user_id_for_log = "anonymous"
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() == "bearer" and token:
            try:
                payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
                user_id_for_log = payload.get("user_id") or payload.get("sub")
            except JWTError:
                pass  # Invalid or expired tokens are rejected by the endpoint itself.
        request.state.user_id = user_id_for_log

        request_token = request_id_var.set(request_id)
        user_token = user_id_var.set(user_id_for_log)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(request_token)
            user_id_var.reset(user_token)

        response.headers['X-Request-ID'] = request_id
        return response

class ResponseTimeLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next: RequestResponseCall) -> StarletteResponse:
        start_time = time.time()
        response = await call_next(request)
        process_time_ms = (time.time() - start_time) * 1000
        log_details = {
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "response_time_ms": round(process_time_ms, 2)
        }
        logger.info("Request processed", extra=log_details)
        return response

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next: RequestResponseCall) -> StarletteResponse:
        response = await call_next(request)
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Content-Security-Policy'] = "default-src 'self'; object-src 'none'; frame-ancestors 'none';"
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

class RateLimitHeaderMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next: RequestResponseCall) -> StarletteResponse:
        response = await call_next(request)
        key = getattr(request.state, 'rate_limit_key', None)
        if key:
            limits = parse_many(get_dynamic_rate_limit(key))
            if limits:
                response.headers["X-RateLimit-Limit"] = str(limits[0].amount)
        return response


async def custom_rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Adds rate limit headers to 429 responses."""
    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": f"Rate limit exceeded: {exc.detail}"}
    )
    limit = getattr(exc, "limit", None)
    if limit is not None and getattr(limit, "limit", None) is not None:
        response.headers["X-RateLimit-Limit"] = str(limit.limit.amount)
        response.headers["X-RateLimit-Remaining"] = "0"
    return response


# --- Application Setup ---

storage_config = load_storage_config()
storage_service = StorageService(storage_config)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    create_db_and_tables()
    logger.info("Database tables checked/created.")
    yield
    logger.info("Application shutting down.")


app = FastAPI(
    lifespan=lifespan,
    title="Real Estate Photo Enhancement API",
    description="An API for uploading, enhancing, watermarking and batch-processing property photos.",
    version="1.0.0"
)

app.state.storage = storage_service

# Local storage mode serves stored blobs under LOCAL_URL_BASE.
if storage_config.provider == "local":
    app.mount(storage_config.url_base, StaticFiles(directory=storage_config.root), name="static")

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, custom_rate_limit_exceeded_handler)

# First added is innermost
app.add_middleware(RateLimitHeaderMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ResponseTimeLoggingMiddleware)
app.add_middleware(RequestIdMiddleware)


# --- Include Routers ---
app.include_router(auth_router.router, tags=["Authentication"])
app.include_router(health_router.router, tags=["Health"])
app.include_router(images_router.router, tags=["Image Upload"])
app.include_router(processing_router.router, tags=["Image Processing"])
app.include_router(watermark_router.router, tags=["Watermark"])


@app.get("/", tags=["Root"])
async def root():
    return {"message": "Real Estate Photo Enhancement API is running."}
