import os
import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from loginguard.api.admin import router as admin_router
from loginguard.api.login import router as login_router
from loginguard.core.api_response import error_response_payload, get_request_id
from loginguard.core.errors import ChallengeExpired, PolicyBlock, RetryExhausted, TransientStoreError
from loginguard.core.metrics import increment_counter, prometheus_text
from loginguard.db.session import SessionLocal
from loginguard.services.engine import DECISION_BLOCK, REASON_RATE_LIMITED
from loginguard.services.settings import get_protection_settings, seed_default_rate_limits

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    if os.getenv("LOGINGUARD_SEED_DEFAULTS", "true").strip().lower() in {"1", "true", "yes", "on"}:
        db: Session = SessionLocal()
        try:
            created = seed_default_rate_limits(db)
            get_protection_settings(db)
            logger.info("startup.seeded rate_limits=%s", created)
        finally:
            db.close()
    yield


app = FastAPI(title="LoginGuard API", lifespan=lifespan)
app.include_router(login_router)
app.include_router(admin_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000
    response.headers["X-Request-ID"] = request_id
    if request.url.path != "/metrics/prometheus":
        increment_counter(
            "http_requests_total",
            method=request.method.upper(),
            path=request.url.path,
            status=str(response.status_code),
        )
    logger.info(
        "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _error_response(request: Request, status_code: int, *, code: str, message: str, details=None, headers=None):
    increment_counter(
        "http_errors_total",
        code=str(status_code),
        path=request.url.path,
        method=request.method.upper(),
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response_payload(request, code=code, message=message, details=details),
        headers=headers,
    )


@app.exception_handler(PolicyBlock)
async def policy_block_handler(request: Request, exc: PolicyBlock):
    status_code = 429 if exc.reason == REASON_RATE_LIMITED else 403
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return _error_response(
        request,
        status_code,
        code=exc.reason,
        message="Sign-in blocked",
        details={"decision": DECISION_BLOCK, "reason": exc.reason, "retry_after": exc.retry_after},
        headers=headers,
    )


@app.exception_handler(TransientStoreError)
async def transient_store_handler(request: Request, exc: TransientStoreError):
    logger.warning("store_unavailable request_id=%s component=%s", get_request_id(request), exc.component)
    return _error_response(
        request,
        503,
        code="store_unavailable",
        message="Protection store temporarily unavailable",
        details={"component": exc.component},
    )


@app.exception_handler(ChallengeExpired)
async def challenge_expired_handler(request: Request, exc: ChallengeExpired):
    return _error_response(request, 410, code="challenge_expired", message=str(exc) or "Challenge expired")


@app.exception_handler(RetryExhausted)
async def retry_exhausted_handler(request: Request, exc: RetryExhausted):
    return _error_response(request, 423, code="retry_exhausted", message=str(exc) or "Too many attempts")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        message = str(detail.get("message", "Request failed"))
    else:
        message = "Request failed"
    return _error_response(
        request,
        exc.status_code,
        code=f"http_{exc.status_code}",
        message=message,
        details=detail,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        request,
        422,
        code="validation_error",
        message="Validation error",
        details=exc.errors(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
    return _error_response(request, 500, code="internal_error", message="Internal server error")


@app.get("/health")
def health(request: Request):
    return {"ok": True, "status": "ok", "request_id": get_request_id(request)}


@app.get("/metrics/prometheus")
def metrics_prometheus():
    return PlainTextResponse(content=prometheus_text(), media_type="text/plain; version=0.0.4; charset=utf-8")
