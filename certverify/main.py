import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, config
from .analysis_client import MistralAnalysisClient
from .audit import AuditLogger
from .cache import ResultCache
from .db import RecordStore, SqliteRecordStore
from .errors import LogError, VerificationError, http_status_for
from .health import perform_health_check
from .kv_backends import KeyValueStore, get_kv_backend
from .logging_config import configure_logging, event_log, get_request_id, log_fields, set_request_id
from .models import (
    ErrorResponse,
    LogsResponse,
    VerificationLogsResponse,
    VerificationResponse,
)
from .orchestrator import VerificationOrchestrator
from .rate_limit import FixedWindowRateLimiter
from .security import (
    IDENTIFIER_PATTERN,
    AuthenticationError,
    TokenClaims,
    ValidationError,
    extract_client_id,
    parse_bearer,
    sanitize_for_logging,
    validate_identifier,
    verify_auth_token,
)
from .util import generate_id, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators shared by every request."""
    store: RecordStore
    kv_store: KeyValueStore
    orchestrator: VerificationOrchestrator
    verify_limiter: FixedWindowRateLimiter
    logs_limiter: FixedWindowRateLimiter
    api_key: str = ""
    auth_secret: str = ""
    require_auth: bool = False

    def close(self) -> None:
        for resource in (self.store, self.kv_store):
            close = getattr(resource, "close", None)
            if close is not None:
                close()


def build_services() -> Services:
    """Wire the production collaborators from environment configuration."""
    store = SqliteRecordStore(config.DB_PATH)
    store.init_db()
    kv_store = get_kv_backend(config.KV_BACKEND)
    orchestrator = VerificationOrchestrator(
        store=store,
        cache=ResultCache(kv_store, config.CACHE_TTL_SECONDS),
        analysis_client=MistralAnalysisClient(
            api_url=config.MISTRAL_API_URL,
            model=config.MISTRAL_MODEL,
            timeout=config.ANALYSIS_TIMEOUT_SECONDS,
        ),
        log_store=kv_store,
        api_key=config.MISTRAL_API_KEY,
        cache_ttl_seconds=config.CACHE_TTL_SECONDS,
        log_ttl_seconds=config.AUDIT_LOG_TTL_SECONDS,
        recent_requests_limit=config.RECENT_REQUESTS_LIMIT,
        claims_enabled=config.CLAIMS_ENABLED,
        claim_lease_seconds=config.CLAIM_LEASE_SECONDS,
        decision_policy=config.DECISION_POLICY,
    )
    return Services(
        store=store,
        kv_store=kv_store,
        orchestrator=orchestrator,
        verify_limiter=FixedWindowRateLimiter(kv_store, config.VERIFY_RPM),
        logs_limiter=FixedWindowRateLimiter(kv_store, config.LOGS_RPM),
        api_key=config.MISTRAL_API_KEY,
        auth_secret=config.AUTH_SECRET,
        require_auth=config.REQUIRE_AUTH,
    )


# ============================================================
# Request helpers
# ============================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or get_request_id()


def _client_id(request: Request) -> str:
    return extract_client_id(request.headers, request.client.host if request.client else None)


def _error_response(request: Request, status_code: int, message: str, headers=None) -> JSONResponse:
    body = ErrorResponse(error=message, code=status_code, request_id=_request_id(request), timestamp=utc_now_iso())
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def rate_limited(endpoint: str, limiter_name: str):
    """Dependency counting the request against the named limiter; 429 once the window is full."""

    def dependency(request: Request, response: Response) -> None:
        limiter: FixedWindowRateLimiter = getattr(get_services(request), limiter_name)
        client_id = _client_id(request)
        result = limiter.check(client_id, endpoint)
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
        }
        if not result.allowed:
            event_log.rate_limit_exceeded(client_id, endpoint)
            headers["Retry-After"] = str(result.retry_after)
            raise HTTPException(429, "Too many requests, please try again later", headers=headers)
        response.headers.update(headers)

    return dependency


def authenticate(request: Request, services: Services) -> Optional[TokenClaims]:
    """
    Verify the bearer token when one is presented.

    A missing token is only an error when authentication is required.
    """
    try:
        token = parse_bearer(request.headers.get("authorization"))
        if token is None:
            if services.require_auth:
                raise AuthenticationError("Authentication required")
            return None
        return verify_auth_token(token, services.auth_secret)
    except AuthenticationError as e:
        event_log.authentication_failed(_client_id(request), str(e))
        raise HTTPException(401, str(e), headers={"WWW-Authenticate": "Bearer"})


def authorize_user(request: Request, services: Services, user_id: str) -> Optional[TokenClaims]:
    claims = authenticate(request, services)
    if claims is not None and claims.sub != user_id:
        event_log.security_event(
            "token_subject_mismatch",
            severity="high",
            client_id=_client_id(request),
            user_id=user_id,
        )
        raise HTTPException(403, "Token does not grant access to this user")
    return claims


# ============================================================
# Application
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = app.state.services is None
    if owned:
        configure_logging("DEBUG" if config.is_debug() else config.LOG_LEVEL, config.LOG_JSON)
        for name, ok in config.validate_config().items():
            if not ok:
                logger.warning("Configuration check failed: %s", name)
        if config.is_production() and not config.REQUIRE_AUTH:
            logger.warning("Running in production without REQUIRE_AUTH")
        app.state.services = build_services()
    logger.info("certverify API starting (env=%s, kv=%s)", config.ENV, config.KV_BACKEND)
    yield
    if owned:
        app.state.services.close()
        app.state.services = None
    logger.info("certverify API stopped")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Pass prebuilt services to run against fakes."""
    app = FastAPI(title="Certificate Verification Service", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials="*" not in config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-API-Key"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        incoming = request.headers.get("x-request-id", "")
        request_id = incoming if IDENTIFIER_PATTERN.match(incoming) else generate_id()
        request.state.request_id = request_id
        set_request_id(request_id)
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = int((time.monotonic() - start) * 1000)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra=log_fields(duration_ms=duration_ms, client_id=_client_id(request)),
        )
        return response

    # ------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(request, 400, f"Invalid {exc.field}: {exc.message}")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError):
        return _error_response(request, exc.http_status, exc.message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error on %s %s",
            request.method,
            request.url.path,
            extra=log_fields(headers=sanitize_for_logging(dict(request.headers))),
        )
        return _error_response(request, 500, "Internal server error")

    # ------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------

    @app.api_route(
        "/verify/{user_id}/{certificate_id}",
        methods=["GET", "POST"],
        response_model=VerificationResponse,
    )
    def verify_certificate(
        user_id: str,
        certificate_id: str,
        request: Request,
        response: Response,
        _: None = Depends(rate_limited("verify", "verify_limiter")),
    ):
        services = get_services(request)
        user_id = validate_identifier(user_id, "user_id")
        certificate_id = validate_identifier(certificate_id, "certificate_id")
        authorize_user(request, services, user_id)

        event_log.verification_request(user_id, certificate_id)
        start = time.monotonic()
        outcome = services.orchestrator.verify(user_id, certificate_id, _request_id(request))
        event_log.verification_outcome(
            certificate_id,
            outcome.success,
            outcome.status.value,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

        response.status_code = http_status_for(outcome.error_kind)
        return VerificationResponse(
            **outcome.model_dump(),
            request_id=_request_id(request),
            timestamp=utc_now_iso(),
        )

    @app.get("/logs", response_model=LogsResponse)
    def recent_logs(
        request: Request,
        limit: int = Query(10, ge=1, le=100),
        _: None = Depends(rate_limited("logs", "logs_limiter")),
    ):
        """Newest entry of each recent verification run."""
        services = get_services(request)
        authenticate(request, services)
        try:
            request_ids = AuditLogger.get_recent_request_ids(services.kv_store, limit)
            summaries = []
            for request_id in request_ids:
                entries = AuditLogger.get_request_logs(services.kv_store, request_id)
                if entries:
                    summaries.append(entries[0])
        except LogError as e:
            logger.error("Failed to list recent logs: %s", e)
            raise HTTPException(500, "Failed to retrieve logs")
        return LogsResponse(
            logs=summaries,
            pagination={"limit": limit, "count": len(summaries), "has_more": len(request_ids) == limit},
        )

    @app.get("/logs/{request_id}", response_model=LogsResponse)
    def request_logs(
        request_id: str,
        request: Request,
        _: None = Depends(rate_limited("logs", "logs_limiter")),
    ):
        services = get_services(request)
        request_id = validate_identifier(request_id, "request_id")
        authenticate(request, services)
        try:
            entries = AuditLogger.get_request_logs(services.kv_store, request_id)
        except LogError as e:
            logger.error("Failed to read logs of %s: %s", request_id, e)
            raise HTTPException(500, "Failed to retrieve logs")
        if not entries:
            raise HTTPException(404, "No logs found for this request")
        return LogsResponse(logs=entries, request_id=request_id)

    @app.get(
        "/users/{user_id}/certificates/{certificate_id}/verification-logs",
        response_model=VerificationLogsResponse,
    )
    def certificate_verification_logs(
        user_id: str,
        certificate_id: str,
        request: Request,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        _: None = Depends(rate_limited("logs", "logs_limiter")),
    ):
        """Durable verification trail of one certificate, newest first."""
        services = get_services(request)
        user_id = validate_identifier(user_id, "user_id")
        certificate_id = validate_identifier(certificate_id, "certificate_id")
        authorize_user(request, services, user_id)

        if services.store.get_certificate(user_id, certificate_id) is None:
            raise HTTPException(404, "Certificate not found")
        records = services.store.list_verification_logs(certificate_id, limit=limit, offset=offset)
        return VerificationLogsResponse(
            certificate_id=certificate_id,
            logs=records,
            pagination={"limit": limit, "offset": offset, "count": len(records)},
        )

    @app.get("/health")
    def health(request: Request):
        result = perform_health_check(get_services(request))
        return JSONResponse(status_code=503 if result["status"] == "error" else 200, content=result)

    return app


app = create_app()
