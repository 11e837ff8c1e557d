"""
FastAPI Emergency Access API Server

Public QR-scan endpoints for first responders plus API-key protected
endpoints for the access history, security metrics and registry search.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import ipaddress
import os
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.models import (
    AccessHistoryResponse,
    EmergencyAccessRequest,
    EmergencyAccessResponse,
    ErrorResponse,
    HealthResponse,
    RegistryRecordResponse,
    RegistrySearchResponse,
    SecurityAlertsResponse,
    SecurityMetricsResponse,
    TokenVerificationResponse,
)
from api.middleware import (
    RequestLoggingMiddleware,
    setup_cors,
    setup_exception_handlers,
)
from attempt_tracker import FailedAttemptTracker
from config_manager import ConfigManager, ConfigurationError, get_config
from credential_validation import CredentialEvaluator
from database.connection import DatabaseSessionProvider, init_db
from database.repositories import SqlAccessStore, SqlPatientDirectory
from emergency_access import (
    AccessOutcome,
    AccessOutcomeKind,
    AccessStore,
    EmergencyAccessService,
    LoggingNotifier,
    PatientDirectory,
)
from periodic import PeriodicTask
from rate_limit import FixedWindowRateLimiter
from registry_client import RegistryClient, is_health_title
from security_logger import SecurityLogger
from security_metrics import SecurityMetrics
from verification_cache import VerificationCache

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class ServiceState:
    """Everything the request handlers need, built once per process."""
    config: ConfigManager
    security_logger: SecurityLogger
    cache: VerificationCache
    registry: RegistryClient
    metrics: SecurityMetrics
    attempt_tracker: FailedAttemptTracker
    access_limiter: FixedWindowRateLimiter
    verify_limiter: FixedWindowRateLimiter
    service: EmergencyAccessService
    database: Optional[DatabaseSessionProvider] = None
    started_at: Optional[datetime] = None
    limiter_sweep: Optional[PeriodicTask] = None

    def _sweep_limiters(self) -> None:
        self.access_limiter.cleanup_expired()
        self.verify_limiter.cleanup_expired()

    def start(self) -> None:
        """Start the periodic sweeps of every stateful component."""
        self.cache.start()
        self.metrics.start()
        self.attempt_tracker.start()
        if self.limiter_sweep is None:
            self.limiter_sweep = PeriodicTask(
                "rate-limit-cleanup",
                self.config.emergency.rate_window_seconds,
                self._sweep_limiters
            )
        self.limiter_sweep.start()
        self.started_at = datetime.now(timezone.utc)

    async def stop(self) -> None:
        if self.limiter_sweep is not None:
            await self.limiter_sweep.stop()
        await self.attempt_tracker.stop()
        await self.metrics.stop()
        await self.service.aclose()
        await self.registry.aclose()
        await self.cache.shutdown()
        if self.database is not None:
            self.database.close()
        self.security_logger.close()


def build_state(
    config: ConfigManager,
    patient_directory: Optional[PatientDirectory] = None,
    access_store: Optional[AccessStore] = None,
    registry: Optional[RegistryClient] = None,
    security_logger: Optional[SecurityLogger] = None,
) -> ServiceState:
    """Wire the emergency access service from configuration.

    Patient directory and access store default to the SQL implementations
    on ``config.database``.
    """
    if security_logger is None:
        security_logger = SecurityLogger(
            log_dir=config.logging.security_log_dir,
            enable_console=config.logging.security_log_console,
            enable_file=config.logging.security_log_file
        )

    cache = VerificationCache.from_config(config.cache)
    if registry is None:
        registry = RegistryClient(config.registry, cache)

    metrics_config = config.security_metrics
    metrics = SecurityMetrics(
        thresholds=metrics_config.thresholds,
        max_alerts=metrics_config.max_alerts,
        security_logger=security_logger,
        cleanup_interval_seconds=metrics_config.cleanup_interval_seconds,
        counter_idle_hours=metrics_config.counter_idle_hours,
        alert_retention_days=metrics_config.alert_retention_days
    )

    emergency = config.emergency
    tracker = FailedAttemptTracker(
        window_seconds=emergency.failed_attempt_window_seconds,
        threshold=emergency.failed_attempt_threshold,
        security_logger=security_logger,
        sweep_interval_seconds=emergency.sweep_interval_seconds
    )
    access_limiter = FixedWindowRateLimiter(emergency.access_rate_limit, emergency.rate_window_seconds)
    verify_limiter = FixedWindowRateLimiter(emergency.verify_rate_limit, emergency.rate_window_seconds)

    database = None
    if patient_directory is None or access_store is None:
        database = init_db(config.database)
        patient_directory = patient_directory or SqlPatientDirectory(database)
        access_store = access_store or SqlAccessStore(database)

    service = EmergencyAccessService(
        evaluator=CredentialEvaluator(registry),
        patient_directory=patient_directory,
        access_store=access_store,
        metrics=metrics,
        attempt_tracker=tracker,
        access_limiter=access_limiter,
        verify_limiter=verify_limiter,
        security_logger=security_logger,
        notifier=LoggingNotifier(),
        min_response_ms=emergency.min_response_ms,
        jitter_ms=emergency.jitter_ms,
        access_token_ttl_minutes=emergency.access_token_ttl_minutes
    )

    return ServiceState(
        config=config,
        security_logger=security_logger,
        cache=cache,
        registry=registry,
        metrics=metrics,
        attempt_tracker=tracker,
        access_limiter=access_limiter,
        verify_limiter=verify_limiter,
        service=service,
        database=database,
    )


# Global state
_state: Optional[ServiceState] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load configuration, wire the service and own the background sweeps."""
    global _state

    try:
        config = get_config(CONFIG_PATH)
    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise

    logging.basicConfig(level=config.logging.level.upper(), format=config.logging.format)
    logger.info("🚀 Starting VIDA emergency access API...")

    _state = build_state(config)
    _state.start()
    logger.info(
        "✓ API ready: cache=%s registry_enabled=%s",
        _state.cache.backend_name,
        config.registry.enabled,
    )

    try:
        yield
    finally:
        logger.info("Shutting down VIDA emergency access API...")
        await _state.stop()
        _state = None


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_state() -> ServiceState:
    """Dependency to get the wired service state."""
    if _state is None:
        raise HTTPException(
            status_code=503, detail="Service not initialized. Service is starting up."
        )
    return _state


def _is_trusted_proxy(host: str, trusted_proxies: List[str]) -> bool:
    if not host:
        return False
    for entry in trusted_proxies:
        if host == entry:
            return True
        try:
            if ipaddress.ip_address(host) in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request, trusted_proxies: Optional[List[str]] = None) -> str:
    """Caller address used for rate limiting and attempt tracking.

    Forwarding headers are only honoured when the TCP peer is a configured
    trusted proxy. X-Forwarded-For is walked right to left and the first hop
    that is not itself a trusted proxy is the client.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = trusted_proxies or []
    if not _is_trusted_proxy(peer, trusted):
        return peer

    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop, trusted):
            return hop
    if hops:
        return hops[0]

    real_ip = request.headers.get("x-real-ip", "").strip()
    return real_ip or peer


def _outcome_response(outcome: AccessOutcome) -> JSONResponse:
    headers = {}
    if outcome.kind == AccessOutcomeKind.RATE_LIMITED and outcome.retry_after is not None:
        headers["Retry-After"] = str(max(1, int(round(outcome.retry_after))))
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict(), headers=headers or None)


# Create FastAPI application
app = FastAPI(
    title="VIDA Emergency Access API",
    description="Emergency access to patient data with professional credential trust scoring",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.post(
    "/api/v1/emergency/access",
    response_model=EmergencyAccessResponse,
    responses={
        200: {"model": EmergencyAccessResponse, "description": "Access granted"},
        400: {"model": ErrorResponse, "description": "Invalid input or credentials"},
        403: {"model": ErrorResponse, "description": "License not found in registry"},
        404: {"model": ErrorResponse, "description": "Patient not found"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    },
    summary="Emergency access by QR code",
    description="Grant a first responder access to a patient's emergency data",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": EmergencyAccessRequest.model_json_schema()}},
        }
    },
)
async def emergency_access(request: Request, state: ServiceState = Depends(get_state)):
    """Process a QR scan.

    The body is read as raw JSON so the per-IP rate limit applies before
    validation.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    outcome = await state.service.handle_access(
        payload,
        get_client_ip(request, state.config.api.trusted_proxies),
        request.headers.get("user-agent"),
    )
    return _outcome_response(outcome)


@app.get(
    "/api/v1/emergency/verify/{access_token}",
    response_model=TokenVerificationResponse,
    responses={
        200: {"model": TokenVerificationResponse, "description": "Token valid"},
        400: {"model": ErrorResponse, "description": "Malformed token"},
        401: {"model": ErrorResponse, "description": "Unknown or expired token"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
    summary="Verify an emergency access token",
)
async def verify_access_token(
    access_token: str,
    request: Request,
    state: ServiceState = Depends(get_state),
):
    outcome = await state.service.verify_access_token(
        access_token, get_client_ip(request, state.config.api.trusted_proxies)
    )
    return _outcome_response(outcome)


@app.get(
    "/api/v1/emergency/history/{patient_id}",
    response_model=AccessHistoryResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
    },
    summary="Emergency access history of a patient",
)
async def access_history(
    patient_id: str,
    state: ServiceState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    history = await state.service.get_access_history(patient_id)
    return AccessHistoryResponse(data=history)


@app.get(
    "/api/v1/security/metrics",
    response_model=SecurityMetricsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
    },
    summary="Security counters summary",
)
async def security_metrics(
    state: ServiceState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return SecurityMetricsResponse(data=state.metrics.get_metrics_summary())


@app.get(
    "/api/v1/security/alerts",
    response_model=SecurityAlertsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
    },
    summary="Recent security alerts, newest first",
)
async def security_alerts(
    limit: int = Query(default=20, ge=1, le=1000),
    state: ServiceState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    alerts = state.metrics.get_recent_alerts(limit)
    return SecurityAlertsResponse(data=[alert.to_dict() for alert in alerts])


@app.get(
    "/api/v1/registry/search",
    response_model=RegistrySearchResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing first name"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
    },
    summary="Search the professional license registry by name",
)
async def registry_search(
    first_name: str = Query(..., min_length=1, max_length=100, alias="firstName"),
    paternal_name: Optional[str] = Query(default=None, max_length=100, alias="paternalName"),
    maternal_name: Optional[str] = Query(default=None, max_length=100, alias="maternalName"),
    state: ServiceState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    records = await state.registry.search_by_name(first_name, paternal_name, maternal_name)
    data: List[RegistryRecordResponse] = [
        RegistryRecordResponse(
            licenseNumber=record.license_number,
            fullName=record.full_name,
            title=record.title,
            institution=record.institution,
            yearRegistered=record.year_registered,
            isHealthProfessional=is_health_title(record.title),
        )
        for record in records
    ]
    return RegistrySearchResponse(data=data)


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(state: ServiceState = Depends(get_state)):
    cache_health = await state.cache.health_check()
    database_ok = state.database.health_check() if state.database is not None else None

    status = "healthy"
    if cache_health.get("status") != "healthy" or database_ok is False:
        status = "degraded"

    uptime = None
    if state.started_at is not None:
        uptime = int((datetime.now(timezone.utc) - state.started_at).total_seconds())

    return HealthResponse(
        status=status,
        cache=cache_health,
        registry=state.registry.get_service_info(),
        database=database_ok,
        uptime_seconds=uptime,
    )


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """Prometheus exposition of the security and database counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
