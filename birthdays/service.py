"""HTTP API for storing dates of birth and greeting users."""

from __future__ import annotations

import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import psutil
from fastapi import Depends, FastAPI, HTTPException, Path, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .calculator import today_utc
from .config import ServiceSettings, load_settings
from .database import ConnectionManager, ConstraintViolationError, DatabaseNotInitializedError
from .greetings import GreetingService
from .metrics import ServiceMetrics
from .ratelimit import RateLimiter
from .users import UserRepository

logger = logging.getLogger("birthdays.service")

USERNAME_PATTERN = r"^[a-zA-Z]+$"
_DATE_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class BirthdayUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_of_birth: date = Field(..., alias="dateOfBirth", description="Date of birth as YYYY-MM-DD")

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def _require_iso_format(cls, value: object) -> object:
        if not isinstance(value, str) or not _DATE_FORMAT.match(value.strip()):
            raise ValueError("Date of birth must use the YYYY-MM-DD format")
        return value.strip()

    @field_validator("date_of_birth")
    @classmethod
    def _require_past_date(cls, value: date) -> date:
        if value >= today_utc():
            raise ValueError("Date of birth must be before today")
        return value


class GreetingResponse(BaseModel):
    message: str


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _client_key(request: Request) -> str:
    if request.client is None:
        return "unknown"
    return request.client.host


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or "unmatched"


def _error_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]


def _build_rate_limit_dependency(limiter: Optional[RateLimiter]) -> Callable[[Request], None]:
    def dependency(request: Request) -> None:
        if limiter is None:
            return
        decision = limiter.hit(_client_key(request))
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s", _client_key(request))
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests from this IP, please try again later.",
                headers=decision.headers(),
            )

    return dependency


def register_greeting_routes(
    app: FastAPI,
    greetings: GreetingService,
    *,
    metrics: ServiceMetrics,
    rate_limit: Callable[[Request], None],
) -> None:
    """Expose ``/hello/{username}`` for saving birthdays and reading greetings."""

    @app.put(
        "/hello/{username}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=[Depends(rate_limit)],
    )
    async def update_birthday(
        payload: BirthdayUpdateRequest,
        username: str = Path(..., pattern=USERNAME_PATTERN, max_length=255),
    ) -> Response:
        outcome = await greetings.save_or_update(username, payload.date_of_birth)
        logger.info("Birthday %s for user: %s", outcome, username)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get(
        "/hello/{username}",
        response_model=GreetingResponse,
        dependencies=[Depends(rate_limit)],
    )
    async def get_birthday_message(
        username: str = Path(..., pattern=USERNAME_PATTERN, max_length=255),
    ) -> GreetingResponse:
        message = await greetings.get_message(username)
        if message is None:
            metrics.greetings.labels(outcome="not_found").inc()
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        metrics.greetings.labels(outcome="found").inc()
        return GreetingResponse(message=message)


def register_health_routes(
    app: FastAPI,
    manager: ConnectionManager,
    *,
    metrics: ServiceMetrics,
    environment: str,
) -> None:
    """Expose liveness, readiness and detailed health endpoints."""

    async def database_health() -> Dict[str, bool]:
        health = await manager.check_health()
        metrics.record_health(health.primary, health.read_replica)
        return health.as_dict()

    @app.get("/health/live")
    async def liveness() -> Dict[str, str]:
        return {"status": "ok", "timestamp": _timestamp()}

    @app.get("/health/ready")
    async def readiness() -> JSONResponse:
        database = await database_health()
        if database["primary"]:
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"status": "ready", "timestamp": _timestamp(), "database": database},
            )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not ready",
                "timestamp": _timestamp(),
                "database": database,
                "message": "Primary database is not available",
            },
        )

    @app.get("/health")
    async def detailed_health(request: Request) -> Dict[str, Any]:
        database = await database_health()
        memory = psutil.Process().memory_info()
        started_at = getattr(request.app.state, "started_at", time.monotonic())
        uptime_minutes = int((time.monotonic() - started_at) // 60)
        return {
            "status": "ok",
            "timestamp": _timestamp(),
            "uptime": f"{uptime_minutes} minutes",
            "memory": {
                "rss": f"{round(memory.rss / 1024 / 1024)} MB",
                "vms": f"{round(memory.vms / 1024 / 1024)} MB",
            },
            "database": database,
            "environment": environment,
        }


def register_error_handlers(app: FastAPI, *, environment: str) -> None:
    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = _error_details(exc)
        message = details[0]["msg"] if details else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Validation Error", "message": message, "details": details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(ConstraintViolationError)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolationError) -> JSONResponse:
        logger.warning(
            "Constraint violation on %s %s (%s, constraint=%s): %s",
            request.method,
            request.url.path,
            exc.kind,
            exc.constraint,
            exc,
        )
        if exc.kind == ConstraintViolationError.UNIQUE:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"error": "Conflict", "message": "Resource already exists"},
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Bad Request", "message": f"Invalid data: {exc}"},
        )

    @app.exception_handler(DatabaseNotInitializedError)
    async def handle_not_initialized(_: Request, exc: DatabaseNotInitializedError) -> JSONResponse:
        logger.error("Request received before the database was initialized")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": str(exc)},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        content: Dict[str, Any] = {"error": "Internal Server Error"}
        if environment == "development":
            content["message"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def create_app(
    *,
    settings: ServiceSettings | None = None,
    manager: ConnectionManager | None = None,
    rate_limiter: RateLimiter | None = None,
    metrics: ServiceMetrics | None = None,
    clock: Callable[[], date] | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    The database is initialized during application startup and released on
    shutdown, so no request is served before the pools and schema exist.
    """

    service_settings = settings or load_settings()
    db = manager or ConnectionManager(service_settings.database)
    service_metrics = metrics or ServiceMetrics()

    limiter = rate_limiter
    if limiter is None and service_settings.rate_limit.enabled:
        limiter = RateLimiter(
            service_settings.rate_limit.requests,
            service_settings.rate_limit.window_seconds,
        )

    greetings = GreetingService(UserRepository(db), clock=clock or today_utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await db.initialize()
        app.state.started_at = time.monotonic()
        logger.info("Birthday API ready (environment=%s)", service_settings.environment)
        try:
            yield
        finally:
            logger.info("Shutting down, closing database connections")
            try:
                await db.close()
            except Exception as exc:
                logger.error("Error closing database connections: %s", exc)

    app = FastAPI(
        title="Birthday Greeting API",
        version="1.0.0",
        description="Stores dates of birth and greets users on their birthday.",
        lifespan=lifespan,
    )

    app.state.database = db
    app.state.greetings = greetings
    app.state.metrics = service_metrics
    app.state.rate_limiter = limiter
    app.state.settings = service_settings

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.perf_counter() - started
            service_metrics.observe_request(request.method, _route_label(request), status_code, duration)
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                status_code,
                duration * 1000,
            )

    register_error_handlers(app, environment=service_settings.environment)
    register_greeting_routes(
        app,
        greetings,
        metrics=service_metrics,
        rate_limit=_build_rate_limit_dependency(limiter),
    )
    register_health_routes(
        app,
        db,
        metrics=service_metrics,
        environment=service_settings.environment,
    )

    @app.get("/metrics", include_in_schema=False)
    async def export_metrics() -> Response:
        return Response(content=service_metrics.render(), media_type=service_metrics.content_type)

    return app


__all__ = ["BirthdayUpdateRequest", "GreetingResponse", "create_app"]
