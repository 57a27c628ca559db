from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class DREngineError(Exception):
    """Base class for errors raised by the DR engine services."""

    code = "dr_error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(DREngineError):
    """Invalid configuration or unknown entity; rejected before any side effect."""

    code = "configuration_error"


class NotFoundError(ConfigurationError):
    code = "not_found"
    status_code = 404


class ConfigurationLockedError(DREngineError):
    """A DR configuration is referenced by an in-flight operation."""

    code = "configuration_locked"
    status_code = 423


class ContentionError(DREngineError):
    code = "contention"
    status_code = 409


class FailoverInProgressError(ContentionError):
    code = "failover_in_progress"

    def __init__(self, region: str, event_id: str | None = None):
        super().__init__(
            f"A failover is already in progress for region {region}",
            {"region": region, "event_id": event_id},
        )
        self.region = region
        self.event_id = event_id


class LagTooHighError(DREngineError):
    code = "lag_too_high"
    status_code = 409

    def __init__(self, lag_seconds: float, threshold_seconds: float):
        super().__init__(
            f"Replication lag {lag_seconds:.3f}s is not below {threshold_seconds:.3f}s",
            {"lag_seconds": lag_seconds, "threshold_seconds": threshold_seconds},
        )
        self.lag_seconds = lag_seconds
        self.threshold_seconds = threshold_seconds


class InvalidTransitionError(DREngineError):
    code = "invalid_transition"
    status_code = 409


class StorageError(DREngineError):
    """Storage backend could not be reached or returned corrupt data."""

    code = "storage_error"
    status_code = 503


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(DREngineError)
    async def dr_engine_exception_handler(request: Request, exc: DREngineError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
