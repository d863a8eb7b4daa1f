"""
Exception Hierarchy and Handlers

Provides the error taxonomy for the upscale engine, a circuit breaker for
the remote upscaler, and structured JSON error responses for the API.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tilescale.core.logging import get_logger, conversion_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# =============================================================================
# Custom Exceptions
# =============================================================================

class TilescaleError(Exception):
    """Base exception for Tilescale."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        conversion_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.conversion_id = conversion_id or conversion_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class DecodeError(TilescaleError):
    """Raised when input bytes cannot be read as an image."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ConversionError(TilescaleError):
    """Raised when the upscaler rejects or fails on a tile."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=502, **kwargs)


class TilingError(TilescaleError):
    """Raised when tiling constants or grid geometry break an invariant."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class ConversionNotFoundError(TilescaleError):
    """Raised when a conversion id is not registered."""

    def __init__(self, conversion_id: str, **kwargs):
        super().__init__(
            f"Conversion not found: {conversion_id}",
            code=404,
            conversion_id=conversion_id,
            **kwargs
        )


class ConversionBusyError(TilescaleError):
    """Raised when closing a conversion that is still running."""

    def __init__(self, conversion_id: str, **kwargs):
        super().__init__(
            f"Conversion '{conversion_id}' is still running and cannot be closed",
            code=409,
            conversion_id=conversion_id,
            **kwargs
        )


class CircuitBreakerOpenError(ConversionError):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            **kwargs
        )
        self.code = 503
        self.details["service"] = service


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for the remote upscaler.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info(
                    "circuit_breaker_closed",
                    circuit=self.name,
                    message="Service recovered"
                )
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# =============================================================================
# Exception Handlers
# =============================================================================

def error_payload(exc: TilescaleError) -> Dict[str, Any]:
    """Structured error body shared by API responses and stage snapshots."""
    return {
        "error": exc.message,
        "conversion_id": exc.conversion_id,
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": _utc_timestamp()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(TilescaleError)
    async def tilescale_exception_handler(request: Request, exc: TilescaleError):
        logger.warning(
            "tilescale_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path)
        )
        return JSONResponse(status_code=exc.code, content=error_payload(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "conversion_id": conversion_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
