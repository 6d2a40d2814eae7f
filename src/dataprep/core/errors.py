"""Error handling utilities and custom exceptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dataprep.core.settings import get_settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error rendered as a structured error envelope."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "APP_ERROR",
        http_status: int = status.HTTP_400_BAD_REQUEST,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return error


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", *, details: Any | None = None) -> None:
        super().__init__(
            message, code="BAD_REQUEST", http_status=status.HTTP_400_BAD_REQUEST, details=details
        )


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized", *, code: str = "UNAUTHORIZED") -> None:
        super().__init__(message, code=code, http_status=status.HTTP_401_UNAUTHORIZED)


class NotFoundError(AppError):
    """Resource missing or outside the caller's organization.

    Both cases produce the same response so tenants cannot discover other tenants' ids.
    """

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(
            f"{resource} not found", code="NOT_FOUND", http_status=status.HTTP_404_NOT_FOUND
        )
        self.resource = resource


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", *, code: str = "CONFLICT") -> None:
        super().__init__(message, code=code, http_status=status.HTTP_409_CONFLICT)


class ValidationFailedError(AppError):
    """A semantic precondition was violated (422)."""

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        code: str = "VALIDATION_ERROR",
        details: Any | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code,
            http_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class InternalError(AppError):
    def __init__(self, message: str = "Internal server error", *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message, code=code, http_status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_envelope(request: Request, error: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {"timestamp": datetime.now(UTC).isoformat()}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        meta["requestId"] = request_id
    return {"error": error, "meta": meta}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=jsonable_encoder(error_envelope(request, exc.to_dict())),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_envelope(
            request,
            {"code": "VALIDATION_ERROR", "message": "Validation failed", "details": details},
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    message = str(exc) if get_settings().debug else "An unexpected error occurred"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_envelope(request, {"code": "INTERNAL_ERROR", "message": message}),
    )


# Pipeline error handling

class PipelineErrorCode(Enum):
    """Standardized error codes recorded on failed processing runs."""

    # Input errors
    SOURCE_LOAD_FAILED = "SOURCE_LOAD_FAILED"
    SCHEMA_MAPPING_FAILED = "SCHEMA_MAPPING_FAILED"
    INVALID_PATTERN = "INVALID_PATTERN"

    # Processing errors
    PII_DETECTION_FAILED = "PII_DETECTION_FAILED"
    DEIDENTIFICATION_FAILED = "DEIDENTIFICATION_FAILED"
    OUTPUT_GENERATION_FAILED = "OUTPUT_GENERATION_FAILED"
    NO_RECORDS_PRODUCED = "NO_RECORDS_PRODUCED"

    # Execution errors
    DATABASE_ERROR = "DATABASE_ERROR"
    PROCESS_INTERRUPTED = "PROCESS_INTERRUPTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class StageFailure(Exception):
    """Raised by a pipeline stage for an unrecoverable, classified failure."""

    def __init__(
        self,
        code: PipelineErrorCode,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


@dataclass
class StageError:
    """Structured failure information persisted on a run's error details."""

    code: PipelineErrorCode
    message: str
    stage: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def __post_init__(self) -> None:
        retryable_codes = {
            PipelineErrorCode.DATABASE_ERROR,
            PipelineErrorCode.PROCESS_INTERRUPTED,
        }
        if self.code in retryable_codes:
            self.retryable = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "stage": self.stage,
            "details": self.details,
            "retryable": self.retryable,
        }

    def log_error(self, logger_instance: logging.Logger | None = None) -> None:
        log = logger_instance or logger
        log.error(f"Pipeline error: {self.code.value} in stage {self.stage} - {self.message}")

    @classmethod
    def from_exception(cls, error: Exception, stage: str | None = None) -> StageError:
        """Create a StageError from any exception, classifying known failures."""
        if isinstance(error, StageFailure):
            return cls(code=error.code, message=error.message, stage=stage, details=error.details)

        from sqlalchemy.exc import SQLAlchemyError

        if isinstance(error, SQLAlchemyError):
            return cls(
                code=PipelineErrorCode.DATABASE_ERROR,
                message=f"Database error: {error}",
                stage=stage,
                details={"error_type": type(error).__name__},
            )
        return cls(
            code=PipelineErrorCode.UNKNOWN_ERROR,
            message=f"Unexpected error: {error}",
            stage=stage,
            details={"error_type": type(error).__name__},
        )
