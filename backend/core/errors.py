import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for redevelopment domain failures mapped onto HTTP responses."""

    status_code = 400
    error_code = "domain_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context


class ResourceNotFound(DomainError):
    status_code = 404
    error_code = "not_found"


class InvalidStateTransition(DomainError):
    status_code = 409
    error_code = "invalid_state_transition"

    def __init__(self, detail: str, current_status: Optional[str] = None, target_status: Optional[str] = None) -> None:
        super().__init__(detail, current_status=current_status, target_status=target_status)
        self.current_status = current_status
        self.target_status = target_status


class VotingNotOpenError(InvalidStateTransition):
    error_code = "voting_not_open"


class InvalidSelectionError(DomainError):
    status_code = 422
    error_code = "invalid_selection"


class ValidationFailed(DomainError):
    status_code = 422
    error_code = "validation_error"


class PermissionDenied(DomainError):
    status_code = 403
    error_code = "forbidden"


class NotEligibleToVote(DomainError):
    status_code = 403
    error_code = "not_eligible_to_vote"


class DuplicateVoteConflict(DomainError):
    status_code = 409
    error_code = "duplicate_vote"


class NotificationDeliveryFailure(DomainError):
    """Raised per connection when a realtime push fails. Logged, never returned to callers."""

    status_code = 502
    error_code = "notification_delivery_failed"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:  # type: ignore[override]
        logger.info(
            "Domain error %s on %s: %s",
            exc.error_code,
            request.url.path,
            exc.detail,
            extra={"error_code": exc.error_code, "path": request.url.path},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "path": str(request.url),
                "error_code": exc.error_code,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation failed.",
                "errors": jsonable_errors(exc),
                "path": str(request.url),
                "error_code": "validation_error",
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error.",
                "path": str(request.url),
                "error_code": "internal_error",
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail or "HTTP error.", "path": str(request.url)}
        if exc.headers:
            payload["headers"] = exc.headers
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic v2 puts the raw exception object under "ctx" for custom validators.
    errors = []
    for error in exc.errors():
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        item.pop("input", None)
        errors.append(item)
    return errors
