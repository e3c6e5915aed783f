"""
Domain error taxonomy.

Services raise these; the HTTP layer turns them into JSON responses via
``register_exception_handlers``. Nothing here is retried by the core.
"""
import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "detail": {k: _jsonable(v) for k, v in self.detail.items()},
        }


class ValidationError(DomainError):
    """Malformed input. Raised before any state change."""
    code = "validation_error"
    status_code = 422

    def __init__(self, message: str, field: str | None = None, **detail: Any):
        super().__init__(message, field=field, **detail)
        self.field = field


class NotFound(DomainError):
    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(f"{resource} {resource_id} not found", resource=resource, resource_id=resource_id)


class PermissionDenied(DomainError):
    code = "permission_denied"
    status_code = 403


class StateConflict(DomainError):
    """A transition was attempted while one of its preconditions is unmet."""
    code = "state_conflict"
    status_code = 409

    def __init__(self, message: str, blocking: list[Any] | None = None, **detail: Any):
        super().__init__(message, blocking=blocking or [], **detail)
        self.blocking = blocking or []


class MissingApprovalRecord(DomainError):
    """Entries exist for a project that has no current approval record."""
    code = "missing_approval_record"
    status_code = 409

    def __init__(self, timesheet_id: uuid.UUID, project_ids: list[uuid.UUID]):
        ids = ", ".join(str(p) for p in project_ids)
        super().__init__(
            f"Timesheet {timesheet_id} has entries without approval records for project(s): {ids}",
            timesheet_id=timesheet_id,
            project_ids=project_ids,
        )
        self.timesheet_id = timesheet_id
        self.project_ids = project_ids


class ConflictError(DomainError):
    """Uniqueness violation or lost optimistic-concurrency race. Re-read and retry."""
    code = "conflict"
    status_code = 409

    def __init__(self, message: str, retryable: bool = True, **detail: Any):
        super().__init__(message, retryable=retryable, **detail)
        self.retryable = retryable


class IntegrityFault(DomainError):
    """Stored data violates an invariant (e.g. broken week boundary)."""
    code = "integrity_fault"
    status_code = 500


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
