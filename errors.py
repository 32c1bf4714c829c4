"""
Error taxonomy for the Learnhub API.

Every domain failure is an ``AppError`` carrying the HTTP status it maps to.
``register_error_handlers`` renders them (and FastAPI's own errors) in the
``{success, message, error}`` envelope.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import config

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class AlreadyEnrolledError(AppError):
    status_code = 400
    code = "already_enrolled"


class CourseFullError(AppError):
    status_code = 400
    code = "course_full"


class DeadlinePassedError(AppError):
    status_code = 400
    code = "deadline_passed"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class UpstreamServiceError(AppError):
    status_code = 502
    code = "upstream_error"


class WorkflowError(AppError):
    """A multi-step operation stopped part way; compensations already ran."""

    status_code = 500
    code = "workflow_incomplete"

    def __init__(self, message: str, failed_step: str, completed: List[str]):
        super().__init__(message, {"failed_step": failed_step, "completed_steps": completed})
        self.failed_step = failed_step
        self.completed = completed


def error_body(message: str, error: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    if error:
        body["error"] = error
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
        extra = {"details": exc.details} if exc.details else {}
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code, **extra))

    @app.exception_handler(HTTPException)
    async def handle_http_error(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
        message = "Please provide all required fields"
        if fields:
            message = f"{message}: {', '.join(f for f in fields if f)}"
        return JSONResponse(status_code=400, content=error_body(message, ValidationError.code))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = None if config.is_production() else str(exc)
        return JSONResponse(status_code=500, content=error_body("Internal Server Error", error))
