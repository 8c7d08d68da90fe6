"""
Error taxonomy and the response envelope.

Every response body is ``{"success": bool, "message": str, ...}``. Business
rule failures are raised as ``AppError`` and reach the client verbatim;
anything else is logged and, outside development, replaced by a generic
message.
"""
import logging
import math
import traceback
from typing import Any, Dict, Optional

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException

import config

logger = logging.getLogger(__name__)


class AppError(Exception):
    """An anticipated failure whose message is safe to show to the caller."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.is_operational = True


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def ok(message: str, data: Any = None, pagination: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    if pagination is not None:
        body["pagination"] = pagination
    return body


def error_response(message: str, status_code: int = 500, error: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if error:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


def _location(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts)


async def app_error_handler(request: Request, exc: AppError):
    return error_response(exc.message, exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        where = _location(err.get("loc", ()))
        messages.append(f"{where}: {err['msg']}" if where else err["msg"])
    return error_response(", ".join(messages), 400)


async def model_validation_handler(request: Request, exc: ValidationError):
    messages = [f"{_location(err['loc'])}: {err['msg']}" if err["loc"] else err["msg"] for err in exc.errors()]
    return error_response(f"Invalid input data. {'. '.join(messages)}", 400)


async def http_error_handler(request: Request, exc: HTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return error_response(f"Can't find {request.url.path} on this server!", 404)
    return error_response(str(exc.detail), exc.status_code)


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key = (exc.details or {}).get("keyValue")
    value = ", ".join(f"{k}={v}" for k, v in key.items()) if key else "value"
    return error_response(f"Duplicate field value: {value}. Please use another value!", 400)


async def invalid_id_handler(request: Request, exc: InvalidId):
    return error_response(f"Invalid id: {exc}", 400)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    if config.is_development():
        return error_response(str(exc) or exc.__class__.__name__, 500,
                              "".join(traceback.format_exception(exc)))
    return error_response("Something went wrong!", 500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, model_validation_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(InvalidId, invalid_id_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
