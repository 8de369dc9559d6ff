"""Error Handlers — map agent, gate and database failures to one JSON envelope.

Invariants:
    - Every error response has the shape {"error": {code, message, category, severity, ...}}
    - message is the user-facing text for the code; detail carries the specific cause
      for 4xx responses only (5xx never echo exception text)
    - run_id / invocation_id from ErrorContext are surfaced so a client can match a
      failed confirmation or execution to the run it concerns
    - Schema failures (request bodies, capability input, final answers) list
      field-level details in the same {field, message} shape

Design Decisions:
    - One handler per layer: domain (SqlAgentError), request validation, catch-all
    - Handlers registered from a table so main.py stays wiring-only
    - Log level follows the status class: 4xx are client mistakes (warning),
      5xx are ours (error)
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sqlagent.core.errors import (
    INTERNAL_ERROR, ErrorCategory, ErrorSeverity, SqlAgentError, user_message_for,
)

logger = logging.getLogger(__name__)

REQUEST_VALIDATION_ERROR = "VALIDATION_ERROR"


def error_envelope(
    code: str,
    message: str,
    category: ErrorCategory | str,
    severity: ErrorSeverity,
    **extra,
) -> dict:
    """Build the error body. Extras that are None are left out."""
    body = {
        "code": code,
        "message": message,
        "category": getattr(category, "value", category),
        "severity": severity.value,
    }
    body.update({k: v for k, v in extra.items() if v is not None})
    return {"error": body}


def _field_details(errors: list[dict], skip_body: bool = False) -> list[dict]:
    details = []
    for e in errors:
        loc = list(e.get("loc", ()))
        if skip_body and loc[:1] == ["body"]:
            loc = loc[1:]
        details.append({
            "field": ".".join(str(p) for p in loc),
            "message": e.get("msg"),
            "type": e.get("type"),
        })
    return details


async def _domain_error(request: Request, exc: SqlAgentError) -> JSONResponse:
    ctx = exc.context
    client_error = exc.http_status < 500
    log = logger.warning if client_error else logger.error
    log(
        "%s on %s: %s", exc.code, request.url.path, exc.message,
        extra={
            "error_code": exc.code,
            "run_id": ctx.run_id,
            "invocation_id": ctx.invocation_id,
        },
    )
    details = getattr(exc, "details", None)
    return JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            exc.code, exc.user_message, exc.category, exc.severity,
            detail=exc.message if client_error else None,
            run_id=ctx.run_id,
            invocation_id=ctx.invocation_id,
            details=_field_details(details) if details else None,
            timestamp=ctx.timestamp.isoformat(),
        ),
    )


async def _request_validation_error(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    logger.warning(
        "Invalid request on %s: %s", request.url.path, exc.errors(),
        extra={"error_code": REQUEST_VALIDATION_ERROR},
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_envelope(
            REQUEST_VALIDATION_ERROR, "Invalid request data",
            ErrorCategory.VALIDATION, ErrorSeverity.WARNING,
            details=_field_details(exc.errors(), skip_body=True),
        ),
    )


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception on %s: %s", request.url.path, exc,
        exc_info=True, extra={"error_code": INTERNAL_ERROR},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_envelope(
            INTERNAL_ERROR, user_message_for(INTERNAL_ERROR),
            ErrorCategory.INTERNAL, ErrorSeverity.CRITICAL,
        ),
    )


_HANDLERS = (
    (SqlAgentError, _domain_error),
    (RequestValidationError, _request_validation_error),
    (Exception, _unhandled_error),
)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""
    for exc_type, handler in _HANDLERS:
        app.add_exception_handler(exc_type, handler)
