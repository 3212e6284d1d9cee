# repogrowth/api/app.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from repogrowth.api import routes
from repogrowth.exceptions import (
    DigestNotFound,
    EmailNotFound,
    ImportLimitExceeded,
    ImportNotFound,
    InvalidFormat,
    PermissionDenied,
    RepositoryExists,
    RepositoryNotFound,
    SchemaError,
)

log = logging.getLogger(__name__)

app = FastAPI(title="Repository Growth API")
app.include_router(routes.router)


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    """
    JSON error payload with a consistent shape.

    Example:
        { "error": "repository_not_found", "detail": "repository 7 not found" }
    """
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail},
    )


# Most specific class wins; unlisted ValueErrors fall through to 400.
_ERRORS: list[tuple[type[Exception], int, str]] = [
    (RepositoryNotFound, 404, "repository_not_found"),
    (ImportNotFound, 404, "import_not_found"),
    (DigestNotFound, 404, "digest_not_found"),
    (EmailNotFound, 404, "email_not_found"),
    (PermissionDenied, 403, "permission_denied"),
    (RepositoryExists, 409, "repository_exists"),
    (InvalidFormat, 422, "invalid_format"),
    (SchemaError, 400, "schema_error"),
    (ImportLimitExceeded, 413, "import_limit_exceeded"),
    (ValueError, 400, "bad_request"),
]


def _register(exc_type: type[Exception], status_code: int, error: str) -> None:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        log.info("%s %s -> %s (%s)", request.method, request.url.path, status_code, exc)
        return _error_response(status_code, error, str(exc))

    app.add_exception_handler(exc_type, handler)


for _exc, _status, _error in _ERRORS:
    _register(_exc, _status, _error)


@app.get("/health")
async def health():
    return {"ok": True}
