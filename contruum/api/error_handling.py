from __future__ import annotations

import html
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from contruum.api.schemas import ErrorResponse
from contruum.logging import get_logger
from contruum.service.errors import InvalidClientError, InvalidTokenError, OAuthError
from contruum.service.flows import append_params
from contruum.storage.errors import StorageError

logger = get_logger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_FORM_POST_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>Submit this form</title></head>
<body onload="javascript:document.forms[0].submit()">
<form method="post" action="{action}">
{fields}
<noscript><button type="submit">Continue</button></noscript>
</form>
</body>
</html>
"""


def redirect_to_client(redirect_uri: str, response_mode: str, params: Dict[str, str]) -> Response:
    """Return authorization response parameters to the client in the requested mode."""
    if response_mode == "form_post":
        fields = "\n".join(
            f'<input type="hidden" name="{html.escape(k)}" value="{html.escape(v)}"/>'
            for k, v in params.items()
        )
        body = _FORM_POST_TEMPLATE.format(action=html.escape(redirect_uri), fields=fields)
        return HTMLResponse(
            body,
            headers={
                **NO_STORE_HEADERS,
                "Content-Security-Policy": "default-src 'none'; script-src 'unsafe-inline'; form-action *",
            },
        )
    location = append_params(redirect_uri, params, fragment=response_mode == "fragment")
    return RedirectResponse(location, status_code=302, headers=NO_STORE_HEADERS)


def error_response(
    status_code: int,
    error: str,
    description: Optional[str],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorResponse(error=error, error_description=description)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers={**NO_STORE_HEADERS, **(headers or {})},
    )


def _oauth_error_response(request: Request, exc: OAuthError) -> Response:
    if exc.redirectable:
        params = {"error": exc.error_code, "error_description": exc.message}
        if exc.state:
            params["state"] = exc.state
        return redirect_to_client(exc.redirect_uri, exc.response_mode or "query", params)

    headers: Dict[str, str] = {}
    if isinstance(exc, InvalidTokenError) and exc.status_code == 401:
        headers["WWW-Authenticate"] = (
            f'Bearer error="invalid_token", error_description="{exc.message}"'
        )
    elif isinstance(exc, InvalidClientError) and request.headers.get("Authorization", "").startswith("Basic"):
        headers["WWW-Authenticate"] = 'Basic realm="token"'
    # a server failure never leaks internals to the client
    description = "internal server error" if exc.status_code >= 500 else exc.message
    return error_response(exc.status_code, exc.error_code, description, headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install OAuth2 error rendering for protocol, storage and uncaught errors."""

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "oauth_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
            redirected=exc.redirectable,
        )
        return _oauth_error_response(request, exc)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return error_response(500, "server_error", "internal server error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("request_validation_error", path=request.url.path, errors=exc.errors())
        return error_response(400, "invalid_request", "the request is malformed")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, "server_error", "internal server error")
