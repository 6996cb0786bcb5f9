from __future__ import annotations

import base64
import binascii
from typing import Dict, Optional, Tuple
from urllib.parse import unquote_plus

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from contruum.api.error_handling import NO_STORE_HEADERS, redirect_to_client
from contruum.api.schemas import EndSessionResponse, IntrospectionResponse, TokenResponse
from contruum.config import Settings
from contruum.logging import get_logger
from contruum.service.errors import InvalidClientError, InvalidRequestError, InvalidTokenError
from contruum.service.flows import ConsentOutcome, append_params
from contruum.service.runtime import (
    get_runtime,
    load_authorization_request,
    park_authorization_request,
)
from contruum.storage.common import format_scopes
from contruum.storage.models import Client, utcnow

logger = get_logger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"

# Fields the consent UI may post back alongside a request_id
_CONSENT_FIELDS = ("consent", "granted_scopes")


async def _request_params(request: Request) -> Dict[str, str]:
    if request.method == "POST":
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    return dict(request.query_params)


def _basic_credentials(request: Request) -> Optional[Tuple[str, str]]:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic" or not value:
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClientError("the client credentials are malformed")
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("the client credentials are malformed")
    # RFC 6749 section 2.3.1: both parts are form-urlencoded
    return unquote_plus(client_id), unquote_plus(secret)


def _authenticate_client(request: Request, params: Dict[str, str]) -> Client:
    runtime = get_runtime()
    basic = _basic_credentials(request)
    if basic and params.get("client_secret"):
        raise InvalidRequestError("multiple client authentication methods were used")
    if basic:
        client_id, secret = basic
        if params.get("client_id") and params["client_id"] != client_id:
            raise InvalidRequestError("the client_id does not match the authenticated client")
    else:
        client_id, secret = params.get("client_id"), params.get("client_secret")
    if not client_id:
        raise InvalidClientError("client authentication is required")
    return runtime.registry.authenticate_client(client_id, secret)


def _bearer_token(request: Request, params: Dict[str, str]) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return params.get("access_token")


async def discovery() -> JSONResponse:
    runtime = get_runtime()
    return JSONResponse(runtime.registry.discovery_document())


async def jwks() -> JSONResponse:
    runtime = get_runtime()
    return JSONResponse(runtime.keys.public_key_set())


async def authorize(request: Request) -> Response:
    runtime = get_runtime()
    settings = runtime.settings
    params = await _request_params(request)

    request_id = params.get("request_id")
    consent_form: Dict[str, str] = {}
    if request_id:
        cached = await load_authorization_request(runtime, request_id)
        if cached is None:
            raise InvalidRequestError("the authorization request has expired or is unknown")
        if request.method == "POST":
            consent_form = {k: params[k] for k in _CONSENT_FIELDS if k in params}
        params = cached

    auth_request = runtime.flows.validate_authorization_request(params)
    principal = runtime.sessions.resolve(request.cookies.get(settings.session_cookie_name))

    if not runtime.flows.check_login(auth_request, principal):
        request_id = request_id or await park_authorization_request(runtime, auth_request.params)
        logger.info("authorization_login_required", client_id=auth_request.client.client_id)
        return RedirectResponse(
            append_params(settings.login_path, {"request_id": request_id}), status_code=302
        )

    decision = runtime.flows.decide_consent(auth_request, principal, consent_form)
    if decision.outcome == ConsentOutcome.PENDING:
        request_id = request_id or await park_authorization_request(runtime, auth_request.params)
        logger.info("authorization_consent_pending", client_id=auth_request.client.client_id)
        return RedirectResponse(
            append_params(
                settings.consent_path,
                {
                    "request_id": request_id,
                    "client_id": auth_request.client.client_id,
                    "scope": format_scopes(auth_request.scopes),
                },
            ),
            status_code=302,
        )

    if request_id and await load_authorization_request(runtime, request_id, consume=True) is None:
        raise InvalidRequestError("the authorization request was already completed")

    result = runtime.flows.authorize(auth_request, principal, decision.scopes)
    return redirect_to_client(result.redirect_uri, result.response_mode, result.params)


async def token(request: Request) -> JSONResponse:
    runtime = get_runtime()
    params = await _request_params(request)
    client = _authenticate_client(request, params)
    bundle = runtime.flows.exchange(params.get("grant_type"), params, client)
    body = TokenResponse(
        access_token=bundle.access_token,
        expires_in=bundle.expires_in(utcnow()) or 0,
        scope=format_scopes(bundle.scopes) or None,
        refresh_token=bundle.refresh_token,
        id_token=bundle.id_token,
    )
    return JSONResponse(body.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


async def introspect(request: Request) -> JSONResponse:
    runtime = get_runtime()
    params = await _request_params(request)
    client = _authenticate_client(request, params)
    if client.is_public:
        raise InvalidClientError("public clients cannot use the introspection endpoint")
    result = runtime.validator.introspect(params.get("token"), client)
    body = IntrospectionResponse(**result)
    return JSONResponse(body.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


async def userinfo(request: Request) -> JSONResponse:
    runtime = get_runtime()
    params = await _request_params(request)
    claims = runtime.userinfo.userinfo(_bearer_token(request, params))
    return JSONResponse(claims, headers=NO_STORE_HEADERS)


async def end_session(request: Request) -> Response:
    runtime = get_runtime()
    settings = runtime.settings
    params = await _request_params(request)
    session_id = request.cookies.get(settings.session_cookie_name)
    principal = runtime.sessions.resolve(session_id)

    result = runtime.flows.end_session(
        id_token_hint=params.get("id_token_hint"),
        post_logout_redirect_uri=params.get("post_logout_redirect_uri"),
        state=params.get("state"),
        subject=principal.subject if principal else None,
    )
    runtime.sessions.end(session_id)

    if result.redirect_uri:
        response: Response = RedirectResponse(result.redirect_uri, status_code=302)
    else:
        body = EndSessionResponse(revoked_authorizations=result.revoked_authorizations)
        response = JSONResponse(body.model_dump(), headers=NO_STORE_HEADERS)
    response.delete_cookie(settings.session_cookie_name)
    return response


def build_router(settings: Settings) -> APIRouter:
    """Bind the protocol endpoints to their configured paths."""
    router = APIRouter()
    router.add_api_route(DISCOVERY_PATH, discovery, methods=["GET"])
    router.add_api_route(settings.jwks_endpoint_path, jwks, methods=["GET"])
    router.add_api_route(settings.authorization_endpoint_path, authorize, methods=["GET", "POST"])
    router.add_api_route(settings.token_endpoint_path, token, methods=["POST"])
    router.add_api_route(settings.introspection_endpoint_path, introspect, methods=["POST"])
    router.add_api_route(settings.userinfo_endpoint_path, userinfo, methods=["GET", "POST"])
    router.add_api_route(settings.end_session_endpoint_path, end_session, methods=["GET", "POST"])
    return router
