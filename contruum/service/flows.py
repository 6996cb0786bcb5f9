from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from authlib.oauth2.rfc7636.challenge import compare_plain_code_challenge, compare_s256_code_challenge

from contruum.config import Flow, Settings
from contruum.logging import get_logger
from contruum.service.errors import (
    AccessDeniedError,
    ConsentRequiredError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    LoginRequiredError,
    OAuthError,
    ServerError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from contruum.service.issuer import CodeBinding, TokenBundle, TokenIssuer, TokenRedemptionError
from contruum.service.principals import PrincipalDirectory
from contruum.service.registry import (
    CODE_CHALLENGE_METHODS,
    RESPONSE_MODES,
    Registry,
    flow_for_response_type,
    normalize_response_type,
)
from contruum.service.validation import ValidatedToken, Validator
from contruum.storage.common import OAuthStore, format_scopes, parse_scopes
from contruum.storage.errors import StorageError
from contruum.storage.models import (
    Authorization,
    Client,
    ConsentType,
    Principal,
    RedemptionOutcome,
    TokenKind,
    TokenStatus,
    utcnow,
)

logger = get_logger(__name__)

# RFC 7636 section 4.1: unreserved characters, 43 to 128 long
_PKCE_VALUE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
_PKCE_COMPARE = {"plain": compare_plain_code_challenge, "S256": compare_s256_code_challenge}


class FlowStatus(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    CONSENTED = "consented"
    ISSUED = "issued"
    COMPLETED = "completed"
    REJECTED = "rejected"


_TERMINAL = {FlowStatus.COMPLETED, FlowStatus.REJECTED}


@dataclass
class FlowState:
    """Tracks one request through Received -> Validated -> Consented -> Issued -> Completed."""

    grant: str
    client_id: Optional[str] = None
    status: FlowStatus = FlowStatus.RECEIVED
    history: List[FlowStatus] = field(default_factory=lambda: [FlowStatus.RECEIVED])

    def advance(self, status: FlowStatus) -> None:
        if self.status in _TERMINAL:
            raise ServerError(f"flow already {self.status.value}")
        self.status = status
        self.history.append(status)
        logger.info(
            "flow_transition", grant=self.grant, client_id=self.client_id, status=status.value
        )

    def reject(self, error: OAuthError) -> OAuthError:
        if self.status not in _TERMINAL:
            self.status = FlowStatus.REJECTED
            self.history.append(FlowStatus.REJECTED)
        log_fn = logger.error if error.status_code >= 500 else logger.info
        log_fn(
            "flow_rejected",
            grant=self.grant,
            client_id=self.client_id,
            error_code=error.error_code,
            message=error.message,
        )
        return error


@dataclass
class AuthorizationRequest:
    client: Client
    response_type: str
    flow: Flow
    redirect_uri: str
    response_mode: str
    scopes: List[str]
    state: Optional[str]
    nonce: Optional[str]
    prompt: Set[str]
    code_challenge: Optional[str]
    code_challenge_method: Optional[str]
    params: Dict[str, str]
    flow_state: FlowState

    @property
    def response_parts(self) -> Set[str]:
        return set(self.response_type.split())

    def error(self, exc: OAuthError) -> OAuthError:
        """Reject the flow and route the error back to the validated redirect URI."""
        return self.flow_state.reject(exc.with_redirect(self.redirect_uri, self.response_mode, self.state))


class ConsentOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PENDING = "pending"


@dataclass
class ConsentDecision:
    outcome: ConsentOutcome
    scopes: List[str] = field(default_factory=list)


class ConsentProvider(Protocol):
    def decide(
        self,
        request: AuthorizationRequest,
        principal: Principal,
        consent_form: Mapping[str, str],
    ) -> ConsentDecision:
        ...


class ClientConsentPolicy:
    """Grants implicit-consent clients outright; explicit clients need a form decision.

    ``consent_form`` holds only the fields the consent UI posted back
    (``consent=accept|deny`` and optionally ``granted_scopes``), never the
    client-supplied request parameters.
    """

    def decide(
        self,
        request: AuthorizationRequest,
        principal: Principal,
        consent_form: Mapping[str, str],
    ) -> ConsentDecision:
        if request.client.consent_type == ConsentType.IMPLICIT:
            return ConsentDecision(ConsentOutcome.GRANTED, list(request.scopes))
        answer = (consent_form.get("consent") or "").lower()
        if answer == "deny":
            return ConsentDecision(ConsentOutcome.DENIED)
        if answer != "accept":
            return ConsentDecision(ConsentOutcome.PENDING)
        chosen = parse_scopes(consent_form.get("granted_scopes")) or list(request.scopes)
        granted = [s for s in request.scopes if s in chosen or s == "openid"]
        return ConsentDecision(ConsentOutcome.GRANTED, granted)


@dataclass
class AuthorizationResponse:
    redirect_uri: str
    response_mode: str
    params: Dict[str, str]
    authorization_id: str


@dataclass
class EndSessionResult:
    redirect_uri: Optional[str]
    revoked_authorizations: int


def append_params(uri: str, params: Mapping[str, str], *, fragment: bool = False) -> str:
    """Add parameters to a redirect URI's query, or replace its fragment."""
    scheme, netloc, path, query, existing_fragment = urlsplit(uri)
    if fragment:
        return urlunsplit((scheme, netloc, path, query, urlencode(dict(params))))
    merged = parse_qsl(query, keep_blank_values=True) + list(params.items())
    return urlunsplit((scheme, netloc, path, urlencode(merged), existing_fragment))


class FlowEngine:
    """Per-grant state machines that turn validated requests into issued tokens."""

    def __init__(
        self,
        registry: Registry,
        issuer: TokenIssuer,
        validator: Validator,
        store: OAuthStore,
        directory: PrincipalDirectory,
        settings: Settings,
        *,
        consent: Optional[ConsentProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.issuer = issuer
        self.validator = validator
        self.store = store
        self.directory = directory
        self.settings = settings
        self.consent = consent or ClientConsentPolicy()
        self.clock = clock

    # -- authorization endpoint -------------------------------------------

    def validate_authorization_request(self, params: Mapping[str, str]) -> AuthorizationRequest:
        flow_state = FlowState(grant="authorization", client_id=params.get("client_id"))

        client = self.registry.get_client(params.get("client_id"))
        if client is None:
            raise flow_state.reject(InvalidRequestError("the specified client_id is invalid"))
        redirect_uri = params.get("redirect_uri")
        if not redirect_uri:
            raise flow_state.reject(InvalidRequestError("the redirect_uri parameter is missing"))
        if redirect_uri not in client.redirect_uris:
            raise flow_state.reject(
                InvalidRequestError("the specified redirect_uri is not registered for this client")
            )

        response_type = normalize_response_type(params.get("response_type"))
        returns_tokens = bool({"token", "id_token"} & set(response_type.split()))
        default_mode = "fragment" if returns_tokens else "query"
        requested_mode = params.get("response_mode")
        state = params.get("state")

        def fail(exc: OAuthError, mode: str = default_mode) -> OAuthError:
            return flow_state.reject(exc.with_redirect(redirect_uri, mode, state))

        if requested_mode and requested_mode not in RESPONSE_MODES:
            raise fail(InvalidRequestError("the specified response_mode is not supported"))
        response_mode = requested_mode or default_mode

        if not response_type:
            raise fail(InvalidRequestError("the response_type parameter is missing"), response_mode)
        flow = flow_for_response_type(response_type)
        if flow is None or not self.settings.flow_enabled(flow):
            raise fail(
                UnsupportedResponseTypeError("the specified response_type is not supported"),
                response_mode,
            )
        if not self.registry.client_allows_response_type(client, response_type):
            raise fail(
                UnauthorizedClientError("the client is not allowed to use this response_type"),
                response_mode,
            )
        if response_mode == "query" and returns_tokens:
            raise fail(
                InvalidRequestError("the query response_mode is not allowed for this response_type"),
                default_mode,
            )

        scopes = parse_scopes(params.get("scope"))
        unknown = [s for s in scopes if not self.registry.is_scope_registered(s)]
        if unknown:
            raise fail(InvalidScopeError(f"unsupported scope: {' '.join(unknown)}"), response_mode)
        forbidden = [s for s in scopes if s != "openid" and s not in client.scopes]
        if forbidden:
            raise fail(
                InvalidScopeError(f"the client is not allowed scope: {' '.join(forbidden)}"),
                response_mode,
            )
        parts = set(response_type.split())
        if "id_token" in parts and "openid" not in scopes:
            raise fail(InvalidRequestError("the openid scope is required"), response_mode)
        nonce = params.get("nonce")
        if flow in (Flow.IMPLICIT, Flow.HYBRID) and "id_token" in parts and not nonce:
            raise fail(InvalidRequestError("the nonce parameter is required"), response_mode)

        challenge = params.get("code_challenge")
        method = params.get("code_challenge_method")
        if "code" not in parts and (challenge or method):
            raise fail(
                InvalidRequestError("code_challenge is only allowed when requesting a code"),
                response_mode,
            )
        if method and not challenge:
            raise fail(InvalidRequestError("the code_challenge parameter is missing"), response_mode)
        if challenge:
            method = method or "plain"
            if method not in CODE_CHALLENGE_METHODS:
                raise fail(
                    InvalidRequestError("the specified code_challenge_method is not supported"),
                    response_mode,
                )
            if not _PKCE_VALUE.match(challenge):
                raise fail(InvalidRequestError("the code_challenge is malformed"), response_mode)
        elif "code" in parts and (
            client.require_pkce
            or (client.is_public and self.settings.require_pkce_for_public_clients)
        ):
            raise fail(InvalidRequestError("the code_challenge parameter is required"), response_mode)

        prompt = set((params.get("prompt") or "").split())
        if "none" in prompt and len(prompt) > 1:
            raise fail(
                InvalidRequestError("prompt=none cannot be combined with other values"),
                response_mode,
            )

        request = AuthorizationRequest(
            client=client,
            response_type=response_type,
            flow=flow,
            redirect_uri=redirect_uri,
            response_mode=response_mode,
            scopes=scopes,
            state=state,
            nonce=nonce,
            prompt=prompt,
            code_challenge=challenge,
            code_challenge_method=method if challenge else None,
            params={k: v for k, v in params.items() if v is not None},
            flow_state=flow_state,
        )
        flow_state.advance(FlowStatus.VALIDATED)
        return request

    def check_login(self, request: AuthorizationRequest, principal: Optional[Principal]) -> bool:
        """True when a principal is signed in; raises login_required for prompt=none."""
        if principal is not None:
            return True
        if "none" in request.prompt:
            raise request.error(LoginRequiredError("the user is not logged in"))
        return False

    def decide_consent(
        self,
        request: AuthorizationRequest,
        principal: Principal,
        consent_form: Optional[Mapping[str, str]] = None,
    ) -> ConsentDecision:
        decision = self.consent.decide(request, principal, consent_form or {})
        if decision.outcome == ConsentOutcome.DENIED:
            raise request.error(AccessDeniedError("the user denied the authorization request"))
        if decision.outcome == ConsentOutcome.PENDING:
            if "none" in request.prompt:
                raise request.error(ConsentRequiredError("user consent is required"))
            return decision
        if not set(decision.scopes) <= set(request.scopes):
            raise request.error(ServerError("consent granted scopes that were not requested"))
        request.flow_state.advance(FlowStatus.CONSENTED)
        return decision

    def authorize(
        self,
        request: AuthorizationRequest,
        principal: Principal,
        granted_scopes: List[str],
    ) -> AuthorizationResponse:
        if request.flow_state.status != FlowStatus.CONSENTED:
            raise request.error(ServerError("authorization issued before consent"))
        parts = request.response_parts
        kinds = set()
        if "code" in parts:
            kinds.add(TokenKind.AUTHORIZATION_CODE)
        if "token" in parts:
            kinds.add(TokenKind.ACCESS_TOKEN)
        if "id_token" in parts:
            kinds.add(TokenKind.ID_TOKEN)

        authorization = Authorization.new(principal.subject, request.client.client_id, granted_scopes)
        auth_time = (
            int(principal.authenticated_at.timestamp()) if principal.authenticated_at else None
        )
        binding = None
        if TokenKind.AUTHORIZATION_CODE in kinds:
            binding = CodeBinding(
                redirect_uri=request.redirect_uri,
                nonce=request.nonce,
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method,
            )
        try:
            bundle = self.issuer.issue_grant(
                authorization,
                principal,
                kinds,
                scopes=granted_scopes,
                nonce=request.nonce,
                code_binding=binding,
                auth_time=auth_time,
            )
        except OAuthError as exc:
            raise request.error(exc)
        request.flow_state.advance(FlowStatus.ISSUED)

        response_params: Dict[str, str] = {}
        if bundle.code:
            response_params["code"] = bundle.code
        if bundle.access_token:
            response_params["access_token"] = bundle.access_token
            response_params["token_type"] = "Bearer"
            response_params["expires_in"] = str(self.settings.access_token_ttl_seconds)
            response_params["scope"] = format_scopes(granted_scopes)
        if bundle.id_token:
            response_params["id_token"] = bundle.id_token
        if request.state:
            response_params["state"] = request.state
        request.flow_state.advance(FlowStatus.COMPLETED)
        return AuthorizationResponse(
            redirect_uri=request.redirect_uri,
            response_mode=request.response_mode,
            params=response_params,
            authorization_id=authorization.id,
        )

    # -- token endpoint ----------------------------------------------------

    def exchange(self, grant_type: Optional[str], params: Mapping[str, str], client: Client) -> TokenBundle:
        flow_state = FlowState(grant=grant_type or "unknown", client_id=client.client_id)
        try:
            if not grant_type:
                raise InvalidRequestError("the grant_type parameter is missing")
            if grant_type == "authorization_code":
                enabled = self.settings.flow_enabled(Flow.AUTHORIZATION_CODE) or self.settings.flow_enabled(
                    Flow.HYBRID
                )
                handler = self._exchange_code
            elif grant_type == "refresh_token":
                enabled = self.settings.flow_enabled(Flow.REFRESH_TOKEN)
                handler = self._exchange_refresh_token
            else:
                raise UnsupportedGrantTypeError("the specified grant_type is not supported")
            if not enabled or grant_type not in client.grant_types:
                raise UnauthorizedClientError("the client is not allowed to use this grant_type")
            flow_state.advance(FlowStatus.VALIDATED)
            bundle = handler(params, client)
        except OAuthError as exc:
            raise flow_state.reject(exc)
        flow_state.advance(FlowStatus.ISSUED)
        flow_state.advance(FlowStatus.COMPLETED)
        return bundle

    def _validate_grant_token(
        self, value: Optional[str], kind: TokenKind, client: Client, label: str
    ) -> ValidatedToken:
        if not value:
            raise InvalidRequestError(f"the {label} parameter is missing")
        try:
            validated = self.validator.validate(value, kind, verify_status=False)
        except InvalidTokenError as exc:
            raise InvalidGrantError(
                f"the specified {label} is invalid", detail={"reason": exc.reason}
            )
        if validated.client_id != client.client_id:
            raise InvalidGrantError(f"the specified {label} was issued to another client")
        if validated.record.status == TokenStatus.CONSUMED:
            self._handle_reuse(validated)
        if validated.record.status == TokenStatus.REVOKED:
            raise InvalidGrantError(f"the specified {label} has been revoked")
        return validated

    def _principal_for(self, validated: ValidatedToken) -> Principal:
        principal = self.directory.find(validated.subject)
        if principal is None:
            raise InvalidGrantError("the subject associated with this grant no longer exists")
        return principal

    def _exchange_code(self, params: Mapping[str, str], client: Client) -> TokenBundle:
        validated = self._validate_grant_token(
            params.get("code"), TokenKind.AUTHORIZATION_CODE, client, "code"
        )
        claims = validated.claims
        if params.get("redirect_uri") != claims.get("redirect_uri"):
            raise InvalidGrantError("the redirect_uri does not match the authorization request")

        challenge = claims.get("code_challenge")
        verifier = params.get("code_verifier")
        if challenge:
            if not verifier:
                raise InvalidRequestError("the code_verifier parameter is missing")
            if not _PKCE_VALUE.match(verifier):
                raise InvalidRequestError("the code_verifier is malformed")
            method = claims.get("code_challenge_method") or "plain"
            compare = _PKCE_COMPARE.get(method)
            if compare is None or not compare(verifier, challenge):
                raise InvalidGrantError("the code_verifier does not match the code_challenge")
        elif verifier:
            raise InvalidRequestError("a code_verifier was sent but no code_challenge was used")

        principal = self._principal_for(validated)
        scopes = validated.scopes
        kinds = {TokenKind.ACCESS_TOKEN}
        if self._refresh_allowed(client):
            kinds.add(TokenKind.REFRESH_TOKEN)
        if "openid" in scopes:
            kinds.add(TokenKind.ID_TOKEN)
        bundle = self._redeem(
            validated,
            principal,
            kinds,
            scopes=scopes,
            nonce=claims.get("nonce"),
            auth_time=claims.get("auth_time"),
        )
        logger.info(
            "code_redeemed",
            client_id=client.client_id,
            authorization_id=validated.authorization.id,
            jti=validated.record.id,
        )
        return bundle

    def _exchange_refresh_token(self, params: Mapping[str, str], client: Client) -> TokenBundle:
        validated = self._validate_grant_token(
            params.get("refresh_token"), TokenKind.REFRESH_TOKEN, client, "refresh_token"
        )
        granted = validated.scopes
        requested = parse_scopes(params.get("scope"))
        widened = [s for s in requested if s not in granted]
        if widened:
            raise InvalidScopeError(f"the refresh_token was not granted scope: {' '.join(widened)}")
        scopes = requested or granted

        principal = self._principal_for(validated)
        kinds = {TokenKind.ACCESS_TOKEN}
        if "openid" in scopes:
            kinds.add(TokenKind.ID_TOKEN)
        options = {
            "scopes": scopes,
            "refresh_scopes": granted,
            "auth_time": validated.claims.get("auth_time"),
        }
        if self.settings.refresh_token_rotation:
            kinds.add(TokenKind.REFRESH_TOKEN)
            bundle = self._redeem(validated, principal, kinds, **options)
        else:
            bundle = self.issuer.issue_for_authorization(
                validated.authorization, principal, kinds, **options
            )
        logger.info(
            "refresh_token_exchanged",
            client_id=client.client_id,
            authorization_id=validated.authorization.id,
            rotated=self.settings.refresh_token_rotation,
        )
        return bundle

    def _refresh_allowed(self, client: Client) -> bool:
        return self.settings.flow_enabled(Flow.REFRESH_TOKEN) and "refresh_token" in client.grant_types

    def _redeem(self, validated: ValidatedToken, principal: Principal, kinds, **options) -> TokenBundle:
        try:
            return self.issuer.issue_on_redemption(
                validated.record, validated.authorization, principal, kinds, **options
            )
        except TokenRedemptionError as exc:
            if exc.outcome == RedemptionOutcome.ALREADY_REDEEMED:
                self._handle_reuse(validated)
            raise InvalidGrantError(
                exc.message, detail={"outcome": exc.outcome.value}
            ) from exc

    def _handle_reuse(self, validated: ValidatedToken) -> None:
        """A consumed code or refresh token came back: treat the grant as compromised."""
        revoked = False
        if self.settings.revoke_on_token_reuse:
            revoked = self.revoke_authorization(validated.authorization.id)
        logger.warning(
            "token_reuse_detected",
            kind=validated.kind.value,
            jti=validated.record.id,
            authorization_id=validated.authorization.id,
            client_id=validated.client_id,
            authorization_revoked=revoked,
        )
        label = "authorization code" if validated.kind == TokenKind.AUTHORIZATION_CODE else "refresh token"
        raise InvalidGrantError(f"the {label} has already been redeemed")

    # -- revocation and end-session ----------------------------------------

    def revoke_authorization(self, authorization_id: str) -> bool:
        try:
            revoked = self.store.revoke_authorization(authorization_id)
        except StorageError as exc:
            logger.error("authorization_revocation_failed", authorization_id=authorization_id, error=exc.message)
            raise ServerError("authorization revocation failed") from exc
        return revoked

    def end_session(
        self,
        *,
        id_token_hint: Optional[str] = None,
        post_logout_redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> EndSessionResult:
        client: Optional[Client] = None
        hint_subject: Optional[str] = None
        if id_token_hint:
            try:
                validated = self.validator.validate(
                    id_token_hint, TokenKind.ID_TOKEN, verify_lifetime=False
                )
            except InvalidTokenError as exc:
                raise InvalidRequestError(
                    "the id_token_hint is invalid", detail={"reason": exc.reason}
                )
            client = self.registry.get_client(validated.client_id)
            hint_subject = validated.subject
            if subject and subject != hint_subject:
                raise InvalidRequestError("the id_token_hint does not match the signed-in user")

        redirect_uri = None
        if post_logout_redirect_uri:
            candidates = [client] if client else self.registry.clients()
            if not any(
                c is not None and post_logout_redirect_uri in c.post_logout_redirect_uris
                for c in candidates
            ):
                raise InvalidRequestError("the post_logout_redirect_uri is not registered")
            redirect_uri = (
                append_params(post_logout_redirect_uri, {"state": state})
                if state
                else post_logout_redirect_uri
            )

        revoked = 0
        target = hint_subject or subject
        if self.settings.end_session_revokes_authorizations and target:
            try:
                authorizations = self.store.list_authorizations(
                    target, client_id=client.client_id if client else None
                )
            except StorageError as exc:
                raise ServerError("authorization lookup failed") from exc
            for authorization in authorizations:
                if authorization.is_valid and self.revoke_authorization(authorization.id):
                    revoked += 1
        logger.info(
            "session_ended",
            subject=target,
            client_id=client.client_id if client else None,
            revoked_authorizations=revoked,
        )
        return EndSessionResult(redirect_uri=redirect_uri, revoked_authorizations=revoked)
