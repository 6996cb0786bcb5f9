"""Tests for the grant state machines: authorization, exchange, reuse detection and end-session."""

from urllib.parse import parse_qs, urlsplit

import pytest

from contruum.config import Flow
from contruum.service.errors import (
    AccessDeniedError,
    ConsentRequiredError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    LoginRequiredError,
    ServerError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from contruum.service.flows import ConsentOutcome, FlowStatus, append_params
from contruum.storage.models import AuthorizationStatus, TokenKind, TokenStatus


def _params(**overrides):
    params = {
        "client_id": "web",
        "response_type": "code",
        "redirect_uri": "https://web.example/cb",
        "scope": "openid profile",
        "state": "xyz",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


@pytest.fixture
def web(runtime):
    return runtime.registry.get_client("web")


@pytest.fixture
def code_grant(runtime, authorize, web):
    """Exchange a fresh code and return (authorization response, token bundle)."""
    response = authorize(scope="openid profile email offline_access")
    bundle = runtime.flows.exchange(
        "authorization_code",
        {"code": response.params["code"], "redirect_uri": "https://web.example/cb"},
        web,
    )
    return response, bundle


class TestAuthorizationRequestValidation:
    def test_unknown_client_is_not_redirected(self, runtime):
        with pytest.raises(InvalidRequestError) as excinfo:
            runtime.flows.validate_authorization_request(_params(client_id="ghost"))
        assert not excinfo.value.redirectable

    def test_unregistered_redirect_uri_is_not_redirected(self, runtime):
        with pytest.raises(InvalidRequestError) as excinfo:
            runtime.flows.validate_authorization_request(_params(redirect_uri="https://evil.example/cb"))
        assert not excinfo.value.redirectable

    def test_unsupported_response_type_is_redirected_with_state(self, runtime):
        with pytest.raises(UnsupportedResponseTypeError) as excinfo:
            runtime.flows.validate_authorization_request(_params(response_type="code device"))
        error = excinfo.value
        assert error.redirectable
        assert error.redirect_uri == "https://web.example/cb"
        assert error.state == "xyz"
        assert error.error_code == "unsupported_response_type"

    def test_disabled_flow_is_unsupported(self, runtime):
        runtime.flows.settings = runtime.settings.model_copy(update={"allowed_flows": [Flow.AUTHORIZATION_CODE]})
        with pytest.raises(UnsupportedResponseTypeError):
            runtime.flows.validate_authorization_request(
                _params(response_type="id_token token", nonce="n", response_mode="fragment")
            )

    def test_client_without_permission_is_unauthorized(self, runtime, pkce_pair):
        _, challenge = pkce_pair
        with pytest.raises(UnauthorizedClientError):
            runtime.flows.validate_authorization_request(
                _params(
                    client_id="spa",
                    redirect_uri="https://spa.example/cb",
                    response_type="code id_token",
                    nonce="n",
                    code_challenge=challenge,
                    code_challenge_method="S256",
                )
            )

    def test_query_mode_refused_for_tokens(self, runtime):
        with pytest.raises(InvalidRequestError) as excinfo:
            runtime.flows.validate_authorization_request(
                _params(response_type="id_token", nonce="n", response_mode="query")
            )
        assert excinfo.value.response_mode == "fragment"

    def test_default_response_modes(self, runtime):
        code = runtime.flows.validate_authorization_request(_params())
        implicit = runtime.flows.validate_authorization_request(_params(response_type="token id_token", nonce="n"))
        assert code.response_mode == "query"
        assert implicit.response_mode == "fragment"
        assert implicit.response_type == "id_token token"

    def test_unknown_scope(self, runtime):
        with pytest.raises(InvalidScopeError):
            runtime.flows.validate_authorization_request(_params(scope="openid payroll"))

    def test_scope_not_permitted_to_client(self, runtime, pkce_pair):
        _, challenge = pkce_pair
        with pytest.raises(InvalidScopeError):
            runtime.flows.validate_authorization_request(
                _params(
                    client_id="spa",
                    redirect_uri="https://spa.example/cb",
                    scope="openid email",
                    code_challenge=challenge,
                    code_challenge_method="S256",
                )
            )

    def test_id_token_requires_openid(self, runtime):
        with pytest.raises(InvalidRequestError):
            runtime.flows.validate_authorization_request(_params(response_type="id_token", scope="profile", nonce="n"))

    def test_implicit_id_token_requires_nonce(self, runtime):
        with pytest.raises(InvalidRequestError) as excinfo:
            runtime.flows.validate_authorization_request(_params(response_type="id_token"))
        assert "nonce" in excinfo.value.message

    def test_public_client_requires_pkce(self, runtime):
        with pytest.raises(InvalidRequestError) as excinfo:
            runtime.flows.validate_authorization_request(
                _params(client_id="spa", redirect_uri="https://spa.example/cb")
            )
        assert "code_challenge" in excinfo.value.message

    def test_code_challenge_without_code_refused(self, runtime, pkce_pair):
        _, challenge = pkce_pair
        with pytest.raises(InvalidRequestError):
            runtime.flows.validate_authorization_request(
                _params(response_type="token", code_challenge=challenge, code_challenge_method="S256")
            )

    def test_unsupported_challenge_method(self, runtime, pkce_pair):
        _, challenge = pkce_pair
        with pytest.raises(InvalidRequestError):
            runtime.flows.validate_authorization_request(
                _params(code_challenge=challenge, code_challenge_method="S512")
            )

    def test_validated_request_advances_state(self, runtime):
        request = runtime.flows.validate_authorization_request(_params())
        assert request.flow_state.status == FlowStatus.VALIDATED
        assert request.scopes == ["openid", "profile"]


class TestLoginAndConsent:
    def test_prompt_none_without_session_is_login_required(self, runtime):
        request = runtime.flows.validate_authorization_request(_params(prompt="none"))
        with pytest.raises(LoginRequiredError) as excinfo:
            runtime.flows.check_login(request, None)
        assert excinfo.value.redirectable
        assert request.flow_state.status == FlowStatus.REJECTED

    def test_no_session_asks_for_login(self, runtime):
        request = runtime.flows.validate_authorization_request(_params())
        assert runtime.flows.check_login(request, None) is False

    def test_prompt_none_cannot_be_combined(self, runtime):
        with pytest.raises(InvalidRequestError):
            runtime.flows.validate_authorization_request(_params(prompt="none login"))

    def _consenting_request(self, runtime, **overrides):
        return runtime.flows.validate_authorization_request(
            _params(client_id="consenting", redirect_uri="https://consenting.example/cb", **overrides)
        )

    def test_explicit_client_waits_for_consent(self, runtime, sign_in):
        request = self._consenting_request(runtime)
        decision = runtime.flows.decide_consent(request, sign_in(), {})
        assert decision.outcome == ConsentOutcome.PENDING

    def test_explicit_consent_with_prompt_none(self, runtime, sign_in):
        request = self._consenting_request(runtime, prompt="none")
        with pytest.raises(ConsentRequiredError):
            runtime.flows.decide_consent(request, sign_in(), {})

    def test_denied_consent(self, runtime, sign_in):
        request = self._consenting_request(runtime)
        with pytest.raises(AccessDeniedError) as excinfo:
            runtime.flows.decide_consent(request, sign_in(), {"consent": "deny"})
        assert excinfo.value.redirect_uri == "https://consenting.example/cb"

    def test_partial_consent_keeps_openid(self, runtime, sign_in):
        request = self._consenting_request(runtime, scope="openid profile email")
        decision = runtime.flows.decide_consent(request, sign_in(), {"consent": "accept", "granted_scopes": "email"})
        assert decision.outcome == ConsentOutcome.GRANTED
        assert decision.scopes == ["openid", "email"]

    def test_authorize_before_consent_refused(self, runtime, sign_in):
        request = runtime.flows.validate_authorization_request(_params())
        with pytest.raises(ServerError):
            runtime.flows.authorize(request, sign_in(), ["openid"])


class TestAuthorizationCodeFlow:
    def test_code_response(self, runtime, authorize):
        response = authorize()
        assert set(response.params) == {"code", "state"}
        assert response.params["state"] == "xyz"
        assert response.response_mode == "query"
        authorization = runtime.store.get_authorization(response.authorization_id)
        assert authorization.subject == "alice"
        assert authorization.scopes == ["openid", "profile", "email"]

    def test_exchange_returns_tokens(self, code_grant):
        response, bundle = code_grant
        assert bundle.access_token and bundle.refresh_token and bundle.id_token
        assert bundle.authorization.id == response.authorization_id

    def test_exchange_without_openid_has_no_id_token(self, runtime, authorize, web):
        response = authorize(scope="profile")
        bundle = runtime.flows.exchange(
            "authorization_code", {"code": response.params["code"], "redirect_uri": "https://web.example/cb"}, web
        )
        assert bundle.id_token is None
        assert bundle.access_token

    def test_code_replay_revokes_the_grant(self, runtime, code_grant, web):
        response, bundle = code_grant
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": response.params["code"], "redirect_uri": "https://web.example/cb"},
                web,
            )
        authorization = runtime.store.get_authorization(response.authorization_id)
        assert authorization.status == AuthorizationStatus.REVOKED
        with pytest.raises(InvalidTokenError):
            runtime.validator.validate(bundle.access_token, TokenKind.ACCESS_TOKEN)

    def test_replay_without_reuse_revocation(self, runtime, code_grant, web):
        runtime.flows.settings = runtime.settings.model_copy(update={"revoke_on_token_reuse": False})
        response, bundle = code_grant
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": response.params["code"], "redirect_uri": "https://web.example/cb"},
                web,
            )
        runtime.validator.validate(bundle.access_token, TokenKind.ACCESS_TOKEN)

    def test_redirect_uri_must_match(self, runtime, authorize, web):
        response = authorize()
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code", {"code": response.params["code"], "redirect_uri": "https://web.example/x"}, web
            )

    def test_code_bound_to_client(self, runtime, authorize):
        response = authorize()
        other = runtime.registry.get_client("consenting")
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": response.params["code"], "redirect_uri": "https://web.example/cb"},
                other,
            )

    def test_garbage_code_is_invalid_grant(self, runtime, web):
        with pytest.raises(InvalidGrantError) as excinfo:
            runtime.flows.exchange("authorization_code", {"code": "abc", "redirect_uri": "x"}, web)
        assert excinfo.value.error_code == "invalid_grant"

    def test_missing_code(self, runtime, web):
        with pytest.raises(InvalidRequestError):
            runtime.flows.exchange("authorization_code", {"redirect_uri": "https://web.example/cb"}, web)


class TestPkce:
    def _spa_code(self, authorize, challenge, method="S256"):
        return authorize(
            client_id="spa",
            scope="openid profile",
            code_challenge=challenge,
            code_challenge_method=method,
        ).params["code"]

    def test_s256_verifier_accepted(self, runtime, authorize, pkce_pair):
        verifier, challenge = pkce_pair
        code = self._spa_code(authorize, challenge)
        bundle = runtime.flows.exchange(
            "authorization_code",
            {"code": code, "redirect_uri": "https://spa.example/cb", "code_verifier": verifier},
            runtime.registry.get_client("spa"),
        )
        assert bundle.access_token

    def test_wrong_verifier_rejected(self, runtime, authorize, pkce_pair):
        _, challenge = pkce_pair
        code = self._spa_code(authorize, challenge)
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": code, "redirect_uri": "https://spa.example/cb", "code_verifier": "x" * 43},
                runtime.registry.get_client("spa"),
            )

    def test_missing_verifier_rejected(self, runtime, authorize, pkce_pair):
        _, challenge = pkce_pair
        code = self._spa_code(authorize, challenge)
        with pytest.raises(InvalidRequestError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": code, "redirect_uri": "https://spa.example/cb"},
                runtime.registry.get_client("spa"),
            )

    def test_plain_method(self, runtime, authorize, pkce_pair):
        verifier, _ = pkce_pair
        code = self._spa_code(authorize, verifier, method="plain")
        bundle = runtime.flows.exchange(
            "authorization_code",
            {"code": code, "redirect_uri": "https://spa.example/cb", "code_verifier": verifier},
            runtime.registry.get_client("spa"),
        )
        assert bundle.access_token

    def test_plain_method_mismatch_rejected(self, runtime, authorize, pkce_pair):
        verifier, challenge = pkce_pair
        code = self._spa_code(authorize, verifier, method="plain")
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": code, "redirect_uri": "https://spa.example/cb", "code_verifier": challenge},
                runtime.registry.get_client("spa"),
            )

    def test_rfc7636_appendix_b_pair(self, runtime, authorize):
        code = self._spa_code(authorize, "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM")
        bundle = runtime.flows.exchange(
            "authorization_code",
            {
                "code": code,
                "redirect_uri": "https://spa.example/cb",
                "code_verifier": "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
            },
            runtime.registry.get_client("spa"),
        )
        assert bundle.access_token

    def test_unexpected_verifier_rejected(self, runtime, authorize, web, pkce_pair):
        verifier, _ = pkce_pair
        code = authorize().params["code"]
        with pytest.raises(InvalidRequestError):
            runtime.flows.exchange(
                "authorization_code",
                {"code": code, "redirect_uri": "https://web.example/cb", "code_verifier": verifier},
                web,
            )


class TestRefreshTokenFlow:
    def test_rotation_consumes_old_refresh_token(self, runtime, code_grant, web):
        _, bundle = code_grant
        refreshed = runtime.flows.exchange("refresh_token", {"refresh_token": bundle.refresh_token}, web)
        assert refreshed.refresh_token and refreshed.refresh_token != bundle.refresh_token
        assert refreshed.authorization.id == bundle.authorization.id
        old = runtime.store.get_token(bundle.tokens[TokenKind.REFRESH_TOKEN].record.id)
        assert old.status == TokenStatus.CONSUMED

    def test_reuse_of_rotated_refresh_token_revokes_everything(self, runtime, code_grant, web):
        _, bundle = code_grant
        refreshed = runtime.flows.exchange("refresh_token", {"refresh_token": bundle.refresh_token}, web)
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange("refresh_token", {"refresh_token": bundle.refresh_token}, web)
        assert not runtime.store.get_authorization(bundle.authorization.id).is_valid
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange("refresh_token", {"refresh_token": refreshed.refresh_token}, web)

    def test_without_rotation_refresh_token_is_reusable(self, runtime, code_grant, web):
        runtime.flows.settings = runtime.settings.model_copy(update={"refresh_token_rotation": False})
        _, bundle = code_grant
        first = runtime.flows.exchange("refresh_token", {"refresh_token": bundle.refresh_token}, web)
        second = runtime.flows.exchange("refresh_token", {"refresh_token": bundle.refresh_token}, web)
        assert first.refresh_token is None
        assert first.access_token != second.access_token

    def test_scope_narrowing(self, runtime, code_grant, web):
        _, bundle = code_grant
        refreshed = runtime.flows.exchange(
            "refresh_token", {"refresh_token": bundle.refresh_token, "scope": "openid email"}, web
        )
        assert refreshed.scopes == ["openid", "email"]
        rotated = runtime.validator.validate(refreshed.refresh_token, TokenKind.REFRESH_TOKEN)
        assert rotated.scopes == ["openid", "profile", "email", "offline_access"]

    def test_scope_widening_refused(self, runtime, code_grant, web):
        _, bundle = code_grant
        with pytest.raises(InvalidScopeError):
            runtime.flows.exchange(
                "refresh_token", {"refresh_token": bundle.refresh_token, "scope": "openid phone"}, web
            )

    def test_access_token_is_not_a_refresh_token(self, runtime, code_grant, web):
        _, bundle = code_grant
        with pytest.raises(InvalidGrantError):
            runtime.flows.exchange("refresh_token", {"refresh_token": bundle.access_token}, web)


class TestGrantTypeChecks:
    def test_unknown_grant_type(self, runtime, web):
        with pytest.raises(UnsupportedGrantTypeError):
            runtime.flows.exchange("password", {}, web)

    def test_missing_grant_type(self, runtime, web):
        with pytest.raises(InvalidRequestError):
            runtime.flows.exchange(None, {}, web)

    def test_grant_not_permitted_to_client(self, runtime):
        with pytest.raises(UnauthorizedClientError):
            runtime.flows.exchange("refresh_token", {"refresh_token": "x"}, runtime.registry.get_client("consenting"))

    def test_disabled_refresh_flow(self, runtime, web):
        runtime.flows.settings = runtime.settings.model_copy(update={"allowed_flows": [Flow.AUTHORIZATION_CODE]})
        with pytest.raises(UnauthorizedClientError):
            runtime.flows.exchange("refresh_token", {"refresh_token": "x"}, web)


class TestImplicitAndHybrid:
    def test_implicit_returns_tokens_in_fragment(self, runtime, authorize):
        response = authorize(response_type="id_token token", nonce="n-1")
        assert response.response_mode == "fragment"
        assert {"access_token", "id_token", "token_type", "expires_in", "state"} <= set(response.params)
        validated = runtime.validator.validate(response.params["id_token"], TokenKind.ID_TOKEN)
        assert validated.claims["nonce"] == "n-1"
        assert "at_hash" in validated.claims

    def test_hybrid_code_and_id_token(self, runtime, authorize, web):
        response = authorize(response_type="code id_token", nonce="n-2")
        validated = runtime.validator.validate(response.params["id_token"], TokenKind.ID_TOKEN)
        assert "c_hash" in validated.claims
        bundle = runtime.flows.exchange(
            "authorization_code",
            {"code": response.params["code"], "redirect_uri": "https://web.example/cb"},
            web,
        )
        exchanged = runtime.validator.validate(bundle.id_token, TokenKind.ID_TOKEN)
        assert exchanged.claims["nonce"] == "n-2"


class TestEndSession:
    def test_id_token_hint_revokes_and_redirects(self, runtime, code_grant):
        _, bundle = code_grant
        result = runtime.flows.end_session(
            id_token_hint=bundle.id_token,
            post_logout_redirect_uri="https://web.example/bye",
            state="s1",
        )
        assert result.revoked_authorizations == 1
        parsed = urlsplit(result.redirect_uri)
        assert parsed.netloc == "web.example"
        assert parse_qs(parsed.query) == {"state": ["s1"]}
        assert not runtime.store.get_authorization(bundle.authorization.id).is_valid

    def test_unregistered_post_logout_uri(self, runtime, code_grant):
        _, bundle = code_grant
        with pytest.raises(InvalidRequestError):
            runtime.flows.end_session(
                id_token_hint=bundle.id_token, post_logout_redirect_uri="https://evil.example/bye"
            )

    def test_hint_for_other_user_refused(self, runtime, code_grant):
        _, bundle = code_grant
        with pytest.raises(InvalidRequestError):
            runtime.flows.end_session(id_token_hint=bundle.id_token, subject="bob")

    def test_session_subject_without_hint(self, runtime, code_grant):
        _, bundle = code_grant
        result = runtime.flows.end_session(subject="alice")
        assert result.redirect_uri is None
        assert result.revoked_authorizations == 1

    def test_revoke_authorization(self, runtime, code_grant):
        _, bundle = code_grant
        assert runtime.flows.revoke_authorization(bundle.authorization.id) is True
        assert runtime.flows.revoke_authorization(bundle.authorization.id) is False


class TestAppendParams:
    def test_merges_existing_query(self):
        assert append_params("https://a.example/cb?x=1", {"code": "c"}) == "https://a.example/cb?x=1&code=c"

    def test_fragment(self):
        assert append_params("https://a.example/cb", {"a": "b c"}, fragment=True) == "https://a.example/cb#a=b+c"
