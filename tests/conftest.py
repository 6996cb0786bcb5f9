import asyncio
import base64
import hashlib
import inspect
import json
import os
import secrets
import sys
import tempfile
from pathlib import Path

# Registry and directory fixtures must exist before any import initializes the runtime
_test_tmp_dir = Path(tempfile.mkdtemp(prefix="contruum_test_"))

ALL_RESPONSE_TYPES = [
    "code",
    "id_token",
    "id_token token",
    "token",
    "code id_token",
    "code token",
    "code id_token token",
]

TEST_CLIENTS = [
    {
        "client_id": "web",
        "client_type": "confidential",
        "client_secret": "web-secret",
        "display_name": "Web App",
        "redirect_uris": ["https://web.example/cb"],
        "post_logout_redirect_uris": ["https://web.example/bye"],
        "grant_types": ["authorization_code", "refresh_token", "implicit"],
        "response_types": ALL_RESPONSE_TYPES,
        "scopes": ["openid", "profile", "email", "phone", "address", "offline_access"],
        "consent_type": "implicit",
    },
    {
        "client_id": "spa",
        "client_type": "public",
        "redirect_uris": ["https://spa.example/cb"],
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "scopes": ["openid", "profile"],
        "consent_type": "implicit",
    },
    {
        "client_id": "consenting",
        "client_type": "confidential",
        "client_secret": "consent-secret",
        "redirect_uris": ["https://consenting.example/cb"],
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
        "scopes": ["openid", "profile", "email"],
        "consent_type": "explicit",
    },
    {
        "client_id": "api",
        "client_type": "confidential",
        "client_secret": "api-secret",
        "grant_types": [],
        "response_types": [],
    },
]

TEST_USERS = [
    {
        "subject": "alice",
        "claims": {
            "name": "Alice Liddell",
            "given_name": "Alice",
            "email": "alice@example.com",
            "updated_at": "1700000000",
            "address": json.dumps({"locality": "Oxford", "country": "UK"}),
        },
    },
    {"subject": "bob", "claims": {"name": "Bob", "email": "bob@example.com", "email_verified": True}},
]

(_test_tmp_dir / "clients.json").write_text(json.dumps(TEST_CLIENTS))
(_test_tmp_dir / "users.json").write_text(json.dumps(TEST_USERS))

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ISSUER", "https://auth.example.test")
os.environ.setdefault("CLIENTS_FILE", str(_test_tmp_dir / "clients.json"))
os.environ.setdefault("USERS_FILE", str(_test_tmp_dir / "users.json"))
os.environ.setdefault("ACCESS_TOKEN_AUDIENCES", "api")
os.environ.setdefault("PRUNING_ENABLED", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from contruum.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def pkce_pair():
    """A fresh (code_verifier, S256 code_challenge) pair."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


@pytest.fixture
def sign_in(runtime):
    """Open a login session and return the resolved principal."""

    def _sign_in(subject="alice"):
        return runtime.sessions.resolve(runtime.sessions.open(subject))

    return _sign_in


@pytest.fixture
def authorize(runtime, sign_in):
    """Run the authorization endpoint flow in-process and return the response."""

    def _authorize(
        client_id="web",
        response_type="code",
        scope="openid profile email",
        *,
        subject="alice",
        redirect_uri=None,
        **extra,
    ):
        client = runtime.registry.get_client(client_id)
        params = {
            "client_id": client_id,
            "response_type": response_type,
            "redirect_uri": redirect_uri or client.redirect_uris[0],
            "scope": scope,
            "state": "xyz",
            **extra,
        }
        request = runtime.flows.validate_authorization_request(params)
        principal = sign_in(subject)
        decision = runtime.flows.decide_consent(request, principal, {})
        return runtime.flows.authorize(request, principal, decision.scopes)

    return _authorize


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
