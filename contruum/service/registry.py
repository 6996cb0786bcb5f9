from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from contruum.config import Flow, Settings
from contruum.logging import get_logger
from contruum.service.errors import InvalidClientError, InvalidRequestError
from contruum.storage.common import client_from_dict
from contruum.storage.models import Client

logger = get_logger(__name__)

_password_hasher = PasswordHasher(type=Type.ID)

RESPONSE_TYPE_ORDER = ("code", "id_token", "token")

# Response type -> flow, per OIDC Core section 3
_FLOW_RESPONSE_TYPES: Dict[Flow, Tuple[str, ...]] = {
    Flow.AUTHORIZATION_CODE: ("code",),
    Flow.IMPLICIT: ("id_token", "id_token token", "token"),
    Flow.HYBRID: ("code id_token", "code token", "code id_token token"),
}

# Grant types a client must hold to use each flow
_FLOW_GRANT_TYPES: Dict[Flow, FrozenSet[str]] = {
    Flow.AUTHORIZATION_CODE: frozenset({"authorization_code"}),
    Flow.IMPLICIT: frozenset({"implicit"}),
    Flow.HYBRID: frozenset({"authorization_code", "implicit"}),
}

RESPONSE_MODES = ("query", "fragment", "form_post")
CODE_CHALLENGE_METHODS = ("plain", "S256")
CLIENT_AUTH_METHODS = ("client_secret_basic", "client_secret_post")


def hash_client_secret(secret: str) -> str:
    """Argon2id hash suitable for the ``secret_hash`` field of a client entry."""
    return _password_hasher.hash(secret)


def normalize_response_type(value: Optional[str]) -> str:
    """Canonical ``code id_token token`` ordering; unknown parts are kept last."""
    parts = (value or "").split()
    known = [p for p in RESPONSE_TYPE_ORDER if p in parts]
    unknown = sorted(p for p in set(parts) if p not in RESPONSE_TYPE_ORDER)
    return " ".join(known + unknown)


def flow_for_response_type(response_type: str) -> Optional[Flow]:
    normalized = normalize_response_type(response_type)
    for flow, response_types in _FLOW_RESPONSE_TYPES.items():
        if normalized in response_types:
            return flow
    return None


class Registry:
    """Configuration-derived catalog of clients, scopes, claims, flows and endpoints."""

    def __init__(self, settings: Settings, clients: Iterable[Client] = ()) -> None:
        self.settings = settings
        self._clients: Dict[str, Client] = {}
        for client in clients:
            self.register(client)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Registry":
        clients: List[Client] = []
        if settings.clients_file:
            clients = load_clients_file(settings.clients_file)
        else:
            logger.warning("no_clients_configured", setting="CLIENTS_FILE")
        return cls(settings, clients)

    # -- clients -----------------------------------------------------------

    def register(self, client: Client) -> Client:
        unknown_scopes = [s for s in client.scopes if s not in self.settings.supported_scopes]
        if unknown_scopes:
            logger.warning(
                "client_scopes_unsupported", client_id=client.client_id, scopes=unknown_scopes
            )
        for uri in [*client.redirect_uris, *client.post_logout_redirect_uris]:
            if "://" not in uri or "#" in uri:
                raise ValueError(f"client {client.client_id} has an invalid redirect URI: {uri}")
        self._clients[client.client_id] = client
        return client

    def clients(self) -> List[Client]:
        return list(self._clients.values())

    def get_client(self, client_id: Optional[str]) -> Optional[Client]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def require_client(self, client_id: Optional[str]) -> Client:
        client = self.get_client(client_id)
        if client is None:
            raise InvalidRequestError("the specified client_id is invalid")
        return client

    def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> Client:
        """Authenticate a client at the token or introspection endpoint.

        Public clients present only their identifier; confidential clients must
        present a secret matching the registered argon2 hash.
        """
        client = self.get_client(client_id)
        if client is None:
            raise InvalidClientError("client authentication failed")
        if client.is_public:
            if client_secret:
                raise InvalidClientError("public clients must not send a client secret")
            return client
        if not client_secret or not client.secret_hash:
            raise InvalidClientError("client authentication failed")
        try:
            _password_hasher.verify(client.secret_hash, client_secret)
        except (VerificationError, InvalidHashError):
            logger.warning("client_authentication_failed", client_id=client.client_id)
            raise InvalidClientError("client authentication failed")
        return client

    # -- scopes, claims and flows -----------------------------------------

    def is_scope_registered(self, scope: str) -> bool:
        return scope in self.settings.supported_scopes

    def response_types_supported(self) -> List[str]:
        supported: List[str] = []
        for flow, response_types in _FLOW_RESPONSE_TYPES.items():
            if self.settings.flow_enabled(flow):
                supported.extend(response_types)
        return supported

    def grant_types_supported(self) -> List[str]:
        grants: List[str] = []
        if self.settings.flow_enabled(Flow.AUTHORIZATION_CODE) or self.settings.flow_enabled(Flow.HYBRID):
            grants.append("authorization_code")
        if self.settings.flow_enabled(Flow.IMPLICIT) or self.settings.flow_enabled(Flow.HYBRID):
            grants.append("implicit")
        if self.settings.flow_enabled(Flow.REFRESH_TOKEN):
            grants.append("refresh_token")
        return grants

    @staticmethod
    def grant_types_for_flow(flow: Flow) -> FrozenSet[str]:
        return _FLOW_GRANT_TYPES.get(flow, frozenset())

    def client_allows_response_type(self, client: Client, response_type: str) -> bool:
        flow = flow_for_response_type(response_type)
        if flow is None:
            return False
        registered = {normalize_response_type(rt) for rt in client.response_types}
        return (
            normalize_response_type(response_type) in registered
            and self.grant_types_for_flow(flow) <= set(client.grant_types)
        )

    # -- endpoints ---------------------------------------------------------

    def endpoint_url(self, path: str) -> str:
        return f"{self.settings.issuer}{path}"

    def discovery_document(self) -> Dict[str, Any]:
        settings = self.settings
        return {
            "issuer": settings.issuer,
            "authorization_endpoint": self.endpoint_url(settings.authorization_endpoint_path),
            "token_endpoint": self.endpoint_url(settings.token_endpoint_path),
            "introspection_endpoint": self.endpoint_url(settings.introspection_endpoint_path),
            "userinfo_endpoint": self.endpoint_url(settings.userinfo_endpoint_path),
            "end_session_endpoint": self.endpoint_url(settings.end_session_endpoint_path),
            "jwks_uri": self.endpoint_url(settings.jwks_endpoint_path),
            "scopes_supported": list(settings.supported_scopes),
            "claims_supported": list(settings.supported_claims),
            "response_types_supported": self.response_types_supported(),
            "response_modes_supported": list(RESPONSE_MODES),
            "grant_types_supported": self.grant_types_supported(),
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [settings.signing_algorithm],
            "token_endpoint_auth_methods_supported": list(CLIENT_AUTH_METHODS),
            "introspection_endpoint_auth_methods_supported": list(CLIENT_AUTH_METHODS),
            "code_challenge_methods_supported": list(CODE_CHALLENGE_METHODS),
            "claims_parameter_supported": False,
            "request_parameter_supported": False,
        }


def load_clients_file(path: str) -> List[Client]:
    """Read client registrations from a JSON list.

    Entries may carry a plaintext ``client_secret`` for local development; it
    is hashed on load and a warning is logged.
    """
    raw = json.loads(Path(path).read_text())
    if not isinstance(raw, list):
        raise ValueError("clients file must contain a JSON list")
    clients = []
    for entry in raw:
        entry = dict(entry)
        plaintext = entry.pop("client_secret", None)
        if plaintext and not entry.get("secret_hash"):
            logger.warning("client_secret_plaintext", client_id=entry.get("client_id"))
            entry["secret_hash"] = hash_client_secret(plaintext)
        clients.append(client_from_dict(entry))
    logger.info("clients_loaded", path=path, count=len(clients))
    return clients
