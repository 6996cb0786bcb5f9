"""Storage interface and helpers shared between memory and postgres implementations.

Both backends implement :class:`OAuthStore`. The conditional operations
(``redeem_token``, ``add_tokens``, ``revoke_authorization`` and the two prune
calls) must each be atomic: the status check and the write happen under one
lock or inside one transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from contruum.storage.models import (
    Authorization,
    Client,
    ClientType,
    ConsentType,
    RedemptionOutcome,
    Token,
)


class OAuthStore(Protocol):
    def upsert_client(self, client: Client) -> Client:
        ...

    def get_client(self, client_id: str) -> Optional[Client]:
        ...

    def create_grant(self, authorization: Authorization, tokens: Sequence[Token]) -> None:
        ...

    def get_authorization(self, authorization_id: str) -> Optional[Authorization]:
        ...

    def list_authorizations(
        self, subject: str, *, client_id: Optional[str] = None
    ) -> List[Authorization]:
        ...

    def revoke_authorization(self, authorization_id: str) -> bool:
        ...

    def add_tokens(self, authorization_id: str, tokens: Sequence[Token]) -> bool:
        ...

    def get_token(self, token_id: str) -> Optional[Token]:
        ...

    def list_tokens(self, authorization_id: str) -> List[Token]:
        ...

    def redeem_token(
        self, token_id: str, replacements: Sequence[Token], *, now: datetime
    ) -> RedemptionOutcome:
        ...

    def prune_tokens(self, threshold: datetime, now: datetime, limit: int) -> int:
        ...

    def prune_authorizations(self, threshold: datetime, now: datetime, limit: int) -> int:
        ...


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never mix naive and aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_scopes(scopes: Iterable[str]) -> str:
    """Space-delimited scope string, de-duplicated in first-seen order."""
    seen: List[str] = []
    for scope in scopes:
        if scope and scope not in seen:
            seen.append(scope)
    return " ".join(seen)


def parse_scopes(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return format_scopes(raw.split()).split()


def client_from_dict(data: Dict[str, Any]) -> Client:
    """Build a Client from a registration entry (clients file or store row)."""
    client_id = data.get("client_id")
    if not client_id:
        raise ValueError("client registration requires client_id")
    client_type = ClientType(data.get("client_type") or ClientType.CONFIDENTIAL.value)
    secret_hash = data.get("secret_hash") or data.get("client_secret_hash")
    if client_type == ClientType.CONFIDENTIAL and not secret_hash:
        raise ValueError(f"confidential client {client_id} requires a secret hash")
    return Client(
        client_id=client_id,
        client_type=client_type,
        secret_hash=secret_hash if client_type == ClientType.CONFIDENTIAL else None,
        display_name=data.get("display_name"),
        redirect_uris=list(data.get("redirect_uris") or []),
        post_logout_redirect_uris=list(data.get("post_logout_redirect_uris") or []),
        grant_types=list(data.get("grant_types") or ["authorization_code"]),
        response_types=list(data.get("response_types") or ["code"]),
        scopes=list(data.get("scopes") or []),
        consent_type=ConsentType(data.get("consent_type") or ConsentType.IMPLICIT.value),
        require_pkce=bool(data.get("require_pkce", False)),
    )


def client_to_dict(client: Client) -> Dict[str, Any]:
    return {
        "client_id": client.client_id,
        "client_type": client.client_type.value,
        "secret_hash": client.secret_hash,
        "display_name": client.display_name,
        "redirect_uris": list(client.redirect_uris),
        "post_logout_redirect_uris": list(client.post_logout_redirect_uris),
        "grant_types": list(client.grant_types),
        "response_types": list(client.response_types),
        "scopes": list(client.scopes),
        "consent_type": client.consent_type.value,
        "require_pkce": client.require_pkce,
    }
