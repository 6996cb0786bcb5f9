from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientType(str, Enum):
    CONFIDENTIAL = "confidential"
    PUBLIC = "public"


class ConsentType(str, Enum):
    IMPLICIT = "implicit"
    EXPLICIT = "explicit"


class AuthorizationStatus(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"


class TokenStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    REVOKED = "revoked"


class TokenKind(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    ID_TOKEN = "id_token"


class RedemptionOutcome(str, Enum):
    """Result of atomically flipping a single-use token from active to consumed."""

    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    ALREADY_REDEEMED = "already_redeemed"
    REVOKED = "revoked"
    AUTHORIZATION_REVOKED = "authorization_revoked"


@dataclass(frozen=True)
class Client:
    client_id: str
    client_type: ClientType = ClientType.CONFIDENTIAL
    secret_hash: Optional[str] = None
    display_name: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)
    post_logout_redirect_uris: List[str] = field(default_factory=list)
    grant_types: List[str] = field(default_factory=lambda: ["authorization_code"])
    response_types: List[str] = field(default_factory=lambda: ["code"])
    scopes: List[str] = field(default_factory=list)
    consent_type: ConsentType = ConsentType.IMPLICIT
    require_pkce: bool = False

    @property
    def is_public(self) -> bool:
        return self.client_type == ClientType.PUBLIC


@dataclass
class Authorization:
    id: str
    subject: str
    client_id: str
    scopes: List[str]
    status: AuthorizationStatus = AuthorizationStatus.VALID
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, subject: str, client_id: str, scopes: List[str]) -> "Authorization":
        return cls(
            id=str(uuid.uuid4()),
            subject=subject,
            client_id=client_id,
            scopes=list(scopes),
        )

    @property
    def is_valid(self) -> bool:
        return self.status == AuthorizationStatus.VALID


@dataclass
class Token:
    id: str
    kind: TokenKind
    authorization_id: str
    client_id: str
    subject: str
    created_at: datetime
    expires_at: datetime
    status: TokenStatus = TokenStatus.ACTIVE
    single_use: bool = False
    redeemed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        kind: TokenKind,
        authorization: Authorization,
        ttl_seconds: int,
        *,
        issued_at: Optional[datetime] = None,
        single_use: bool = False,
    ) -> "Token":
        now = issued_at or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            authorization_id=authorization.id,
            client_id=authorization.client_id,
            subject=authorization.subject,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            single_use=single_use,
        )

    def is_live(self, now: datetime) -> bool:
        """A token still counts as a reference while unexpired and not revoked."""
        return self.status != TokenStatus.REVOKED and self.expires_at > now


@dataclass
class Principal:
    subject: str
    claims: Dict = field(default_factory=dict)
    authenticated_at: Optional[datetime] = None
