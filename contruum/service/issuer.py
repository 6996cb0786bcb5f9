from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from authlib.jose import JsonWebEncryption, JsonWebToken

from contruum.config import Settings
from contruum.logging import get_logger
from contruum.service.claims import ClaimsResolver
from contruum.service.errors import InvalidGrantError, ServerError
from contruum.service.keys import KeyManager
from contruum.storage.common import OAuthStore, format_scopes
from contruum.storage.errors import StorageError
from contruum.storage.models import (
    Authorization,
    Principal,
    RedemptionOutcome,
    Token,
    TokenKind,
    utcnow,
)

logger = get_logger(__name__)

# JWS "typ" header per token kind
TOKEN_TYPES: Dict[TokenKind, str] = {
    TokenKind.AUTHORIZATION_CODE: "code+jwt",
    TokenKind.ACCESS_TOKEN: "at+jwt",
    TokenKind.REFRESH_TOKEN: "rt+jwt",
    TokenKind.ID_TOKEN: "JWT",
}

AUTHORIZATION_CLAIM = "authorization_id"

_BUILD_ORDER = (
    TokenKind.AUTHORIZATION_CODE,
    TokenKind.ACCESS_TOKEN,
    TokenKind.REFRESH_TOKEN,
    TokenKind.ID_TOKEN,
)

_HASH_FOR_ALG = {"256": hashlib.sha256, "384": hashlib.sha384, "512": hashlib.sha512}


def left_half_hash(value: str, algorithm: str) -> str:
    """``at_hash`` / ``c_hash``: base64url of the left half of the value's digest."""
    digest_fn = _HASH_FOR_ALG.get(algorithm[-3:], hashlib.sha256)
    digest = digest_fn(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


class TokenRedemptionError(InvalidGrantError):
    """A code or refresh token could not be flipped from active to consumed."""

    def __init__(self, message: str, *, outcome: RedemptionOutcome) -> None:
        super().__init__(message, detail={"outcome": outcome.value})
        self.outcome = outcome


@dataclass
class CodeBinding:
    """Request details sealed into an authorization code and checked on exchange."""

    redirect_uri: str
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


@dataclass
class IssuedToken:
    record: Token
    value: str


@dataclass
class TokenBundle:
    authorization: Authorization
    scopes: List[str]
    tokens: Dict[TokenKind, IssuedToken] = field(default_factory=dict)

    def _value(self, kind: TokenKind) -> Optional[str]:
        issued = self.tokens.get(kind)
        return issued.value if issued else None

    @property
    def code(self) -> Optional[str]:
        return self._value(TokenKind.AUTHORIZATION_CODE)

    @property
    def access_token(self) -> Optional[str]:
        return self._value(TokenKind.ACCESS_TOKEN)

    @property
    def refresh_token(self) -> Optional[str]:
        return self._value(TokenKind.REFRESH_TOKEN)

    @property
    def id_token(self) -> Optional[str]:
        return self._value(TokenKind.ID_TOKEN)

    @property
    def records(self) -> List[Token]:
        return [issued.record for issued in self.tokens.values()]

    def expires_in(self, now: datetime) -> Optional[int]:
        issued = self.tokens.get(TokenKind.ACCESS_TOKEN)
        if issued is None:
            return None
        return max(0, int((issued.record.expires_at - now).total_seconds()))


class TokenIssuer:
    """Builds, signs, optionally encrypts and persists tokens.

    Every public ``issue_*`` method persists the Token records through exactly
    one atomic store operation before returning, so a serialized token never
    escapes without its record.
    """

    def __init__(
        self,
        keys: KeyManager,
        claims: ClaimsResolver,
        store: OAuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.keys = keys
        self.claims = claims
        self.store = store
        self.settings = settings
        self.clock = clock
        self._jwe = JsonWebEncryption()

    # -- public API --------------------------------------------------------

    def issue_grant(
        self,
        authorization: Authorization,
        principal: Principal,
        kinds: Iterable[TokenKind],
        **options: Any,
    ) -> TokenBundle:
        """Persist a new authorization together with its first tokens."""
        now, bundle = self._build(authorization, principal, kinds, **options)
        self._persist(lambda: self.store.create_grant(authorization, bundle.records))
        self._log_issued("grant", bundle)
        return bundle

    def issue_on_redemption(
        self,
        redeemed: Token,
        authorization: Authorization,
        principal: Principal,
        kinds: Iterable[TokenKind],
        **options: Any,
    ) -> TokenBundle:
        """Consume a single-use token and persist its replacements in one step."""
        now, bundle = self._build(authorization, principal, kinds, **options)
        outcome = self._persist(
            lambda: self.store.redeem_token(redeemed.id, bundle.records, now=now)
        )
        if outcome != RedemptionOutcome.REDEEMED:
            raise TokenRedemptionError(
                f"the {redeemed.kind.value.replace('_', ' ')} is no longer valid",
                outcome=outcome,
            )
        self._log_issued("redemption", bundle, redeemed=redeemed.id)
        return bundle

    def issue_for_authorization(
        self,
        authorization: Authorization,
        principal: Principal,
        kinds: Iterable[TokenKind],
        **options: Any,
    ) -> TokenBundle:
        """Add tokens under an existing authorization that must still be valid."""
        _, bundle = self._build(authorization, principal, kinds, **options)
        added = self._persist(lambda: self.store.add_tokens(authorization.id, bundle.records))
        if not added:
            raise InvalidGrantError("the authorization is no longer valid")
        self._log_issued("refresh", bundle)
        return bundle

    # -- building ----------------------------------------------------------

    def _ttl(self, kind: TokenKind) -> int:
        return {
            TokenKind.AUTHORIZATION_CODE: self.settings.authorization_code_ttl_seconds,
            TokenKind.ACCESS_TOKEN: self.settings.access_token_ttl_seconds,
            TokenKind.REFRESH_TOKEN: self.settings.refresh_token_ttl_seconds,
            TokenKind.ID_TOKEN: self.settings.id_token_ttl_seconds,
        }[kind]

    def _access_audience(self) -> Any:
        audiences = self.settings.access_token_audiences or [self.settings.issuer]
        return audiences[0] if len(audiences) == 1 else list(audiences)

    def _build(
        self,
        authorization: Authorization,
        principal: Principal,
        kinds: Iterable[TokenKind],
        *,
        scopes: Optional[Sequence[str]] = None,
        refresh_scopes: Optional[Sequence[str]] = None,
        nonce: Optional[str] = None,
        code_binding: Optional[CodeBinding] = None,
        auth_time: Optional[int] = None,
    ) -> Tuple[datetime, TokenBundle]:
        requested = set(kinds)
        if TokenKind.AUTHORIZATION_CODE in requested and code_binding is None:
            raise ServerError("authorization code requires request binding")
        granted = list(scopes if scopes is not None else authorization.scopes)
        now = self.clock().replace(microsecond=0)
        bundle = TokenBundle(authorization=authorization, scopes=granted)
        signing_alg = self.keys.current_signing_key().algorithm

        for kind in _BUILD_ORDER:
            if kind not in requested:
                continue
            single_use = kind == TokenKind.AUTHORIZATION_CODE or (
                kind == TokenKind.REFRESH_TOKEN and self.settings.refresh_token_rotation
            )
            record = Token.new(
                kind, authorization, self._ttl(kind), issued_at=now, single_use=single_use
            )
            payload = self._base_payload(record)
            if kind == TokenKind.AUTHORIZATION_CODE:
                payload.update(
                    aud=self.settings.issuer,
                    scope=format_scopes(granted),
                    redirect_uri=code_binding.redirect_uri,
                    nonce=code_binding.nonce,
                    code_challenge=code_binding.code_challenge,
                    code_challenge_method=code_binding.code_challenge_method,
                    auth_time=auth_time,
                )
            elif kind == TokenKind.ACCESS_TOKEN:
                payload.update(aud=self._access_audience(), scope=format_scopes(granted))
            elif kind == TokenKind.REFRESH_TOKEN:
                # a narrowed refresh keeps the original grant on the rotated token
                payload.update(
                    aud=self.settings.issuer,
                    scope=format_scopes(refresh_scopes if refresh_scopes is not None else granted),
                    auth_time=auth_time,
                )
            else:
                payload.update(
                    self.claims.resolve(principal.claims, granted),
                    aud=authorization.client_id,
                    azp=authorization.client_id,
                    nonce=nonce,
                    auth_time=auth_time,
                )
                if bundle.access_token:
                    payload["at_hash"] = left_half_hash(bundle.access_token, signing_alg)
                if bundle.code:
                    payload["c_hash"] = left_half_hash(bundle.code, signing_alg)
            bundle.tokens[kind] = IssuedToken(record=record, value=self._serialize(kind, payload))
        return now, bundle

    def _base_payload(self, record: Token) -> Dict[str, Any]:
        issued_at = int(record.created_at.timestamp())
        return {
            "iss": self.settings.issuer,
            "sub": record.subject,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": int(record.expires_at.timestamp()),
            "jti": record.id,
            "client_id": record.client_id,
            AUTHORIZATION_CLAIM: record.authorization_id,
        }

    def _serialize(self, kind: TokenKind, payload: Dict[str, Any]) -> str:
        payload = {k: v for k, v in payload.items() if v is not None}
        signing_key = self.keys.current_signing_key()
        header = {"alg": signing_key.algorithm, "kid": signing_key.kid, "typ": TOKEN_TYPES[kind]}
        signed = JsonWebToken([signing_key.algorithm]).encode(
            header, payload, signing_key.jwk, check=False
        )
        if kind.value not in self.settings.encrypted_token_kinds:
            return signed.decode("ascii")
        encryption_key = self.keys.current_encryption_key()
        protected = {
            "alg": encryption_key.algorithm,
            "enc": self.keys.content_encryption_algorithm,
            "kid": encryption_key.kid,
            "typ": TOKEN_TYPES[kind],
            "cty": "JWT",
        }
        encrypted = self._jwe.serialize_compact(protected, signed, encryption_key.jwk)
        return encrypted.decode("ascii")

    # -- persistence -------------------------------------------------------

    def _persist(self, operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except StorageError as exc:
            logger.error(
                "token_persistence_failed",
                error_type=type(exc).__name__,
                error=exc.message,
            )
            raise ServerError("token persistence failed") from exc

    def _log_issued(self, mode: str, bundle: TokenBundle, **extra: Any) -> None:
        logger.info(
            "tokens_issued",
            mode=mode,
            authorization_id=bundle.authorization.id,
            client_id=bundle.authorization.client_id,
            kinds=[kind.value for kind in bundle.tokens],
            jtis=[issued.record.id for issued in bundle.tokens.values()],
            **extra,
        )
