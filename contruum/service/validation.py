from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from authlib.jose import JsonWebEncryption, JsonWebToken
from authlib.jose.errors import ExpiredTokenError, JoseError
from cryptography.exceptions import InvalidTag

from contruum.config import Settings
from contruum.logging import get_logger
from contruum.service.errors import InvalidTokenError, ServerError
from contruum.service.issuer import AUTHORIZATION_CLAIM, TOKEN_TYPES
from contruum.service.keys import KeyManager
from contruum.storage.common import OAuthStore, parse_scopes
from contruum.storage.errors import StorageError
from contruum.storage.models import Authorization, Client, Token, TokenKind, TokenStatus, utcnow

logger = get_logger(__name__)

_KIND_FOR_TYPE = {typ: kind for kind, typ in TOKEN_TYPES.items()}

_CRYPTO_ERRORS = (JoseError, ValueError, TypeError, InvalidTag)


@dataclass
class ValidatedToken:
    kind: TokenKind
    claims: Dict[str, Any]
    header: Dict[str, Any]
    record: Token
    authorization: Authorization

    @property
    def subject(self) -> str:
        return self.record.subject

    @property
    def client_id(self) -> str:
        return self.record.client_id

    @property
    def scopes(self) -> List[str]:
        return parse_scopes(self.claims.get("scope"))

    @property
    def audiences(self) -> List[str]:
        aud = self.claims.get("aud")
        if aud is None:
            return []
        return [aud] if isinstance(aud, str) else list(aud)


def _peek_header(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    header = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    if not isinstance(header, dict):
        raise ValueError("header is not a JSON object")
    return header


def _reject(message: str, reason: str) -> InvalidTokenError:
    logger.info("token_rejected", reason=reason)
    return InvalidTokenError(message, reason=reason)


class Validator:
    """Decides whether an inbound token is acceptable right now.

    Cryptographic checks run against the current keys only; the store is then
    consulted so a revoked authorization, or a consumed or revoked token,
    fails immediately even while the signature is still good.
    """

    def __init__(
        self,
        keys: KeyManager,
        store: OAuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.keys = keys
        self.store = store
        self.settings = settings
        self.clock = clock
        self._jwe = JsonWebEncryption()

    def validate(
        self,
        token: Optional[str],
        kinds: Union[TokenKind, Iterable[TokenKind]],
        *,
        audience: Optional[str] = None,
        verify_status: bool = True,
        verify_lifetime: bool = True,
    ) -> ValidatedToken:
        expected = {kinds} if isinstance(kinds, TokenKind) else set(kinds)
        if not token or not isinstance(token, str):
            raise _reject("the token is missing", "missing")

        signed, outer_header = self._unwrap(token.strip())
        claims, header = self._verify_signature(signed)

        kind = _KIND_FOR_TYPE.get(header.get("typ"))
        if kind is None or kind not in expected:
            raise _reject("the token type is not accepted here", "wrong_kind")
        if outer_header is not None and outer_header.get("typ", header.get("typ")) != header.get("typ"):
            raise _reject("the token envelope does not match its content", "wrong_kind")
        encrypted_kind = kind.value in self.settings.encrypted_token_kinds
        if encrypted_kind != (outer_header is not None):
            raise _reject("the token is not in the expected form", "wrong_form")
        if claims.get("iss") != self.settings.issuer:
            raise _reject("the token was issued by another issuer", "wrong_issuer")

        if verify_lifetime:
            try:
                claims.validate(
                    now=int(self.clock().timestamp()), leeway=self.settings.clock_skew_seconds
                )
            except ExpiredTokenError:
                raise _reject("the token has expired", "expired")
            except JoseError:
                raise _reject("the token is not valid yet", "invalid_lifetime")

        if audience is not None:
            aud = claims.get("aud")
            audiences = [aud] if isinstance(aud, str) else list(aud or [])
            if audience not in audiences:
                raise _reject("the token is not meant for this audience", "wrong_audience")

        record, authorization = self._load_state(claims)
        if record.kind != kind:
            raise _reject("the token type is not accepted here", "wrong_kind")
        if verify_status and record.status != TokenStatus.ACTIVE:
            raise _reject(f"the token has been {record.status.value}", record.status.value)
        if authorization is None or not authorization.is_valid:
            raise _reject("the authorization has been revoked", "authorization_revoked")

        return ValidatedToken(
            kind=kind,
            claims=dict(claims),
            header=dict(header),
            record=record,
            authorization=authorization,
        )

    def _unwrap(self, token: str):
        segments = token.split(".")
        if len(segments) == 3:
            return token, None
        if len(segments) != 5:
            raise _reject("the token is malformed", "malformed")
        try:
            outer = _peek_header(segments[0])
        except (ValueError, UnicodeDecodeError):
            raise _reject("the token is malformed", "malformed")
        encryption_key = self.keys.current_encryption_key()
        if outer.get("kid") != encryption_key.kid:
            raise _reject("the token was encrypted with an unknown key", "unknown_key")
        if outer.get("alg") != encryption_key.algorithm or outer.get("enc") != self.keys.content_encryption_algorithm:
            raise _reject("the token encryption algorithm is not accepted", "wrong_algorithm")
        try:
            decrypted = self._jwe.deserialize_compact(token, encryption_key.jwk)
        except _CRYPTO_ERRORS:
            raise _reject("the token could not be decrypted", "undecryptable")
        payload = decrypted["payload"]
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("ascii")
            except UnicodeDecodeError:
                raise _reject("the token is malformed", "malformed")
        return payload, outer

    def _verify_signature(self, signed: str):
        segments = signed.split(".")
        if len(segments) != 3:
            raise _reject("the token is malformed", "malformed")
        try:
            header = _peek_header(segments[0])
        except (ValueError, UnicodeDecodeError):
            raise _reject("the token is malformed", "malformed")
        signing_key = self.keys.current_signing_key()
        if header.get("kid") != signing_key.kid:
            raise _reject("the token was signed with an unknown key", "unknown_key")
        if header.get("alg") != signing_key.algorithm:
            raise _reject("the token signing algorithm is not accepted", "wrong_algorithm")
        try:
            claims = JsonWebToken([signing_key.algorithm]).decode(signed, signing_key.jwk)
        except _CRYPTO_ERRORS:
            raise _reject("the token signature is invalid", "bad_signature")
        return claims, header

    def _load_state(self, claims: Dict[str, Any]):
        token_id = claims.get("jti")
        if not token_id:
            raise _reject("the token has no identifier", "malformed")
        try:
            record = self.store.get_token(token_id)
            authorization = (
                self.store.get_authorization(record.authorization_id) if record else None
            )
        except StorageError as exc:
            logger.error("token_state_lookup_failed", error=exc.message)
            raise ServerError("token state unavailable") from exc
        if record is None:
            raise _reject("the token is unknown", "unknown_token")
        if claims.get(AUTHORIZATION_CLAIM) != record.authorization_id:
            raise _reject("the token does not match its record", "record_mismatch")
        return record, authorization

    def introspect(self, token: Optional[str], client: Client) -> Dict[str, Any]:
        """Introspection response; ``{"active": false}`` for anything unusable by the caller."""
        try:
            validated = self.validate(
                token, {TokenKind.ACCESS_TOKEN, TokenKind.REFRESH_TOKEN, TokenKind.ID_TOKEN}
            )
        except InvalidTokenError:
            return {"active": False}

        if client.client_id != validated.client_id and (
            validated.kind == TokenKind.REFRESH_TOKEN
            or client.client_id not in validated.audiences
        ):
            logger.warning(
                "introspection_caller_not_audience",
                caller=client.client_id,
                jti=validated.record.id,
            )
            return {"active": False}

        claims = validated.claims
        response: Dict[str, Any] = {
            "active": True,
            "iss": claims.get("iss"),
            "sub": claims.get("sub"),
            "aud": claims.get("aud"),
            "exp": claims.get("exp"),
            "iat": claims.get("iat"),
            "nbf": claims.get("nbf"),
            "jti": claims.get("jti"),
            "client_id": validated.client_id,
            "token_usage": validated.kind.value,
        }
        if validated.scopes:
            response["scope"] = " ".join(validated.scopes)
        if validated.kind == TokenKind.ACCESS_TOKEN:
            response["token_type"] = "Bearer"
        return {k: v for k, v in response.items() if v is not None}
