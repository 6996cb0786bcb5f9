from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authlib.jose import JsonWebKey
from authlib.jose.rfc7517 import Key

from contruum.logging import get_logger
from contruum.service.errors import ServerError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ManagedKey:
    kid: str
    algorithm: str
    use: str
    jwk: Key
    created_at: datetime

    def public_jwk(self) -> Dict[str, Any]:
        public = dict(self.jwk.as_dict(is_private=False))
        public.update({"kid": self.kid, "alg": self.algorithm, "use": self.use})
        return public


def _generate_rsa_key(size: int, algorithm: str, use: str) -> ManagedKey:
    kid = str(uuid.uuid4())
    jwk = JsonWebKey.generate_key(
        "RSA",
        size,
        options={"kid": kid, "alg": algorithm, "use": use},
        is_private=True,
    )
    return ManagedKey(
        kid=kid,
        algorithm=algorithm,
        use=use,
        jwk=jwk,
        created_at=datetime.now(timezone.utc),
    )


class KeyManager:
    """Owns the ephemeral signing and encryption keys for one process lifetime.

    Keys are generated once by :meth:`initialize` and never persisted, so a
    restart is a full rotation: tokens signed by a previous process no longer
    verify. There is no historical key lookup.
    """

    def __init__(
        self,
        *,
        signing_algorithm: str = "RS256",
        encryption_algorithm: str = "RSA-OAEP",
        content_encryption_algorithm: str = "A256CBC-HS512",
        key_size: int = 2048,
    ) -> None:
        self.signing_algorithm = signing_algorithm
        self.encryption_algorithm = encryption_algorithm
        self.content_encryption_algorithm = content_encryption_algorithm
        self.key_size = key_size
        self._signing_key: Optional[ManagedKey] = None
        self._encryption_key: Optional[ManagedKey] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "KeyManager":
        return cls(
            signing_algorithm=settings.signing_algorithm,
            encryption_algorithm=settings.encryption_algorithm,
            content_encryption_algorithm=settings.content_encryption_algorithm,
            key_size=settings.rsa_key_size,
        )

    @property
    def initialized(self) -> bool:
        return self._signing_key is not None and self._encryption_key is not None

    def initialize(self) -> None:
        with self._lock:
            if self.initialized:
                raise RuntimeError("key manager already initialized")
            signing = _generate_rsa_key(self.key_size, self.signing_algorithm, "sig")
            encryption = _generate_rsa_key(self.key_size, self.encryption_algorithm, "enc")
            # Publish both together; readers check _signing_key first
            self._encryption_key = encryption
            self._signing_key = signing
        logger.info(
            "keys_initialized",
            signing_kid=signing.kid,
            encryption_kid=encryption.kid,
            key_size=self.key_size,
        )

    def current_signing_key(self) -> ManagedKey:
        key = self._signing_key
        if key is None:
            raise ServerError("signing key unavailable")
        return key

    def current_encryption_key(self) -> ManagedKey:
        key = self._encryption_key
        if key is None:
            raise ServerError("encryption key unavailable")
        return key

    def public_key_set(self) -> Dict[str, Any]:
        """JWK Set with the public halves of the active keys."""
        return {
            "keys": [
                self.current_signing_key().public_jwk(),
                self.current_encryption_key().public_jwk(),
            ]
        }
