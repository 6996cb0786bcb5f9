from __future__ import annotations

from typing import Any, Dict, Optional

from contruum.logging import get_logger
from contruum.service.claims import ClaimsResolver
from contruum.service.errors import InvalidTokenError
from contruum.service.principals import PrincipalDirectory
from contruum.service.validation import Validator
from contruum.storage.models import TokenKind

logger = get_logger(__name__)


class UserinfoService:
    """Serves the userinfo endpoint: a fresh claim set for the access token's scopes."""

    def __init__(
        self, validator: Validator, directory: PrincipalDirectory, claims: ClaimsResolver
    ) -> None:
        self.validator = validator
        self.directory = directory
        self.claims = claims

    def userinfo(self, access_token: Optional[str]) -> Dict[str, Any]:
        validated = self.validator.validate(access_token, TokenKind.ACCESS_TOKEN)
        if "openid" not in validated.scopes:
            raise InvalidTokenError("the access token was not granted the openid scope", reason="insufficient_scope")
        principal = self.directory.find(validated.subject)
        if principal is None:
            logger.warning("userinfo_subject_unknown", subject=validated.subject)
            raise InvalidTokenError("the subject no longer exists", reason="unknown_subject")
        return {"sub": principal.subject, **self.claims.resolve(principal.claims, validated.scopes)}
