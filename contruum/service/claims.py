from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Mapping, Tuple

from contruum.service.errors import ServerError

# Standard OIDC scope to claim mapping (OpenID Connect Core 1.0, section 5.4)
SCOPE_CLAIMS: Dict[str, Tuple[str, ...]] = {
    "profile": (
        "name",
        "given_name",
        "family_name",
        "middle_name",
        "nickname",
        "preferred_username",
        "profile",
        "picture",
        "website",
        "gender",
        "birthdate",
        "zoneinfo",
        "locale",
        "updated_at",
    ),
    "email": ("email", "email_verified"),
    "phone": ("phone_number", "phone_number_verified"),
    "address": ("address",),
}

# Verification flags always emitted alongside their scope
_VERIFICATION_CLAIMS = {"email_verified", "phone_number_verified"}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_updated_at(value: Any) -> int:
    if isinstance(value, bool):
        raise ServerError("updated_at claim is not a timestamp")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip().replace(",", ""))
        except ValueError:
            pass
    raise ServerError("updated_at claim is not a timestamp", detail={"claim": "updated_at"})


def _parse_address(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    raise ServerError("address claim is not a JSON object", detail={"claim": "address"})


class ClaimsResolver:
    """Maps a principal's claims to the claim set a token or userinfo may carry.

    Only claims belonging to granted scopes are emitted. Absent or empty values
    are omitted rather than returned as placeholders, except for the
    verification flags, which default to ``False`` unless the principal carries
    an explicit boolean.
    """

    def __init__(self, scope_claims: Mapping[str, Iterable[str]] = SCOPE_CLAIMS) -> None:
        self.scope_claims = {scope: tuple(claims) for scope, claims in scope_claims.items()}

    def claims_for_scopes(self, scopes: Iterable[str]) -> Tuple[str, ...]:
        names = []
        for scope in scopes:
            for claim in self.scope_claims.get(scope, ()):
                if claim not in names:
                    names.append(claim)
        return tuple(names)

    def resolve(self, principal_claims: Mapping[str, Any], scopes: Iterable[str]) -> Dict[str, Any]:
        resolved: Dict[str, Any] = {}
        for claim in self.claims_for_scopes(scopes):
            value = principal_claims.get(claim)
            if claim in _VERIFICATION_CLAIMS:
                resolved[claim] = value if isinstance(value, bool) else False
                continue
            if _is_empty(value):
                continue
            if claim == "updated_at":
                value = _parse_updated_at(value)
            elif claim == "address":
                value = _parse_address(value)
            resolved[claim] = value
        return resolved
