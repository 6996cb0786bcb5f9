from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from contruum.logging import get_logger

logger = get_logger(__name__)


class Flow(str, Enum):
    """Grant flows the server can be configured to allow."""

    AUTHORIZATION_CODE = "authorization_code"
    IMPLICIT = "implicit"
    HYBRID = "hybrid"
    REFRESH_TOKEN = "refresh_token"


DEFAULT_SCOPES = ["openid", "profile", "email", "phone", "address", "offline_access"]

DEFAULT_CLAIMS = [
    "sub",
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
    "email",
    "email_verified",
    "phone_number",
    "phone_number_verified",
    "address",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    """Accept JSON arrays or comma/space separated strings for list settings."""
    if not isinstance(value, str):
        return value
    raw = value.strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON list: {exc.msg}") from exc
        return parsed
    return [item for item in raw.replace(",", " ").split() if item]


class Settings(BaseModel):
    """Runtime settings for the authorization server."""

    issuer: str = env_field("http://localhost:8000", "ISSUER")

    # Endpoint paths, relative to the issuer
    authorization_endpoint_path: str = env_field("/connect/authorize", "AUTHORIZATION_ENDPOINT_PATH")
    token_endpoint_path: str = env_field("/connect/token", "TOKEN_ENDPOINT_PATH")
    introspection_endpoint_path: str = env_field("/connect/introspect", "INTROSPECTION_ENDPOINT_PATH")
    userinfo_endpoint_path: str = env_field("/connect/userinfo", "USERINFO_ENDPOINT_PATH")
    end_session_endpoint_path: str = env_field("/connect/logout", "END_SESSION_ENDPOINT_PATH")
    jwks_endpoint_path: str = env_field("/.well-known/jwks", "JWKS_ENDPOINT_PATH")
    login_path: str = env_field(
        "/connect/signin",
        "LOGIN_PATH",
        description="External login UI; receives request_id for unauthenticated requests",
    )
    consent_path: str = env_field(
        "/connect/consent",
        "CONSENT_PATH",
        description="External consent UI; receives request_id for pending consent",
    )

    supported_scopes: list[str] = env_field(list(DEFAULT_SCOPES), "SUPPORTED_SCOPES")
    supported_claims: list[str] = env_field(list(DEFAULT_CLAIMS), "SUPPORTED_CLAIMS")
    allowed_flows: list[Flow] = env_field(
        [Flow.AUTHORIZATION_CODE, Flow.IMPLICIT, Flow.HYBRID, Flow.REFRESH_TOKEN],
        "ALLOWED_FLOWS",
    )
    clients_file: str | None = env_field(None, "CLIENTS_FILE")
    users_file: str | None = env_field(None, "USERS_FILE")

    # Token lifetimes
    authorization_code_ttl_seconds: int = env_field(300, "AUTHORIZATION_CODE_TTL_SECONDS")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    id_token_ttl_seconds: int = env_field(1200, "ID_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(14 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    access_token_audiences: list[str] = env_field(
        [],
        "ACCESS_TOKEN_AUDIENCES",
        description="Resource audiences stamped into access tokens; defaults to the issuer",
    )
    refresh_token_rotation: bool = env_field(True, "REFRESH_TOKEN_ROTATION")
    revoke_on_token_reuse: bool = env_field(True, "REVOKE_ON_TOKEN_REUSE")
    encrypted_token_kinds: list[str] = env_field(
        ["authorization_code", "access_token", "refresh_token"], "ENCRYPTED_TOKEN_KINDS"
    )
    require_pkce_for_public_clients: bool = env_field(True, "REQUIRE_PKCE_FOR_PUBLIC_CLIENTS")
    end_session_revokes_authorizations: bool = env_field(True, "END_SESSION_REVOKES_AUTHORIZATIONS")

    # Key material (ephemeral, regenerated per process)
    signing_algorithm: str = env_field("RS256", "SIGNING_ALGORITHM")
    encryption_algorithm: str = env_field("RSA-OAEP", "ENCRYPTION_ALGORITHM")
    content_encryption_algorithm: str = env_field("A256CBC-HS512", "CONTENT_ENCRYPTION_ALGORITHM")
    rsa_key_size: int = env_field(2048, "RSA_KEY_SIZE")
    clock_skew_seconds: int = env_field(60, "CLOCK_SKEW_SECONDS")

    # Pruning
    pruning_enabled: bool = env_field(True, "PRUNING_ENABLED")
    pruning_interval_seconds: int = env_field(3600, "PRUNING_INTERVAL_SECONDS")
    pruning_batch_size: int = env_field(1000, "PRUNING_BATCH_SIZE")
    pruning_token_lifespan_seconds: int = env_field(
        14 * 24 * 3600,
        "PRUNING_TOKEN_LIFESPAN_SECONDS",
        description="Minimum age before a dead token is eligible for deletion",
    )
    pruning_authorization_lifespan_seconds: int = env_field(
        14 * 24 * 3600,
        "PRUNING_AUTHORIZATION_LIFESPAN_SECONDS",
        description="Minimum age before an unreferenced authorization is eligible for deletion",
    )

    # Storage and caching
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field("postgresql://localhost:5432/contruum", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    authorization_request_ttl_seconds: int = env_field(3600, "AUTHORIZATION_REQUEST_TTL_SECONDS")
    test_mode: bool = env_field(False, "TEST_MODE")

    # HTTP surface
    session_cookie_name: str = env_field("contruum_session", "SESSION_COOKIE_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "supported_scopes",
        "supported_claims",
        "allowed_flows",
        "access_token_audiences",
        "encrypted_token_kinds",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("issuer")
    @classmethod
    def _normalize_issuer(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("issuer must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator(
        "authorization_endpoint_path",
        "token_endpoint_path",
        "introspection_endpoint_path",
        "userinfo_endpoint_path",
        "end_session_endpoint_path",
        "jwks_endpoint_path",
        "login_path",
        "consent_path",
    )
    @classmethod
    def _ensure_leading_slash(cls, value: str) -> str:
        value = value.strip()
        return value if value.startswith("/") else f"/{value}"

    @field_validator("supported_scopes")
    @classmethod
    def _require_openid_scope(cls, value: list[str]) -> list[str]:
        if "openid" not in value:
            logger.warning("openid_scope_not_supported", scopes=value)
        return value

    @field_validator("encrypted_token_kinds")
    @classmethod
    def _validate_encrypted_kinds(cls, value: list[str]) -> list[str]:
        allowed = {"authorization_code", "access_token", "refresh_token", "id_token"}
        unknown = [kind for kind in value if kind not in allowed]
        if unknown:
            raise ValueError(f"unknown token kinds: {', '.join(unknown)}")
        return value

    def flow_enabled(self, flow: Flow | str) -> bool:
        return Flow(flow) in self.allowed_flows


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
