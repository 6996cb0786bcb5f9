from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """RFC 6749 section 5.2 error body."""

    error: str
    error_description: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(ge=0)
    scope: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 body; inactive tokens carry only ``active``."""

    model_config = ConfigDict(extra="allow")

    active: bool
    iss: Optional[str] = None
    sub: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    nbf: Optional[int] = None
    jti: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    token_usage: Optional[str] = None


class EndSessionResponse(BaseModel):
    status: str = "signed_out"
    revoked_authorizations: int = 0

