from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from contruum.logging import get_logger
from contruum.storage.errors import ConstraintViolation
from contruum.storage.models import (
    Authorization,
    AuthorizationStatus,
    Client,
    RedemptionOutcome,
    Token,
    TokenStatus,
)


class MemoryStore:
    """In-process store for development and tests.

    Every read and write goes through one re-entrant lock, which makes the
    conditional operations (redeem, revoke, guarded prune) atomic with
    respect to each other.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.clients: Dict[str, Client] = {}
        self.authorizations: Dict[str, Authorization] = {}
        self.tokens: Dict[str, Token] = {}
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()

    # -- clients -----------------------------------------------------------

    def upsert_client(self, client: Client) -> Client:
        with self._data_lock:
            self.clients[client.client_id] = client
            return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._data_lock:
            return self.clients.get(client_id)

    # -- authorizations ----------------------------------------------------

    def _insert_tokens(self, authorization: Authorization, tokens: Sequence[Token]) -> None:
        for token in tokens:
            if token.id in self.tokens:
                raise ConstraintViolation("token already exists", {"token_id": token.id})
            if token.authorization_id != authorization.id:
                raise ConstraintViolation(
                    "token does not belong to authorization",
                    {"token_id": token.id, "authorization_id": authorization.id},
                )
        for token in tokens:
            self.tokens[token.id] = replace(token)

    def create_grant(self, authorization: Authorization, tokens: Sequence[Token]) -> None:
        with self._data_lock:
            if authorization.client_id not in self.clients:
                raise ConstraintViolation(
                    "client not found", {"client_id": authorization.client_id}
                )
            if authorization.id in self.authorizations:
                raise ConstraintViolation(
                    "authorization already exists", {"authorization_id": authorization.id}
                )
            self._insert_tokens(authorization, tokens)
            self.authorizations[authorization.id] = replace(
                authorization, scopes=list(authorization.scopes)
            )

    def get_authorization(self, authorization_id: str) -> Optional[Authorization]:
        with self._data_lock:
            authorization = self.authorizations.get(authorization_id)
            return replace(authorization) if authorization else None

    def list_authorizations(
        self, subject: str, *, client_id: Optional[str] = None
    ) -> List[Authorization]:
        with self._data_lock:
            return [
                replace(auth)
                for auth in self.authorizations.values()
                if auth.subject == subject
                and (client_id is None or auth.client_id == client_id)
            ]

    def revoke_authorization(self, authorization_id: str) -> bool:
        with self._data_lock:
            authorization = self.authorizations.get(authorization_id)
            if authorization is None:
                return False
            changed = authorization.status == AuthorizationStatus.VALID
            authorization.status = AuthorizationStatus.REVOKED
            revoked_tokens = 0
            for token in self.tokens.values():
                if token.authorization_id == authorization_id and token.status == TokenStatus.ACTIVE:
                    token.status = TokenStatus.REVOKED
                    revoked_tokens += 1
            if changed:
                self.logger.info(
                    "authorization_revoked",
                    authorization_id=authorization_id,
                    revoked_tokens=revoked_tokens,
                )
            return changed

    # -- tokens ------------------------------------------------------------

    def add_tokens(self, authorization_id: str, tokens: Sequence[Token]) -> bool:
        with self._data_lock:
            authorization = self.authorizations.get(authorization_id)
            if authorization is None or not authorization.is_valid:
                return False
            self._insert_tokens(authorization, tokens)
            return True

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return replace(token) if token else None

    def list_tokens(self, authorization_id: str) -> List[Token]:
        with self._data_lock:
            return [
                replace(token)
                for token in self.tokens.values()
                if token.authorization_id == authorization_id
            ]

    def redeem_token(
        self, token_id: str, replacements: Sequence[Token], *, now: datetime
    ) -> RedemptionOutcome:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if token is None:
                return RedemptionOutcome.NOT_FOUND
            authorization = self.authorizations.get(token.authorization_id)
            if authorization is None or not authorization.is_valid:
                return RedemptionOutcome.AUTHORIZATION_REVOKED
            if token.status == TokenStatus.CONSUMED:
                return RedemptionOutcome.ALREADY_REDEEMED
            if token.status == TokenStatus.REVOKED:
                return RedemptionOutcome.REVOKED
            # Insert first: a constraint failure must leave the token active
            self._insert_tokens(authorization, replacements)
            token.status = TokenStatus.CONSUMED
            token.redeemed_at = now
            return RedemptionOutcome.REDEEMED

    # -- pruning -----------------------------------------------------------

    def prune_tokens(self, threshold: datetime, now: datetime, limit: int) -> int:
        with self._data_lock:
            doomed = [
                token.id
                for token in self.tokens.values()
                if token.created_at < threshold
                and (token.status != TokenStatus.ACTIVE or token.expires_at <= now)
            ][:limit]
            for token_id in doomed:
                del self.tokens[token_id]
            return len(doomed)

    def prune_authorizations(self, threshold: datetime, now: datetime, limit: int) -> int:
        with self._data_lock:
            live_owners = {
                token.authorization_id
                for token in self.tokens.values()
                if token.is_live(now)
            }
            doomed = [
                auth.id
                for auth in self.authorizations.values()
                if auth.created_at < threshold and auth.id not in live_owners
            ][:limit]
            for authorization_id in doomed:
                del self.authorizations[authorization_id]
                for token_id in [
                    t.id for t in self.tokens.values() if t.authorization_id == authorization_id
                ]:
                    del self.tokens[token_id]
            return len(doomed)
