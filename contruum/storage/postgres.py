from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from contruum.logging import get_logger
from contruum.storage.common import client_from_dict, client_to_dict, format_scopes, parse_scopes
from contruum.storage.errors import ConstraintViolation, StoreUnavailable
from contruum.storage.models import (
    Authorization,
    AuthorizationStatus,
    Client,
    RedemptionOutcome,
    Token,
    TokenKind,
    TokenStatus,
)

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS oauth_client (
        client_id TEXT PRIMARY KEY,
        registration JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_authorization (
        id TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        client_id TEXT NOT NULL REFERENCES oauth_client (client_id),
        scopes TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS oauth_authorization_subject_idx ON oauth_authorization (subject, client_id)",
    "CREATE INDEX IF NOT EXISTS oauth_authorization_created_idx ON oauth_authorization (created_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_token (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        authorization_id TEXT NOT NULL REFERENCES oauth_authorization (id) ON DELETE CASCADE,
        client_id TEXT NOT NULL,
        subject TEXT NOT NULL,
        status TEXT NOT NULL,
        single_use BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        redeemed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS oauth_token_authorization_idx ON oauth_token (authorization_id)",
    "CREATE INDEX IF NOT EXISTS oauth_token_created_idx ON oauth_token (created_at)",
]

# A token still references its authorization while unexpired and not revoked
_LIVE_TOKEN_EXISTS = """
    EXISTS (
        SELECT 1 FROM oauth_token t
        WHERE t.authorization_id = a.id
          AND t.status <> 'revoked'
          AND t.expires_at > %(now)s
    )
"""

_TOKEN_INSERT = """
    INSERT INTO oauth_token (
        id, kind, authorization_id, client_id, subject, status,
        single_use, created_at, expires_at, redeemed_at
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""


class PostgresStore:
    """Postgres-backed store; every conditional operation runs in one transaction."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self) -> Iterator[psycopg.Connection]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    yield conn
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced record not found", {"error": exc.sqlstate}) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("record already exists", {"error": exc.sqlstate}) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_statement_failed", error_type=type(exc).__name__)
            raise StoreUnavailable("database operation failed") from exc

    def _ensure_schema(self) -> None:
        """Create the client, authorization and token tables if missing."""
        with self._transaction() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_authorization(row: Dict[str, Any]) -> Authorization:
        return Authorization(
            id=row["id"],
            subject=row["subject"],
            client_id=row["client_id"],
            scopes=parse_scopes(row["scopes"]),
            status=AuthorizationStatus(row["status"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> Token:
        return Token(
            id=row["id"],
            kind=TokenKind(row["kind"]),
            authorization_id=row["authorization_id"],
            client_id=row["client_id"],
            subject=row["subject"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            status=TokenStatus(row["status"]),
            single_use=row["single_use"],
            redeemed_at=row["redeemed_at"],
        )

    @staticmethod
    def _token_params(token: Token) -> tuple:
        return (
            token.id,
            token.kind.value,
            token.authorization_id,
            token.client_id,
            token.subject,
            token.status.value,
            token.single_use,
            token.created_at,
            token.expires_at,
            token.redeemed_at,
        )

    def _insert_tokens(self, conn: psycopg.Connection, tokens: Sequence[Token]) -> None:
        if not tokens:
            return
        with conn.cursor() as cur:
            cur.executemany(_TOKEN_INSERT, [self._token_params(t) for t in tokens])

    # -- clients -----------------------------------------------------------

    def upsert_client(self, client: Client) -> Client:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO oauth_client (client_id, registration)
                VALUES (%s, %s)
                ON CONFLICT (client_id)
                DO UPDATE SET registration = EXCLUDED.registration, updated_at = now()
                """,
                (client.client_id, json.dumps(client_to_dict(client))),
            )
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT registration FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        if not row:
            return None
        registration = row["registration"]
        if isinstance(registration, str):
            registration = json.loads(registration)
        return client_from_dict(registration)

    # -- authorizations ----------------------------------------------------

    def create_grant(self, authorization: Authorization, tokens: Sequence[Token]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO oauth_authorization (id, subject, client_id, scopes, status, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    authorization.id,
                    authorization.subject,
                    authorization.client_id,
                    format_scopes(authorization.scopes),
                    authorization.status.value,
                    authorization.created_at,
                ),
            )
            self._insert_tokens(conn, tokens)

    def get_authorization(self, authorization_id: str) -> Optional[Authorization]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_authorization WHERE id = %s", (authorization_id,)
            ).fetchone()
        return self._row_to_authorization(row) if row else None

    def list_authorizations(
        self, subject: str, *, client_id: Optional[str] = None
    ) -> List[Authorization]:
        query = "SELECT * FROM oauth_authorization WHERE subject = %s"
        params: List[Any] = [subject]
        if client_id is not None:
            query += " AND client_id = %s"
            params.append(client_id)
        query += " ORDER BY created_at"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_authorization(row) for row in rows]

    def revoke_authorization(self, authorization_id: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE oauth_authorization SET status = 'revoked'
                WHERE id = %s AND status = 'valid'
                RETURNING id
                """,
                (authorization_id,),
            ).fetchone()
            cur = conn.execute(
                """
                UPDATE oauth_token SET status = 'revoked'
                WHERE authorization_id = %s AND status = 'active'
                """,
                (authorization_id,),
            )
            revoked_tokens = cur.rowcount
        if row:
            self.logger.info(
                "authorization_revoked",
                authorization_id=authorization_id,
                revoked_tokens=revoked_tokens,
            )
        return row is not None

    # -- tokens ------------------------------------------------------------

    def _lock_authorization(
        self, conn: psycopg.Connection, authorization_id: str
    ) -> Optional[str]:
        """Share-lock the authorization row so revocation and pruning wait for us."""
        row = conn.execute(
            "SELECT status FROM oauth_authorization WHERE id = %s FOR SHARE",
            (authorization_id,),
        ).fetchone()
        return row["status"] if row else None

    def add_tokens(self, authorization_id: str, tokens: Sequence[Token]) -> bool:
        with self._transaction() as conn:
            status = self._lock_authorization(conn, authorization_id)
            if status != AuthorizationStatus.VALID.value:
                return False
            self._insert_tokens(conn, tokens)
            return True

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM oauth_token WHERE id = %s", (token_id,)).fetchone()
        return self._row_to_token(row) if row else None

    def list_tokens(self, authorization_id: str) -> List[Token]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_token WHERE authorization_id = %s ORDER BY created_at",
                (authorization_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def redeem_token(
        self, token_id: str, replacements: Sequence[Token], *, now: datetime
    ) -> RedemptionOutcome:
        with self._transaction() as conn:
            owner = conn.execute(
                "SELECT authorization_id FROM oauth_token WHERE id = %s", (token_id,)
            ).fetchone()
            if not owner:
                return RedemptionOutcome.NOT_FOUND
            status = self._lock_authorization(conn, owner["authorization_id"])
            if status != AuthorizationStatus.VALID.value:
                return RedemptionOutcome.AUTHORIZATION_REVOKED
            flipped = conn.execute(
                """
                UPDATE oauth_token SET status = 'consumed', redeemed_at = %s
                WHERE id = %s AND status = 'active'
                RETURNING id
                """,
                (now, token_id),
            ).fetchone()
            if not flipped:
                current = conn.execute(
                    "SELECT status FROM oauth_token WHERE id = %s", (token_id,)
                ).fetchone()
                if not current:
                    return RedemptionOutcome.NOT_FOUND
                if current["status"] == TokenStatus.CONSUMED.value:
                    return RedemptionOutcome.ALREADY_REDEEMED
                return RedemptionOutcome.REVOKED
            self._insert_tokens(conn, replacements)
            return RedemptionOutcome.REDEEMED

    # -- pruning -----------------------------------------------------------

    def prune_tokens(self, threshold: datetime, now: datetime, limit: int) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM oauth_token WHERE id IN (
                    SELECT id FROM oauth_token
                    WHERE created_at < %s AND (status <> 'active' OR expires_at <= %s)
                    ORDER BY created_at
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                """,
                (threshold, now, limit),
            )
            return cur.rowcount

    def prune_authorizations(self, threshold: datetime, now: datetime, limit: int) -> int:
        params = {"threshold": threshold, "now": now, "limit": limit}
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT a.id FROM oauth_authorization a
                WHERE a.created_at < %(threshold)s AND NOT {_LIVE_TOKEN_EXISTS}
                ORDER BY a.created_at
                LIMIT %(limit)s
                FOR UPDATE SKIP LOCKED
                """,
                params,
            ).fetchall()
            if not rows:
                return 0
            # Re-check under the row locks; issuance holds FOR SHARE on these rows
            cur = conn.execute(
                f"""
                DELETE FROM oauth_authorization a
                WHERE a.id = ANY(%(ids)s) AND NOT {_LIVE_TOKEN_EXISTS}
                """,
                {**params, "ids": [row["id"] for row in rows]},
            )
            return cur.rowcount
