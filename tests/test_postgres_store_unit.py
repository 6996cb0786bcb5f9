"""Unit tests for PostgresStore helpers that never touch a database."""

from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from contruum.logging import get_logger
from contruum.storage.errors import ConstraintViolation, StoreUnavailable
from contruum.storage.models import AuthorizationStatus, TokenKind, TokenStatus
from contruum.storage.postgres import PostgresStore


class RaisingPool:
    """Connection pool stand-in whose connections fail with a given error."""

    def __init__(self, exc):
        self.exc = exc

    def connection(self):
        raise self.exc


def create_test_store(exc) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger("tests")
    store.pool = RaisingPool(exc)
    return store


class TestErrorMapping:
    def test_foreign_key_violation_is_constraint_violation(self):
        store = create_test_store(errors.ForeignKeyViolation("missing client"))
        with pytest.raises(ConstraintViolation):
            store.get_client("web")

    def test_unique_violation_is_constraint_violation(self):
        store = create_test_store(errors.UniqueViolation("duplicate token"))
        with pytest.raises(ConstraintViolation):
            store.get_token("t1")

    def test_other_errors_are_store_unavailable(self):
        store = create_test_store(psycopg.OperationalError("connection refused"))
        with pytest.raises(StoreUnavailable):
            store.verify_connection()


class TestRowMapping:
    def test_authorization_row(self):
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        authorization = PostgresStore._row_to_authorization(
            {
                "id": "a1",
                "subject": "alice",
                "client_id": "web",
                "scopes": "openid profile",
                "status": "revoked",
                "created_at": created,
            }
        )
        assert authorization.scopes == ["openid", "profile"]
        assert authorization.status == AuthorizationStatus.REVOKED
        assert authorization.created_at == created

    def test_token_row(self):
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        token = PostgresStore._row_to_token(
            {
                "id": "t1",
                "kind": "refresh_token",
                "authorization_id": "a1",
                "client_id": "web",
                "subject": "alice",
                "status": "consumed",
                "single_use": True,
                "created_at": created,
                "expires_at": created + timedelta(days=14),
                "redeemed_at": created + timedelta(hours=1),
            }
        )
        assert token.kind == TokenKind.REFRESH_TOKEN
        assert token.status == TokenStatus.CONSUMED
        assert token.single_use is True
