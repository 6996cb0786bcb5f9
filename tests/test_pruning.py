"""Tests for the pruning service and its scheduler loop."""

import asyncio
import threading
from datetime import timedelta

import pytest

from contruum.service.pruning import PruningService, run_pruning_loop
from contruum.storage.errors import StoreUnavailable
from contruum.storage.memory import MemoryStore
from contruum.storage.models import Authorization, Client, Token, TokenKind, utcnow

DAY = 24 * 3600


@pytest.fixture
def store():
    store = MemoryStore()
    store.upsert_client(Client(client_id="web", secret_hash="x"))
    return store


def _old_authorization(store, *, age_days=30, token_ttl=None):
    created = utcnow() - timedelta(days=age_days)
    authorization = Authorization.new("alice", "web", ["openid"])
    authorization.created_at = created
    tokens = []
    if token_ttl is not None:
        tokens.append(Token.new(TokenKind.REFRESH_TOKEN, authorization, token_ttl, issued_at=created))
    store.create_grant(authorization, tokens)
    return authorization


class TestPruningCycle:
    def test_expired_authorization_with_live_token_survives(self, store):
        orphan = _old_authorization(store)
        referenced = _old_authorization(store, token_ttl=60 * DAY)
        service = PruningService(store, token_lifespan=14 * DAY, authorization_lifespan=14 * DAY)

        report = service.run_pruning_cycle()

        assert report.succeeded
        assert report.authorizations_pruned == 1
        assert store.get_authorization(orphan.id) is None
        assert store.get_authorization(referenced.id) is not None

    def test_second_run_is_a_no_op(self, store):
        _old_authorization(store)
        _old_authorization(store, token_ttl=60)
        service = PruningService(store, batch_size=1)

        first = service.run_pruning_cycle()
        second = service.run_pruning_cycle()

        assert (first.tokens_pruned, first.authorizations_pruned) == (1, 2)
        assert (second.tokens_pruned, second.authorizations_pruned) == (0, 0)

    def test_batches_drain_everything(self, store):
        for _ in range(7):
            _old_authorization(store)
        report = PruningService(store, batch_size=3).run_pruning_cycle()
        assert report.authorizations_pruned == 7
        assert store.authorizations == {}

    def test_cancel_stops_between_batches(self, store):
        for _ in range(3):
            _old_authorization(store)
        cancel = threading.Event()
        cancel.set()
        report = PruningService(store, batch_size=1).run_pruning_cycle(cancel=cancel)
        assert report.cancelled
        assert report.authorizations_pruned == 0
        assert len(store.authorizations) == 3

    def test_explicit_now_controls_thresholds(self, store):
        recent = _old_authorization(store, age_days=1)
        service = PruningService(store)
        assert service.run_pruning_cycle().authorizations_pruned == 0
        report = service.run_pruning_cycle(now=utcnow() + timedelta(days=20))
        assert report.authorizations_pruned == 1
        assert store.get_authorization(recent.id) is None

    def test_failure_is_recorded_not_raised(self, store):
        def broken(*args):
            raise StoreUnavailable("database operation failed")

        store.prune_tokens = broken
        report = PruningService(store).run_pruning_cycle()
        assert not report.succeeded
        assert "StoreUnavailable" in report.error

    def test_batch_size_must_be_positive(self, store):
        with pytest.raises(ValueError):
            PruningService(store, batch_size=0)

    def test_from_settings(self, runtime):
        service = PruningService.from_settings(runtime.store, runtime.settings)
        assert service.batch_size == runtime.settings.pruning_batch_size
        assert service.token_lifespan == timedelta(seconds=runtime.settings.pruning_token_lifespan_seconds)


class TestPruningLoop:
    async def test_loop_runs_until_cancelled(self, store):
        _old_authorization(store)
        service = PruningService(store)
        cancel = threading.Event()

        task = asyncio.create_task(run_pruning_loop(service, 3600, cancel))
        for _ in range(100):
            if not store.authorizations:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.authorizations == {}
        assert cancel.is_set()
