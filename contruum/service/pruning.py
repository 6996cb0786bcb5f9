"""Periodic removal of expired or unreferenced authorizations and tokens.

The store does the guarded check-and-delete; this module only decides the
thresholds, walks the batches and keeps failures away from request serving.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from contruum.config import Settings
from contruum.logging import get_logger
from contruum.storage.common import OAuthStore, ensure_utc
from contruum.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_LIFESPAN_SECONDS = 14 * 24 * 60 * 60
DEFAULT_BATCH_SIZE = 1000
MAX_BATCHES_PER_CYCLE = 10_000


@dataclass
class PruningReport:
    started_at: datetime
    tokens_pruned: int = 0
    authorizations_pruned: int = 0
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PruningService:
    def __init__(
        self,
        store: OAuthStore,
        *,
        token_lifespan: int = DEFAULT_LIFESPAN_SECONDS,
        authorization_lifespan: int = DEFAULT_LIFESPAN_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.token_lifespan = timedelta(seconds=token_lifespan)
        self.authorization_lifespan = timedelta(seconds=authorization_lifespan)
        self.batch_size = batch_size
        self.clock = clock

    @classmethod
    def from_settings(cls, store: OAuthStore, settings: Settings) -> "PruningService":
        return cls(
            store,
            token_lifespan=settings.pruning_token_lifespan_seconds,
            authorization_lifespan=settings.pruning_authorization_lifespan_seconds,
            batch_size=settings.pruning_batch_size,
        )

    def run_pruning_cycle(
        self, now: Optional[datetime] = None, cancel: Optional[threading.Event] = None
    ) -> PruningReport:
        """Delete prunable tokens, then prunable authorizations.

        Never raises: a storage failure is logged and recorded on the report so
        the scheduler simply retries on its next tick.
        """
        now = ensure_utc(now or self.clock())
        report = PruningReport(started_at=now)
        try:
            report.tokens_pruned = self._drain(
                self.store.prune_tokens, now - self.token_lifespan, now, cancel, report
            )
            if not report.cancelled:
                report.authorizations_pruned = self._drain(
                    self.store.prune_authorizations,
                    now - self.authorization_lifespan,
                    now,
                    cancel,
                    report,
                )
        except Exception as exc:
            report.error = f"{type(exc).__name__}: {exc}"
            logger.exception("pruning_cycle_failed", error=report.error)
            return report

        logger.info(
            "pruning_cycle_completed",
            tokens_pruned=report.tokens_pruned,
            authorizations_pruned=report.authorizations_pruned,
            cancelled=report.cancelled,
        )
        return report

    def _drain(self, prune, threshold, now, cancel, report) -> int:
        total = 0
        for _ in range(MAX_BATCHES_PER_CYCLE):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                logger.info("pruning_cycle_cancelled", pruned_so_far=total)
                break
            deleted = prune(threshold, now, self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                break
        return total


async def run_pruning_loop(
    service: PruningService,
    interval: int,
    cancel: Optional[threading.Event] = None,
) -> None:
    """Run a pruning cycle every ``interval`` seconds until cancelled.

    Cycles run in a worker thread so blocking store calls never stall the
    event loop. Cancelling the task sets ``cancel`` so an in-flight cycle
    stops at its next batch boundary.
    """
    cancel = cancel or threading.Event()
    logger.info("pruning_loop_started", interval_seconds=interval)
    try:
        while not cancel.is_set():
            report = await asyncio.to_thread(service.run_pruning_cycle, None, cancel)
            if report.error:
                logger.warning("pruning_cycle_will_retry", interval_seconds=interval)
            await asyncio.sleep(interval)
    finally:
        cancel.set()
        logger.info("pruning_loop_stopped")
