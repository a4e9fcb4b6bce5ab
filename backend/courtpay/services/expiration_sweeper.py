"""
Expiration Sweeper

Periodic scan that times out pending payments past their deadline and
re-publishes events whose delivery was never acknowledged.

The sweeper takes no lock of its own: every expiry goes through the store's
compare-and-set, so a callback landing mid-sweep simply wins or loses the
transition. One failing record is logged and skipped.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from .clock import SystemClock
from .transaction_service import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters for one sweep pass."""
    examined: int = 0
    expired: int = 0
    failed: int = 0
    republished: int = 0
    errors: List[str] = field(default_factory=list)


class ExpirationSweeper:
    """Times out stale pending payments using an injected clock."""

    def __init__(
        self,
        store: TransactionStore,
        clock=None,
        event_redelivery_seconds: int = 30,
        batch_size: int = 500
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._redelivery_delay = timedelta(seconds=event_redelivery_seconds)
        self._batch_size = batch_size

    async def sweep(self) -> SweepReport:
        """
        Run one pass.

        Returns:
            SweepReport with examined/expired/failed/republished counts
        """
        report = SweepReport()
        now = self._clock.now()

        expired_ids = await self._store.find_expired(now, limit=self._batch_size)
        report.examined = len(expired_ids)

        for transaction_id in expired_ids:
            try:
                if await self._store.expire(transaction_id, "timeout", as_of=now):
                    report.expired += 1
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{transaction_id}: {e}")
                logger.error(f"Failed to expire {transaction_id}: {e}", exc_info=True)

        report.republished = await self._redeliver_events(report)

        if report.examined or report.republished or report.failed:
            logger.info(
                f"Sweep done: examined={report.examined}, expired={report.expired}, "
                f"failed={report.failed}, republished={report.republished}"
            )
        return report

    async def _redeliver_events(self, report: SweepReport) -> int:
        cutoff = self._clock.now() - self._redelivery_delay
        delivered = 0
        for txn in await self._store.find_undelivered_events(cutoff, limit=self._batch_size):
            try:
                if await self._store.publish_pending_event(txn):
                    delivered += 1
                    logger.info(f"Re-delivered {', '.join(txn.pending_events)} for {txn.id}")
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{txn.id}: {e}")
                logger.error(f"Failed to re-deliver event for {txn.id}: {e}", exc_info=True)
        return delivered
