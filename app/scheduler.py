"""
Periodic sweeps over stored requests and offers.

Deadlines are compared against stored timestamps when a sweep runs, so a
missed response window is noticed at most one interval late. `run_once` is
the unit of work; `start` only repeats it on a timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from app import config
from app.assignment import Timeout, transition
from app.database import Database
from app.lifecycle import (
    Clock,
    persist,
    queue_promotion_notices,
    utcnow,
    window_hours,
)
from app.models import RequestStatus, ResponseStatus
from app.notifier import NotificationQueue, Notifier
from app.offers import OfferService

logger = logging.getLogger(__name__)

# Statuses spared by the "exempt_assigned" expiry policy.
ASSIGNED_STATUSES = frozenset(
    {
        RequestStatus.PRIMARY_ASSIGNED,
        RequestStatus.BACKUP_ASSIGNED,
        RequestStatus.PENDING_VERIFICATION,
    }
)


@dataclass
class SweepReport:
    timed_out: int = 0
    promoted: int = 0
    reopened: int = 0
    expired: int = 0
    pruned: int = 0
    follow_ups: int = 0
    failures: int = 0


class TimeoutScheduler:
    def __init__(
        self,
        db: Database,
        notifier: Notifier,
        offers: OfferService | None = None,
        interval_seconds: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.offers = offers
        self.interval_seconds = interval_seconds
        self.clock = clock or utcnow
        self._task: asyncio.Task[None] | None = None

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport()
        await self.timeout_sweep(now, report)
        await self.expiry_sweep(now, report)
        self.prune_interests(report)
        if self.offers is not None:
            sent, failed = await self.offers.follow_up_sweep(now)
            report.follow_ups += sent
            report.failures += failed
        if any(
            (report.timed_out, report.expired, report.pruned, report.follow_ups, report.failures)
        ):
            logger.info("Sweep finished: %s", report)
        return report

    async def timeout_sweep(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - config.RESPONSE_WINDOW
        stale = self.db.requests.find_timed_out(cutoff)
        if stale:
            logger.info("Found %d timed-out requests", len(stale))
        for request in stale:
            try:
                await self._time_out(request.id, request.primary_donor.donor_id, now, report)
            except Exception:
                report.failures += 1
                logger.exception("Failed to handle timeout for request %s", request.id)

    async def _time_out(
        self, request_id: str, donor_id: str, now: datetime, report: SweepReport
    ) -> None:
        queue = NotificationQueue()

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self.db.requests.get(request_id)
            # Re-check under the lock: a cancel or arrival may have won the race.
            if (
                request is None
                or not request.is_primary(donor_id)
                or request.primary_donor.arrived
                or request.primary_donor.accepted_at >= now - config.RESPONSE_WINDOW
            ):
                return

            result = transition(request, Timeout(donor_id), now)
            stored = persist(self.db, request, result)
            self.db.responses.set_status(
                request_id, donor_id, ResponseStatus.FAILED, now
            )
            queue.add(
                self.db.users.get(donor_id),
                "response_window_expired",
                {"hospital": stored.hospital, "window_hours": window_hours()},
            )
            queue_promotion_notices(self.db, queue, stored, result, now)

        report.timed_out += 1
        if result.promoted_donor_id is not None:
            report.promoted += 1
            logger.info(
                "Request %s: primary %s timed out, promoted %s",
                request_id,
                donor_id,
                result.promoted_donor_id,
            )
        else:
            report.reopened += 1
            logger.info("Request %s: primary %s timed out, reopened", request_id, donor_id)
        await queue.dispatch(self.notifier)

    async def expiry_sweep(self, now: datetime, report: SweepReport) -> None:
        """
        Delete requests older than the retention period.

        With the default "all" policy this includes requests that still have
        donors assigned; "exempt_assigned" keeps those until they resolve.
        """
        cutoff = now - config.REQUEST_RETENTION
        for request in self.db.requests.find_created_before(cutoff):
            if (
                config.EXPIRY_POLICY == "exempt_assigned"
                and request.status in ASSIGNED_STATUSES
            ):
                continue
            try:
                lock = await self.db.locks.get(request.id)
                async with lock:
                    deleted = self.db.requests.delete(request.id)
                if deleted is not None:
                    self.db.locks.forget(request.id)
                    report.expired += 1
            except Exception:
                report.failures += 1
                logger.exception("Failed to expire request %s", request.id)
        if report.expired:
            logger.info("Cleaned up %d old requests", report.expired)

    def prune_interests(self, report: SweepReport) -> None:
        """Drop interest tokens that were used or whose request is gone."""
        for confirmation in self.db.interests.all():
            if confirmation.consumed or confirmation.request_id not in self.db.requests:
                self.db.interests.delete(confirmation.token)
                report.pruned += 1
        if report.pruned:
            logger.info("Pruned %d interest tokens", report.pruned)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        interval = self.interval_seconds or config.SCHEDULER_INTERVAL_SECONDS
        logger.info("Scheduler started, running every %s seconds", interval)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduler sweep crashed")
            await asyncio.sleep(interval)
