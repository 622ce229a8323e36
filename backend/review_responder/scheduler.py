"""
Review Scheduler — Periodic ingestion of new store reviews.

One full cycle:
  1. Load active resources whose account is still valid, grouped by owner
  2. Poll each owner's resources one after another (never concurrently)
  3. Persist new reviews as `pending`, advance each resource's cursor
  4. Send the owner one summary with the total number of new reviews

A cycle that starts while another is still running is skipped. Owner-scoped
"poll now" runs outside that guard but shares the per-owner lock with the full
cycle, so the two never touch the same owner's resources at once.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from review_responder.config import Settings, get_settings
from review_responder.connectors.base import FailureKind, ReviewConnector
from review_responder.models import Account, Resource
from review_responder.services import account_service, review_service
from review_responder.services.notification_service import Notifier
from review_responder.utils import utcnow

logger = logging.getLogger(__name__)

JOB_ID = "review_poll"


@dataclass
class ResourcePollResult:
    resource_id: uuid.UUID
    resource_name: str
    new_reviews: int = 0
    error: Optional[str] = None
    auth_failure: bool = False
    skipped: bool = False


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    owners: int = 0
    resources: int = 0
    new_reviews: int = 0
    failures: int = 0
    notifications_sent: int = 0
    owner_totals: dict[uuid.UUID, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "owners": self.owners,
            "resources": self.resources,
            "new_reviews": self.new_reviews,
            "failures": self.failures,
            "notifications_sent": self.notifications_sent,
        }


@dataclass
class _OwnerBatch:
    owner_id: uuid.UUID
    telegram_id: int
    resource_ids: list[uuid.UUID] = field(default_factory=list)


class ReviewScheduler:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        connectors: dict[str, ReviewConnector],
        notifier: Notifier,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.connectors = connectors
        self.notifier = notifier
        self.settings = settings or get_settings()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._polling = False
        self._owner_locks: dict[uuid.UUID, asyncio.Lock] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def is_polling(self) -> bool:
        return self._polling

    def start(self) -> None:
        if self.is_running:
            logger.debug("Scheduler already running, skipping start")
            return

        interval = self.settings.poll_interval_minutes
        job_kwargs = {}
        if self.settings.poll_on_startup:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_cycle,
            "interval",
            minutes=interval,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_kwargs,
        )
        self._scheduler.start()
        logger.info(f"Review scheduler started ({interval} minute interval)")

    def stop(self) -> None:
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Review scheduler stopped")
        self._scheduler = None

    def status(self) -> dict:
        next_run = None
        if self.is_running:
            job = self._scheduler.get_job(JOB_ID)
            if job and job.next_run_time:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self.is_running,
            "polling": self.is_polling,
            "interval_minutes": self.settings.poll_interval_minutes,
            "next_run_time": next_run,
        }

    async def _scheduled_cycle(self) -> None:
        try:
            await self.run_cycle()
        except Exception:
            logger.exception("Scheduled poll cycle failed")

    def _owner_lock(self, owner_id: uuid.UUID) -> asyncio.Lock:
        return self._owner_locks.setdefault(owner_id, asyncio.Lock())

    # ── Full cycle ────────────────────────────────────────────────────

    async def run_cycle(self) -> Optional[CycleReport]:
        """Poll every active resource once. Returns None when a cycle is already in progress."""
        if self._polling:
            logger.debug("Poll already in progress, skipping")
            return None

        self._polling = True
        report = CycleReport(started_at=utcnow())
        logger.info("Starting poll cycle...")
        try:
            batches = await self._load_batches()
            logger.debug(f"{sum(len(b.resource_ids) for b in batches)} active resources across {len(batches)} owners")

            for batch in batches:
                try:
                    await self._run_owner(batch, report)
                except Exception:
                    logger.exception(f"Polling owner {batch.owner_id} failed")
        finally:
            self._polling = False

        report.finished_at = utcnow()
        duration_ms = int((report.finished_at - report.started_at).total_seconds() * 1000)
        logger.info(
            f"Poll cycle complete in {duration_ms}ms: {report.new_reviews} new reviews, "
            f"{report.resources} resources, {report.failures} failures"
        )
        return report

    async def _load_batches(self) -> list[_OwnerBatch]:
        batches: dict[uuid.UUID, _OwnerBatch] = {}
        async with self.session_factory() as db:
            resources = await account_service.list_active_resources_with_valid_accounts(db)
            for resource in resources:
                owner = resource.owner
                if owner is None or not owner.is_active:
                    continue
                batch = batches.setdefault(owner.id, _OwnerBatch(owner.id, owner.telegram_id))
                batch.resource_ids.append(resource.id)
        return list(batches.values())

    async def _run_owner(self, batch: _OwnerBatch, report: CycleReport) -> None:
        async with self._owner_lock(batch.owner_id):
            results = await self._poll_resources(batch.resource_ids, batch.telegram_id)

        total = sum(r.new_reviews for r in results)
        report.owners += 1
        report.resources += len(results)
        report.failures += sum(1 for r in results if r.error and not r.skipped)
        report.new_reviews += total
        report.owner_totals[batch.owner_id] = total

        if total > 0:
            logger.info(f"Found {total} new reviews for owner {batch.owner_id}")
            async with self.session_factory() as db:
                prefs = await account_service.get_preferences(db, batch.owner_id)
            if prefs.get("notification_enabled", True):
                if await self.notifier.send_new_reviews_summary(batch.telegram_id, total):
                    report.notifications_sent += 1

    # ── Owner-scoped poll ("poll now") ────────────────────────────────

    async def poll_owner(self, owner_id: uuid.UUID) -> list[ResourcePollResult]:
        """Poll one owner's resources now and report per-resource counts. No summary message."""
        async with self.session_factory() as db:
            owner = await account_service.get_owner(db, owner_id)
            if owner is None or not owner.is_active:
                logger.debug(f"poll_owner: owner {owner_id} not found or inactive")
                return []
            telegram_id = owner.telegram_id
            resources = await account_service.list_owner_resources(db, owner_id)
            resource_ids = [r.id for r in resources if r.account is not None and r.account.is_valid]

        logger.debug(f"poll_owner: {len(resource_ids)} resources with valid accounts for {owner_id}")
        async with self._owner_lock(owner_id):
            results = await self._poll_resources(resource_ids, telegram_id)
        return [r for r in results if not r.skipped]

    # ── Per-resource processing ───────────────────────────────────────

    async def _poll_resources(self, resource_ids: list[uuid.UUID], telegram_id: int) -> list[ResourcePollResult]:
        results = []
        invalidated: set[uuid.UUID] = set()
        for resource_id in resource_ids:
            try:
                result = await self._poll_resource(resource_id, telegram_id, invalidated)
            except Exception as e:
                logger.exception(f"Unexpected error polling resource {resource_id}")
                result = ResourcePollResult(resource_id, str(resource_id), error=str(e))
            results.append(result)
        return results

    async def _poll_resource(
        self,
        resource_id: uuid.UUID,
        telegram_id: int,
        invalidated: set[uuid.UUID],
    ) -> ResourcePollResult:
        credential_error: Optional[str] = None

        async with self.session_factory() as db:
            resource = await account_service.get_resource(db, resource_id)
            if resource is None:
                return ResourcePollResult(resource_id, str(resource_id), error="Resource no longer exists", skipped=True)

            result = ResourcePollResult(resource.id, resource.name)
            account = resource.account
            if account is None or not account.is_valid or account.id in invalidated:
                logger.debug(f"Skipping {resource.name}: no valid account")
                result.skipped = True
                result.error = "No valid account"
                return result

            connector = self.connectors.get(resource.store)
            if connector is None:
                logger.error(f"No connector for store {resource.store!r}; skipping {resource.name}")
                result.skipped = True
                result.error = f"Unsupported store: {resource.store}"
                return result

            account_id = account.id
            poll_started = utcnow()
            try:
                await self._ingest(db, connector, resource, account, result)
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    result.error = f"Timed out after {self.settings.resource_poll_timeout_seconds}s"
                else:
                    result.error = str(e) or e.__class__.__name__
                if isinstance(e, SQLAlchemyError):
                    await db.rollback()
                    await db.refresh(resource)
                    result.new_reviews = 0

                if connector.classify_failure(e) == FailureKind.AUTH:
                    result.auth_failure = True
                    invalidated.add(account_id)
                    if await account_service.invalidate_account(db, account_id, result.error):
                        credential_error = result.error
                else:
                    logger.warning(f"Failed to fetch reviews for {resource.name}: {result.error}")

            # Advanced even after a failure; marks when the fetch began so reviews landing mid-fetch stay newer
            await account_service.advance_cursor(db, resource, poll_started)
            await db.commit()
            resource_name = resource.name

        if credential_error is not None:
            await self.notifier.send_credential_error(telegram_id, resource_name, credential_error)
        return result

    async def _ingest(
        self,
        db: AsyncSession,
        connector: ReviewConnector,
        resource: Resource,
        account: Account,
        result: ResourcePollResult,
    ) -> None:
        cursor = resource.last_poll_at
        logger.debug(
            f"Fetching {resource.store} reviews for {resource.name} "
            f"since {cursor.isoformat() if cursor else 'beginning'}"
        )
        fetched = await asyncio.wait_for(
            connector.list_new_reviews(account_service.credentials_for(account), resource.store_id, cursor),
            timeout=self.settings.resource_poll_timeout_seconds,
        )
        for item in fetched:
            review = await review_service.create_review(db, resource, item)
            if review is not None:
                result.new_reviews += 1
                logger.info(f"New {resource.store} review saved: {review.id} ({item.rating} stars) for {resource.name}")
