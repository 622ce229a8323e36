"""
Tests for the poll cycle: aggregation, cursor handling, credential failures and
the single-flight / per-owner guards.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from conftest import make_account, make_owner, make_resource
from review_responder.config import Settings
from review_responder.connectors.base import NormalizedReview, ReviewConnector, VendorError
from review_responder.models import Account, OwnerPreferences, Resource, Review
from review_responder.scheduler import ReviewScheduler
from review_responder.services.notification_service import Notifier
from review_responder.utils import utcnow

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _items(prefix: str, count: int) -> list[NormalizedReview]:
    return [
        NormalizedReview(
            external_id=f"{prefix}-{i}",
            rating=5,
            body="Love it",
            review_date=NOW - timedelta(minutes=i),
        )
        for i in range(count)
    ]


class ScriptedConnector(ReviewConnector):
    """Answers list_new_reviews per store id from a script: a list, an exception or a coroutine function."""

    kind = "app_store"
    max_response_length = 5970

    def __init__(self, script: dict):
        super().__init__()
        self.script = script
        self.calls: list[tuple] = []

    async def list_new_reviews(self, credentials, store_id, cursor):
        self.calls.append((store_id, cursor))
        outcome = self.script.get(store_id, [])
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    async def post_response(self, credentials, store_id, external_review_id, text):
        raise NotImplementedError


def _scheduler(session_factory, connector, **settings_overrides) -> tuple[ReviewScheduler, AsyncMock]:
    notifier = AsyncMock(spec=Notifier)
    notifier.send_new_reviews_summary.return_value = True
    notifier.send_credential_error.return_value = True
    settings = Settings(poll_on_startup=False, **settings_overrides)
    scheduler = ReviewScheduler(session_factory, {"app_store": connector}, notifier, settings)
    return scheduler, notifier


async def _get(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


async def _review_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Review))


# ── Aggregation ───────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_cycle_sends_one_summary_with_owner_total(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    for store_id in ("s1", "s2", "s3"):
        await make_resource(db, account, store_id=store_id, name=f"App {store_id}")
    await db.commit()

    connector = ScriptedConnector({"s1": _items("a", 2), "s2": [], "s3": _items("c", 5)})
    scheduler, notifier = _scheduler(session_factory, connector)

    report = await scheduler.run_cycle()

    assert report.new_reviews == 7
    assert report.owners == 1
    assert report.resources == 3
    assert report.failures == 0
    assert report.owner_totals[owner.id] == 7
    notifier.send_new_reviews_summary.assert_awaited_once_with(owner.telegram_id, 7)
    assert await _review_count(session_factory) == 7


@pytest.mark.anyio
async def test_no_summary_when_nothing_new(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    scheduler, notifier = _scheduler(session_factory, ScriptedConnector({"s1": []}))
    report = await scheduler.run_cycle()

    assert report.new_reviews == 0
    notifier.send_new_reviews_summary.assert_not_awaited()


@pytest.mark.anyio
async def test_repeat_cycle_does_not_duplicate_reviews(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    scheduler, notifier = _scheduler(session_factory, ScriptedConnector({"s1": _items("a", 3)}))
    first = await scheduler.run_cycle()
    second = await scheduler.run_cycle()

    assert first.new_reviews == 3
    assert second.new_reviews == 0
    assert notifier.send_new_reviews_summary.await_count == 1
    assert await _review_count(session_factory) == 3


@pytest.mark.anyio
async def test_summary_suppressed_when_notifications_disabled(db, session_factory):
    owner = await make_owner(db)
    prefs = await db.scalar(select(OwnerPreferences).where(OwnerPreferences.owner_id == owner.id))
    prefs.preferences = {**prefs.preferences, "notification_enabled": False}
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    scheduler, notifier = _scheduler(session_factory, ScriptedConnector({"s1": _items("a", 2)}))
    report = await scheduler.run_cycle()

    assert report.new_reviews == 2
    assert report.notifications_sent == 0
    notifier.send_new_reviews_summary.assert_not_awaited()


@pytest.mark.anyio
async def test_inactive_owner_and_resource_are_skipped(db, session_factory):
    active = await make_owner(db, telegram_id=1)
    inactive = await make_owner(db, telegram_id=2, is_active=False)
    active_account = await make_account(db, active)
    await make_resource(db, active_account, store_id="live")
    await make_resource(db, active_account, store_id="paused", is_active=False)
    await make_resource(db, await make_account(db, inactive), store_id="gone")
    await db.commit()

    connector = ScriptedConnector({})
    scheduler, _ = _scheduler(session_factory, connector)
    report = await scheduler.run_cycle()

    assert [store_id for store_id, _ in connector.calls] == ["live"]
    assert report.owners == 1


# ── Cursor ────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_cursor_advances_and_is_passed_on_next_cycle(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    resource = await make_resource(db, account, store_id="s1")
    await db.commit()

    connector = ScriptedConnector({"s1": []})
    scheduler, _ = _scheduler(session_factory, connector)
    await scheduler.run_cycle()
    after_first = (await _get(session_factory, Resource, resource.id)).last_poll_at
    await scheduler.run_cycle()

    assert connector.calls[0] == ("s1", None)
    assert after_first is not None
    assert connector.calls[1] == ("s1", after_first)


@pytest.mark.anyio
async def test_cursor_never_moves_backwards(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    future = datetime(2099, 1, 1)
    resource = await make_resource(db, account, store_id="s1", last_poll_at=future)
    await db.commit()

    scheduler, _ = _scheduler(session_factory, ScriptedConnector({"s1": []}))
    await scheduler.run_cycle()

    assert (await _get(session_factory, Resource, resource.id)).last_poll_at == future


@pytest.mark.anyio
async def test_review_published_during_slow_fetch_is_newer_than_cursor(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    published_mid_fetch = []

    async def slow():
        started = utcnow()
        await asyncio.sleep(0.3)
        published_mid_fetch.append(started + timedelta(milliseconds=100))
        return []

    connector = ScriptedConnector({"s1": slow})
    scheduler, _ = _scheduler(session_factory, connector)
    await scheduler.run_cycle()
    await scheduler.run_cycle()

    next_cursor = connector.calls[1][1]
    assert next_cursor < published_mid_fetch[0]

@pytest.mark.anyio
async def test_transient_failure_still_advances_cursor(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    resource = await make_resource(db, account, store_id="s1")
    await db.commit()

    connector = ScriptedConnector({"s1": VendorError("Service unavailable", status_code=503)})
    scheduler, notifier = _scheduler(session_factory, connector)
    report = await scheduler.run_cycle()

    assert report.failures == 1
    assert (await _get(session_factory, Resource, resource.id)).last_poll_at is not None
    assert (await _get(session_factory, Account, account.id)).is_valid is True
    notifier.send_credential_error.assert_not_awaited()


@pytest.mark.anyio
async def test_slow_resource_times_out_without_blocking_others(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    slow = await make_resource(db, account, store_id="slow", name="Slow app")
    await make_resource(db, account, store_id="fast", name="Fast app")
    await db.commit()

    async def hang():
        await asyncio.sleep(5)
        return []

    connector = ScriptedConnector({"slow": hang, "fast": _items("f", 1)})
    scheduler, _ = _scheduler(session_factory, connector, resource_poll_timeout_seconds=0.05)
    report = await scheduler.run_cycle()

    assert report.new_reviews == 1
    assert report.failures == 1
    assert (await _get(session_factory, Resource, slow.id)).last_poll_at is not None


# ── Credential failures ───────────────────────────────────────────────

@pytest.mark.anyio
async def test_auth_failure_invalidates_only_that_account(db, session_factory):
    owner = await make_owner(db)
    broken = await make_account(db, owner, name="Revoked key")
    healthy = await make_account(db, owner, name="Good key")
    await make_resource(db, broken, store_id="a1", name="Broken app")
    await make_resource(db, broken, store_id="a2", name="Also broken")
    await make_resource(db, healthy, store_id="b1", name="Healthy app")
    await db.commit()

    connector = ScriptedConnector({
        "a1": VendorError("NOT_AUTHORIZED", status_code=401),
        "a2": VendorError("NOT_AUTHORIZED", status_code=401),
        "b1": _items("b", 3),
    })
    scheduler, notifier = _scheduler(session_factory, connector)
    report = await scheduler.run_cycle()

    stored = await _get(session_factory, Account, broken.id)
    assert stored.is_valid is False
    assert stored.validation_error == "NOT_AUTHORIZED"
    assert (await _get(session_factory, Account, healthy.id)).is_valid is True

    # The second resource on the revoked account is not even attempted
    assert [store_id for store_id, _ in connector.calls] == ["a1", "b1"]
    notifier.send_credential_error.assert_awaited_once_with(owner.telegram_id, "Broken app", "NOT_AUTHORIZED")
    notifier.send_new_reviews_summary.assert_awaited_once_with(owner.telegram_id, 3)
    assert report.new_reviews == 3


@pytest.mark.anyio
async def test_invalidated_account_is_not_polled_or_reported_again(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="a1")
    await db.commit()

    connector = ScriptedConnector({"a1": VendorError("Unauthorized", status_code=403)})
    scheduler, notifier = _scheduler(session_factory, connector)
    await scheduler.run_cycle()
    second = await scheduler.run_cycle()

    assert len(connector.calls) == 1
    assert second.resources == 0
    assert notifier.send_credential_error.await_count == 1


# ── Single-flight and per-owner exclusion ─────────────────────────────

@pytest.mark.anyio
async def test_overlapping_cycle_is_skipped(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    entered, release = asyncio.Event(), asyncio.Event()

    async def blocked():
        entered.set()
        await release.wait()
        return _items("x", 1)

    connector = ScriptedConnector({"s1": blocked})
    scheduler, notifier = _scheduler(session_factory, connector)

    first = asyncio.create_task(scheduler.run_cycle())
    await entered.wait()
    assert scheduler.is_polling is True
    assert await scheduler.run_cycle() is None

    release.set()
    report = await first

    assert report.new_reviews == 1
    assert len(connector.calls) == 1
    assert scheduler.is_polling is False
    notifier.send_new_reviews_summary.assert_awaited_once()


@pytest.mark.anyio
async def test_poll_owner_waits_for_running_cycle(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1", name="Habit Tracker")
    await db.commit()

    entered, release = asyncio.Event(), asyncio.Event()

    async def gated():
        entered.set()
        await release.wait()
        return _items("x", 1)

    connector = ScriptedConnector({"s1": gated})
    scheduler, notifier = _scheduler(session_factory, connector)

    cycle = asyncio.create_task(scheduler.run_cycle())
    await entered.wait()
    manual = asyncio.create_task(scheduler.poll_owner(owner.id))
    await asyncio.sleep(0.1)
    assert len(connector.calls) == 1

    release.set()
    report = await cycle
    results = await manual

    # The manual poll ran after the cycle and saw the advanced cursor
    assert connector.calls[1][1] is not None
    assert report.new_reviews == 1
    assert [(r.resource_name, r.new_reviews) for r in results] == [("Habit Tracker", 0)]
    notifier.send_new_reviews_summary.assert_awaited_once()


@pytest.mark.anyio
async def test_poll_owner_reports_per_resource_without_summary(db, session_factory):
    owner = await make_owner(db)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1", name="First")
    await make_resource(db, account, store_id="s2", name="Second")
    await db.commit()

    connector = ScriptedConnector({"s1": _items("a", 2), "s2": VendorError("Backend error", status_code=500)})
    scheduler, notifier = _scheduler(session_factory, connector)
    results = await scheduler.poll_owner(owner.id)

    assert [(r.resource_name, r.new_reviews, r.error) for r in results] == [
        ("First", 2, None),
        ("Second", 0, "Backend error"),
    ]
    notifier.send_new_reviews_summary.assert_not_awaited()


@pytest.mark.anyio
async def test_poll_owner_skips_inactive_owner(db, session_factory):
    owner = await make_owner(db, is_active=False)
    account = await make_account(db, owner)
    await make_resource(db, account, store_id="s1")
    await db.commit()

    connector = ScriptedConnector({"s1": _items("a", 1)})
    scheduler, _ = _scheduler(session_factory, connector)

    assert await scheduler.poll_owner(owner.id) == []
    assert connector.calls == []

@pytest.mark.anyio
async def test_poll_owner_unknown_owner_returns_nothing(session_factory):
    scheduler, _ = _scheduler(session_factory, ScriptedConnector({}))
    assert await scheduler.poll_owner(uuid.uuid4()) == []


# ── Lifecycle ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_start_and_stop(session_factory):
    scheduler, _ = _scheduler(session_factory, ScriptedConnector({}), poll_interval_minutes=30)

    scheduler.start()
    status = scheduler.status()
    assert status["running"] is True
    assert status["interval_minutes"] == 30
    assert status["next_run_time"] is not None

    scheduler.stop()
    assert scheduler.is_running is False
    assert scheduler.status()["next_run_time"] is None
