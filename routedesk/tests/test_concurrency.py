"""
Concurrency Tests.

Lost races on the pending notification and the route row surface as
TransientStorageError and are absorbed by retry_on_conflict. Earnings
recalculation is serialized per route by a Redis lock.
"""

import pytest
from redis.exceptions import LockError
from sqlalchemy import update

from routedesk.app.core.exceptions import TransientStorageError
from routedesk.app.core.reliability import retry_on_conflict
from routedesk.app.domain.billing.earnings_service import EarningsService
from routedesk.app.domain.routing.stop_diff import diff_stops
from routedesk.app.models.enums import RouteStatus
from routedesk.app.models.notification import RouteChangeNotification
from routedesk.app.services.notification_service import RouteChangeNotificationService
from routedesk.app.services.route_service import RouteService


async def bump_version_behind_the_session(db, notification_id):
    """Simulate another worker merging into the notification."""
    await db.execute(
        update(RouteChangeNotification)
        .where(RouteChangeNotification.id == notification_id)
        .values(version=RouteChangeNotification.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


@pytest.fixture
async def notified_route(db_session, route_factory, stop_factory):
    p1, p2 = stop_factory("P1", 0), stop_factory("P2", 1)
    route = await route_factory([p1, p2])
    result = await RouteService.update_stops(db_session, route.id, [p2, p1])
    return result.route, result.notification, (p1, p2)


@pytest.mark.asyncio
async def test_merge_into_stale_notification_is_transient(db_session, notified_route, stop_factory, mocker):
    route, notification, (p1, p2) = notified_route
    await bump_version_behind_the_session(db_session, notification.id)
    assert notification.version == 1  # in-memory copy is now stale

    mocker.patch.object(
        RouteChangeNotificationService, "get_pending_for_route", return_value=notification
    )

    with pytest.raises(TransientStorageError):
        await RouteChangeNotificationService.record_changes(
            db_session, route, diff_stops([p2, p1], [p2, p1, stop_factory("P3", 2)])
        )


@pytest.mark.asyncio
async def test_concurrent_insert_is_transient(db_session, notified_route, stop_factory, mocker):
    route, _, (p1, p2) = notified_route

    # Both writers saw "no pending notification"; the partial unique index rejects the second
    mocker.patch.object(RouteChangeNotificationService, "get_pending_for_route", return_value=None)

    with pytest.raises(TransientStorageError):
        await RouteChangeNotificationService.record_changes(
            db_session, route, diff_stops([p2, p1], [p1, p2])
        )


@pytest.mark.asyncio
async def test_route_update_retries_after_lost_merge(db_session, notified_route, stop_factory, mocker):
    route, notification, (p1, p2) = notified_route
    route_id, notification_id = route.id, notification.id
    await bump_version_behind_the_session(db_session, notification_id)

    original = RouteChangeNotificationService.get_pending_for_route
    calls = []

    async def stale_once(db, pending_route_id):
        calls.append(pending_route_id)
        if len(calls) == 1:
            return notification
        return await original(db, pending_route_id)

    mocker.patch.object(RouteChangeNotificationService, "get_pending_for_route", side_effect=stale_once)

    result = await retry_on_conflict(
        lambda: RouteService.update_stops(db_session, route_id, [p2, p1, stop_factory("P3", 2)]),
        backoff_seconds=0
    )

    assert len(calls) == 2
    assert result.route.revision == 2
    assert result.notification.id == notification_id
    assert result.notification.version == 3
    assert len(result.route.removed_stops) == 0


@pytest.mark.asyncio
async def test_retry_on_conflict_eventually_succeeds():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientStorageError()
        return "ok"

    assert await retry_on_conflict(flaky, attempts=3, backoff_seconds=0) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retry_on_conflict_gives_up():
    attempts = []

    async def always_conflicts():
        attempts.append(1)
        raise TransientStorageError(details={"route_id": 1})

    with pytest.raises(TransientStorageError):
        await retry_on_conflict(always_conflicts, attempts=2, backoff_seconds=0)
    assert len(attempts) == 2


# --- Earnings lock ---

@pytest.mark.asyncio
async def test_recalculation_holds_route_lock(db_session, route_factory, stop_factory, pricing_rule, redis_client_session):
    route = await route_factory(
        [stop_factory("P1", 0, outcome="completed", attempted=True)], status=RouteStatus.COMPLETED
    )

    await EarningsService.recalculate_route(db_session, route.id)
    await EarningsService.recalculate_route(db_session, route.id)

    assert redis_client_session.lock_history == [f"earnings:route:{route.id}"] * 2
    assert len(await EarningsService.get_for_route(db_session, route.id)) == 1


class BusyLock:
    async def __aenter__(self):
        raise LockError("Unable to acquire lock within the time specified")

    async def __aexit__(self, exc_type, exc, tb):
        return False


class BusyRedis:
    def lock(self, name, timeout=None, blocking_timeout=None):
        return BusyLock()


@pytest.mark.asyncio
async def test_busy_route_lock_is_transient(db_session, route_factory, stop_factory, pricing_rule):
    route = await route_factory([stop_factory("P1", 0)], status=RouteStatus.COMPLETED)

    with pytest.raises(TransientStorageError):
        await EarningsService.recalculate_route(db_session, route.id, redis=BusyRedis())


@pytest.mark.asyncio
async def test_batch_recalculation_collects_errors(session_factory, route_factory, stop_factory, pricing_rule):
    done = await route_factory(
        [stop_factory("P1", 0, outcome="completed", attempted=True)], status=RouteStatus.COMPLETED, code="R-1"
    )
    driverless = await route_factory([stop_factory("P2", 0)], status=RouteStatus.DRAFT, driver_id=None, code="R-2")

    summary = await EarningsService.recalculate_routes(
        session_factory, [done.id, done.id, driverless.id, 404], concurrency=1
    )

    assert summary["recalculated"] == [done.id]
    assert [error["route_id"] for error in summary["errors"]] == [driverless.id, 404]


@pytest.mark.asyncio
async def test_busy_lock_after_edit_keeps_the_edit(db_session, route_factory, stop_factory, mocker):
    p1 = stop_factory("P1", 0, outcome="completed", attempted=True)
    p2 = stop_factory("P2", 1)
    route = await route_factory([p1, p2], status=RouteStatus.IN_PROGRESS)
    recalculate = mocker.patch.object(
        EarningsService, "recalculate_route", side_effect=TransientStorageError(details={"route_id": route.id})
    )
    attempts = []

    async def edit():
        attempts.append(1)
        return await RouteService.update_stops(db_session, route.id, [p2, p1])

    result = await retry_on_conflict(edit, attempts=3, backoff_seconds=0)

    assert len(attempts) == 1
    assert recalculate.await_count == 1
    assert result.route.revision == 1
    assert [change.stop_id for change in result.changes] == ["P2", "P1"]
