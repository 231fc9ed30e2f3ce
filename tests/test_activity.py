import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from eds_data_client.db.activity.activity_orm import ActivityAction, TargetType
from eds_data_client.exceptions import DatabaseError
from eds_data_client.quota_manager import QuotaManager
from eds_data_client.sweeper import ReservationSweeper

pytestmark = pytest.mark.asyncio


async def test_pagination_is_newest_first(eds_client):
    for i in range(5):
        await eds_client.activity.record(ActivityAction.CREATE_FOLDER, TargetType.FOLDER, None, {"n": i})

    first = await eds_client.list_activity(page=1, limit=2)
    last = await eds_client.list_activity(page=3, limit=2)

    assert [a.metadata["n"] for a in first.activities] == [4, 3]
    assert [a.metadata["n"] for a in last.activities] == [0]
    assert first.pagination.total == 5
    assert first.pagination.total_pages == 3


async def test_clear_removes_everything(eds_client):
    await eds_client.activity.record(ActivityAction.DELETE, TargetType.FILE, "x")
    await eds_client.activity.record(ActivityAction.DELETE, TargetType.FILE, "y")

    assert await eds_client.clear_activity() == 2
    page = await eds_client.list_activity()
    assert page.activities == []
    assert page.pagination.total_pages == 0


async def test_record_never_fails_the_caller(eds_client, monkeypatch):
    async def broken_append(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(eds_client.activity, "append", broken_append)

    await eds_client.activity.record(ActivityAction.DELETE, TargetType.FILE, "x")


async def test_sweeper_run_once_releases_expired(eds_client, make_node):
    node_id = await make_node(total=1000)
    reservation_id = await eds_client.quota.create_reservation(node_id, 100)
    eds_client.quota._ttl = timedelta(seconds=-1)
    await eds_client.quota.create_reservation(node_id, 50)

    released = await eds_client.sweeper.run_once()

    assert released == 1
    assert (await eds_client.nodes.get(node_id)).reserved_space == 100
    assert (await eds_client.quota.get_reservation(reservation_id)).status == "active"
    actions = [a.action for a in (await eds_client.list_activity()).activities]
    assert actions == ["RESERVATION_EXPIRED"]


async def test_sweeper_loop_reclaims_in_background(eds_client, make_node):
    node_id = await make_node(total=1000)
    eds_client.quota._ttl = timedelta(seconds=-1)
    await eds_client.quota.create_reservation(node_id, 100)

    await eds_client.sweeper.start()
    assert eds_client.sweeper.running
    for _ in range(100):
        if (await eds_client.nodes.get(node_id)).reserved_space == 0:
            break
        await asyncio.sleep(0.02)
    await eds_client.sweeper.stop()

    assert eds_client.sweeper.running is False
    assert eds_client.sweeper.task is None
    assert (await eds_client.nodes.get(node_id)).reserved_space == 0


async def test_sweeper_keeps_running_after_a_failed_sweep():
    calls = []

    class FlakyQuota:
        async def expire_stale_reservations(self, now=None):
            calls.append(datetime.now(timezone.utc))
            if len(calls) == 1:
                raise DatabaseError("connection reset")
            return 0

    sweeper = ReservationSweeper(FlakyQuota(), interval_seconds=0.01)
    await sweeper.start()
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert len(calls) >= 2


async def test_expiry_lookup_failure_is_a_database_error(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/eds.db")
    quota = QuotaManager(async_sessionmaker(bind=engine, expire_on_commit=False))
    try:
        with pytest.raises(DatabaseError):
            await quota.expire_stale_reservations()
    finally:
        await engine.dispose()


async def test_sweeper_survives_an_unreachable_database(tmp_path, caplog):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/eds.db")
    quota = QuotaManager(async_sessionmaker(bind=engine, expire_on_commit=False))
    sweeper = ReservationSweeper(quota, interval_seconds=0.01)

    with caplog.at_level(logging.ERROR, logger="eds_data_client.sweeper"):
        await sweeper.start()
        for _ in range(100):
            if len([r for r in caplog.records if "sweep failed" in r.getMessage()]) >= 2:
                break
            await asyncio.sleep(0.01)
        alive = not sweeper.task.done()
        await sweeper.stop()
    await engine.dispose()

    assert alive
    failures = [r for r in caplog.records if "sweep failed" in r.getMessage()]
    assert len(failures) >= 2
    assert failures[0].exc_info is not None
