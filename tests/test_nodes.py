from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from eds_data_client.db.drive.file_orm import EDSFileORM
from eds_data_client.db.nodes.reservation_orm import ReservationORM, ReservationStatus
from eds_data_client.exceptions import NodeInUseError, NodeNotFoundError, NodeTokenError

pytestmark = pytest.mark.asyncio


async def test_link_new_node_from_oauth_code(eds_client, drive_backend):
    drive_backend.email = "pool-1@example.com"
    drive_backend.quota = {"limit": "2000", "usage": "150"}

    node = await eds_client.link_node_from_code("auth-code")

    assert node.email == "pool-1@example.com"
    assert (node.total_space, node.used_space, node.reserved_space) == (2000, 150, 0)
    assert node.is_active
    assert await eds_client.tokens.get_valid_access_token(node.id) == "linked-access"
    page = await eds_client.activity.list_page()
    assert [a.action for a in page.activities] == ["NODE_ADDED"]


async def test_relinking_known_account_refreshes_tokens_and_reactivates(eds_client, make_node, drive_backend):
    node_id = await make_node(total=500, used=20, email="known@example.com", token="stale", active=False)
    drive_backend.email = "known@example.com"

    node = await eds_client.link_node_from_code("auth-code")

    assert node.id == node_id
    assert node.is_active
    assert node.total_space == 500
    assert await eds_client.tokens.get_valid_access_token(node_id) == "linked-access"
    assert len(await eds_client.list_nodes()) == 1


async def test_sync_overwrites_total_and_used_but_not_reserved(eds_client, make_node, drive_backend):
    node_id = await make_node(total=500, used=20)
    await eds_client.quota.create_reservation(node_id, 30)
    drive_backend.quota = {"limit": "800", "usage": "400"}

    node = await eds_client.sync_node(node_id)

    assert (node.total_space, node.used_space, node.reserved_space) == (800, 400, 30)
    assert node.last_sync_at is not None
    assert "NODE_SYNC" in [a.action for a in (await eds_client.activity.list_page()).activities]


async def test_toggle_node_removes_it_from_selection(eds_client, make_node):
    node_id = await make_node(total=500)

    node = await eds_client.toggle_node(node_id, False)

    assert node.is_active is False
    assert await eds_client.quota.select_node_for_upload(10) is None
    with pytest.raises(NodeTokenError):
        await eds_client.tokens.get_valid_access_token(node_id)

    await eds_client.toggle_node(node_id, True)
    assert (await eds_client.quota.select_node_for_upload(10)).node_id == node_id


async def test_delete_node_guards(eds_client, make_node):
    node_id = await make_node(total=500)
    file = await eds_client.uploads.upload_file("a.txt", b"abc", "text/plain")

    with pytest.raises(NodeInUseError):
        await eds_client.delete_node(node_id)

    await eds_client.delete_file(file.id)
    reservation_id = await eds_client.quota.create_reservation(node_id, 10)
    with pytest.raises(NodeInUseError):
        await eds_client.delete_node(node_id)

    await eds_client.quota.release_reservation(reservation_id)
    await eds_client.delete_node(node_id)

    assert await eds_client.list_nodes() == []
    with pytest.raises(NodeNotFoundError):
        await eds_client.nodes.get(node_id)
    assert "NODE_REMOVED" in [a.action for a in (await eds_client.activity.list_page()).activities]


async def test_list_nodes_counts_live_files(eds_client, make_node):
    await make_node(total=500)
    keep = await eds_client.uploads.upload_file("keep.txt", b"1", "text/plain")
    drop = await eds_client.uploads.upload_file("drop.txt", b"2", "text/plain")
    await eds_client.delete_file(drop.id)

    nodes = await eds_client.list_nodes()

    assert nodes[0].file_count == 1
    assert nodes[0].id == keep.node_id


async def test_check_connections(eds_client):
    statuses = await eds_client.check_connections()

    assert statuses == {"postgres": "ok", "vault": "ok"}


async def test_delete_refuses_node_holding_an_active_reservation_row(eds_client, make_node):
    node_id = await make_node(total=500)
    now = datetime.now(timezone.utc)
    # active row without the matching reserved_space increment
    async with eds_client.session_factory() as session:
        session.add(ReservationORM(
            node_id=node_id, size=10, status=ReservationStatus.active,
            created_at=now, expires_at=now + timedelta(hours=1),
        ))
        await session.commit()

    with pytest.raises(NodeInUseError):
        await eds_client.delete_node(node_id)

    assert (await eds_client.nodes.get(node_id)).id == node_id
    async with eds_client.session_factory() as session:
        statuses = (await session.execute(
            select(ReservationORM.status).where(ReservationORM.node_id == node_id)
        )).scalars().all()
    assert statuses == [ReservationStatus.active]


async def test_delete_takes_only_closed_reservations_and_deleted_files_along(eds_client, make_node):
    node_id = await make_node(total=500)
    gone = await eds_client.uploads.upload_file("gone.txt", b"abc", "text/plain")
    await eds_client.delete_file(gone.id)
    released = await eds_client.quota.create_reservation(node_id, 10)
    await eds_client.quota.release_reservation(released)

    await eds_client.delete_node(node_id)

    async with eds_client.session_factory() as session:
        leftover_files = (await session.execute(
            select(func.count(EDSFileORM.id)).where(EDSFileORM.node_id == node_id)
        )).scalar_one()
        leftover_reservations = (await session.execute(
            select(func.count(ReservationORM.id)).where(ReservationORM.node_id == node_id)
        )).scalar_one()
    assert (leftover_files, leftover_reservations) == (0, 0)
