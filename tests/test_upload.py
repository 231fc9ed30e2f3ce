import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from eds_data_client.exceptions import (
    BackendUploadError,
    CapacityExceededError,
    FolderNotFoundError,
    SizeMismatchError,
)
from eds_data_client.models import FileMeta

pytestmark = pytest.mark.asyncio


async def reserved_of(client, node_id):
    return (await client.nodes.get(node_id)).reserved_space


async def test_init_upload_reserves_space_and_opens_session(eds_client, make_node, drive_backend):
    node_id = await make_node(total=1000, token="tok-a")

    session = await eds_client.uploads.init_upload("photo.jpg", 300, "image/jpeg", origin="https://app.example")

    assert session.node_id == node_id
    assert session.access_token == "tok-a"
    assert session.upload_url.startswith("https://upload.example/session/")
    assert session.expires_in == 3600
    assert await reserved_of(eds_client, node_id) == 300

    init_request = drive_backend.requests[-1]
    assert init_request.url.params["uploadType"] == "resumable"
    assert init_request.headers["X-Upload-Content-Length"] == "300"
    assert init_request.headers["X-Upload-Content-Type"] == "image/jpeg"
    assert init_request.headers["Origin"] == "https://app.example"

    actions = [a.action for a in (await eds_client.activity.list_page()).activities]
    assert actions == ["UPLOAD_INIT"]


async def test_init_upload_falls_back_when_backend_rejects_token(eds_client, make_node, drive_backend):
    rejected = await make_node(total=1000, token="revoked")
    fallback = await make_node(total=500, token="good")
    drive_backend.rejected_tokens.add("revoked")

    session = await eds_client.uploads.init_upload("a.bin", 100, "application/octet-stream")

    assert session.node_id == fallback
    assert await reserved_of(eds_client, rejected) == 0
    assert await reserved_of(eds_client, fallback) == 100


async def test_init_upload_skips_node_whose_token_cannot_be_refreshed(eds_client, make_node, drive_backend):
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    stale = await make_node(total=1000, token_expires_at=expired)
    healthy = await make_node(total=500)
    drive_backend.fail_refresh = True

    session = await eds_client.uploads.init_upload("a.bin", 100, "application/octet-stream")

    assert session.node_id == healthy
    assert await reserved_of(eds_client, stale) == 0


async def test_init_upload_refreshes_expiring_token(eds_client, make_node):
    soon = datetime.now(timezone.utc) + timedelta(minutes=2)
    node_id = await make_node(total=1000, token="old", token_expires_at=soon)

    session = await eds_client.uploads.init_upload("a.bin", 10, "application/octet-stream")

    assert session.access_token == "refreshed-token"
    assert await eds_client.tokens.get_valid_access_token(node_id) == "refreshed-token"


async def test_init_upload_all_nodes_failing_releases_everything(eds_client, make_node, drive_backend):
    ids = [await make_node(total=1000, token=f"bad-{i}") for i in range(4)]
    drive_backend.rejected_tokens.update({f"bad-{i}" for i in range(4)})

    with pytest.raises(BackendUploadError) as err:
        await eds_client.uploads.init_upload("a.bin", 10, "application/octet-stream")

    assert "after 3 attempts" in str(err.value)
    for node_id in ids:
        assert await reserved_of(eds_client, node_id) == 0
    resumable = [r for r in drive_backend.requests if r.url.params.get("uploadType") == "resumable"]
    assert len(resumable) == 3


async def test_init_upload_without_capacity(eds_client, make_node):
    await make_node(total=50)

    with pytest.raises(CapacityExceededError):
        await eds_client.uploads.init_upload("big.iso", 51, "application/octet-stream")


async def test_init_upload_validates_input(eds_client, make_node):
    await make_node(total=50)

    with pytest.raises(ValueError):
        await eds_client.uploads.init_upload("", 10, "text/plain")
    with pytest.raises(ValueError):
        await eds_client.uploads.init_upload("a.txt", 0, "text/plain")
    with pytest.raises(ValueError):
        await eds_client.uploads.init_upload("a.txt", 10, "")
    with pytest.raises(FolderNotFoundError):
        await eds_client.uploads.init_upload("a.txt", 10, "text/plain", folder_id=uuid4())


async def test_init_upload_materialises_folder_path(eds_client, make_node):
    await make_node(total=1000)

    session = await eds_client.uploads.init_upload(
        "dump.sql", 10, "application/sql", folder_path="/backups/server-a"
    )

    folder = await eds_client.folders.get(session.folder_id)
    assert folder.path == "/backups/server-a"
    root = await eds_client.folders.list_children(None)
    assert [f.name for f in root] == ["backups"]


async def test_resumable_round_trip(eds_client, make_node):
    node_id = await make_node(total=1000, used=100)
    session = await eds_client.uploads.init_upload("movie.mp4", 400, "video/mp4")

    file = await eds_client.uploads.finalize_upload(
        "gfile-xyz", session.node_id, session.reservation_id,
        FileMeta(name="movie.mp4", size=400, mime_type="video/mp4"),
    )

    node = await eds_client.nodes.get(node_id)
    assert file.backend_file_id == "gfile-xyz"
    assert node.used_space == 500
    assert node.reserved_space == 0


async def test_finalize_failure_releases_reservation(eds_client, make_node):
    node_id = await make_node(total=1000)
    session = await eds_client.uploads.init_upload("movie.mp4", 400, "video/mp4")

    with pytest.raises(SizeMismatchError):
        await eds_client.uploads.finalize_upload(
            "gfile-xyz", session.node_id, session.reservation_id,
            FileMeta(name="movie.mp4", size=399, mime_type="video/mp4"),
        )

    node = await eds_client.nodes.get(node_id)
    assert node.reserved_space == 0
    assert node.used_space == 0
    reservation = await eds_client.quota.get_reservation(session.reservation_id)
    assert reservation.status == "released"
    assert reservation.reason == "failed"


async def test_cancel_upload(eds_client, make_node):
    node_id = await make_node(total=1000)
    session = await eds_client.uploads.init_upload("a.txt", 10, "text/plain")

    assert await eds_client.uploads.cancel_upload(session.reservation_id) is True
    assert await eds_client.uploads.cancel_upload(session.reservation_id) is False

    assert await reserved_of(eds_client, node_id) == 0
    assert (await eds_client.quota.get_reservation(session.reservation_id)).reason == "cancelled"


async def test_simple_upload_commits_file(eds_client, make_node, drive_backend):
    node_id = await make_node(total=1000)
    folder = await eds_client.folders.create("Inbox")

    file = await eds_client.uploads.upload_file("notes.txt", b"hello world", "text/plain", folder_id=folder.id)

    assert file.size == 11
    assert file.folder_id == folder.id
    node = await eds_client.nodes.get(node_id)
    assert (node.used_space, node.reserved_space) == (11, 0)

    body = drive_backend.files[file.backend_file_id]
    assert b"--foo_bar_baz" in body
    assert b'"name": "notes.txt"' in body
    assert b"hello world" in body


async def test_simple_upload_backend_failure_releases(eds_client, make_node, drive_backend):
    node_id = await make_node(total=1000)
    drive_backend.fail_uploads = True

    with pytest.raises(BackendUploadError):
        await eds_client.uploads.upload_file("notes.txt", b"hello", "text/plain")

    node = await eds_client.nodes.get(node_id)
    assert (node.used_space, node.reserved_space) == (0, 0)


async def test_simple_upload_cleans_backend_object_when_finalize_fails(eds_client, make_node, drive_backend):
    node_id = await make_node(total=1000)
    original_finalize = eds_client.quota.finalize_upload

    async def broken_finalize(*args, **kwargs):
        raise SizeMismatchError(1, 2)

    eds_client.quota.finalize_upload = broken_finalize
    try:
        with pytest.raises(SizeMismatchError):
            await eds_client.uploads.upload_file("notes.txt", b"hello", "text/plain")
    finally:
        eds_client.quota.finalize_upload = original_finalize

    assert await reserved_of(eds_client, node_id) == 0
    assert len(drive_backend.deleted) == 1
    assert drive_backend.files == {}


async def test_cancelled_upload_releases_reservation(eds_client, make_node, drive_backend):
    node_id = await make_node(total=1000)
    started = asyncio.Event()

    async def hanging_upload(*args, **kwargs):
        started.set()
        await asyncio.sleep(60)

    eds_client.drive.upload_simple = hanging_upload
    task = asyncio.create_task(eds_client.uploads.upload_file("slow.bin", b"x" * 10, None))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await reserved_of(eds_client, node_id) == 0


async def test_simple_upload_rejects_empty_content(eds_client, make_node):
    await make_node(total=1000)

    with pytest.raises(ValueError):
        await eds_client.uploads.upload_file("empty.txt", b"", "text/plain")
