from uuid import uuid4

import pytest

from eds_data_client.exceptions import (
    EDSFileNotFoundError,
    FileDeletedError,
    FolderExistsError,
    FolderNotEmptyError,
    FolderNotFoundError,
)

pytestmark = pytest.mark.asyncio


async def upload(client, name, content=b"data", folder_id=None):
    return await client.uploads.upload_file(name, content, "text/plain", folder_id=folder_id)


async def actions(client):
    return [a.action for a in (await client.activity.list_page()).activities]


async def test_folder_tree_paths_and_counts(eds_client, make_node):
    await make_node(total=1000)
    docs = await eds_client.create_folder("Docs")
    work = await eds_client.create_folder("Work Stuff", parent_id=docs.id)
    await upload(eds_client, "a.txt", folder_id=docs.id)

    assert docs.path == "/docs"
    assert work.path == "/docs/work-stuff"

    root = await eds_client.list_folders()
    assert [(f.name, f.file_count, f.child_count) for f in root] == [("Docs", 1, 1)]
    assert [f.id for f in await eds_client.list_folders(docs.id)] == [work.id]


async def test_duplicate_folder_name_is_rejected(eds_client):
    await eds_client.create_folder("Docs")

    with pytest.raises(FolderExistsError):
        await eds_client.create_folder("Docs")
    with pytest.raises(FolderNotFoundError):
        await eds_client.create_folder("Orphan", parent_id=uuid4())
    with pytest.raises(ValueError):
        await eds_client.create_folder("   ")


async def test_rename_rewrites_descendant_paths(eds_client):
    a = await eds_client.create_folder("A")
    b = await eds_client.create_folder("B", parent_id=a.id)
    c = await eds_client.create_folder("C", parent_id=b.id)
    other = await eds_client.create_folder("AB")

    renamed = await eds_client.rename_folder(a.id, "Archive")

    assert renamed.slug == "archive"
    assert renamed.path == "/archive"
    assert (await eds_client.folders.get(b.id)).path == "/archive/b"
    assert (await eds_client.folders.get(c.id)).path == "/archive/b/c"
    assert (await eds_client.folders.get(other.id)).path == "/ab"
    assert "RENAME_FOLDER" in await actions(eds_client)


async def test_rename_to_sibling_name_conflicts(eds_client):
    await eds_client.create_folder("One")
    two = await eds_client.create_folder("Two")

    with pytest.raises(FolderExistsError):
        await eds_client.rename_folder(two.id, "One")


async def test_delete_folder_requires_it_to_be_empty(eds_client, make_node):
    await make_node(total=1000)
    parent = await eds_client.create_folder("Parent")
    child = await eds_client.create_folder("Child", parent_id=parent.id)
    file = await upload(eds_client, "a.txt", folder_id=child.id)

    with pytest.raises(FolderNotEmptyError):
        await eds_client.delete_folder(parent.id)
    with pytest.raises(FolderNotEmptyError):
        await eds_client.delete_folder(child.id)

    await eds_client.delete_file(file.id)
    await eds_client.delete_folder(child.id)
    await eds_client.delete_folder(parent.id)

    assert await eds_client.list_folders() == []
    assert "DELETE_FOLDER" in await actions(eds_client)


async def test_move_file_keeps_accounting_and_uniquifies_slug(eds_client, make_node):
    node_id = await make_node(total=1000)
    target = await eds_client.create_folder("Target")
    await upload(eds_client, "report.txt", folder_id=target.id)
    file = await upload(eds_client, "report.txt")
    before = await eds_client.nodes.get(node_id)

    moved = await eds_client.move_file(file.id, target.id)

    assert moved.folder_id == target.id
    assert moved.slug == "report-1.txt"
    after = await eds_client.nodes.get(node_id)
    assert (after.used_space, after.reserved_space) == (before.used_space, before.reserved_space)
    assert [f.id for f in await eds_client.list_files(None)] == []
    assert len(await eds_client.list_files(target.id)) == 2

    back = await eds_client.move_file(file.id, None)
    assert back.folder_id is None
    assert "MOVE_FILE" in await actions(eds_client)


async def test_move_into_missing_folder(eds_client, make_node):
    await make_node(total=1000)
    file = await upload(eds_client, "a.txt")

    with pytest.raises(FolderNotFoundError):
        await eds_client.move_file(file.id, uuid4())


async def test_download_streams_content_and_logs(eds_client, make_node):
    await make_node(total=1000)
    file = await upload(eds_client, "hello.txt", b"hello there")

    meta, stream = await eds_client.download_file(file.id)
    content = b"".join([chunk async for chunk in stream])

    assert meta.id == file.id
    assert b"hello there" in content
    assert "DOWNLOAD" in await actions(eds_client)


async def test_deleted_file_is_gone(eds_client, make_node):
    node_id = await make_node(total=1000)
    file = await upload(eds_client, "bye.txt", b"12345")

    await eds_client.delete_file(file.id)

    with pytest.raises(FileDeletedError):
        await eds_client.download_file(file.id)
    with pytest.raises(FileDeletedError):
        await eds_client.move_file(file.id, None)
    with pytest.raises(EDSFileNotFoundError):
        await eds_client.get_file(uuid4())
    assert (await eds_client.nodes.get(node_id)).used_space == 0
    assert await eds_client.list_files() == []
    assert "DELETE" in await actions(eds_client)


async def test_search_returns_folders_then_live_files(eds_client, make_node):
    await make_node(total=1000)
    await eds_client.create_folder("Invoices 2024")
    await upload(eds_client, "invoice-march.pdf")
    gone = await upload(eds_client, "invoice-april.pdf")
    await eds_client.delete_file(gone.id)
    for i in range(7):
        await eds_client.create_folder(f"invoice folder {i}")

    results = await eds_client.search("INVOICE")

    types = [r.type for r in results]
    assert types == ["FOLDER"] * 5 + ["FILE"]
    assert results[-1].data.name == "invoice-march.pdf"
    assert await eds_client.search("i") == []
