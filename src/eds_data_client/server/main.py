from contextlib import asynccontextmanager
from typing import Annotated, Optional
from urllib.parse import quote
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field

from eds_data_client import EDSClient, create_data_client
from eds_data_client.exceptions import (
    CapacityExceededError,
    ConflictError,
    DataClientError,
    DriveError,
    FileDeletedError,
    FolderNotEmptyError,
    InvalidReservationError,
    NodeInUseError,
    NotFoundError,
    SizeMismatchError,
)
from eds_data_client.logging import configure as configure_logging
from eds_data_client.models import (
    ActivityPage,
    FileMeta,
    FolderCreate,
    StorageStats,
    UploadSession,
)
from eds_data_client.models.common import APIModel, ByteCount

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = [
    (CapacityExceededError, status.HTTP_507_INSUFFICIENT_STORAGE),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (FileDeletedError, status.HTTP_410_GONE),
    (NodeInUseError, status.HTTP_400_BAD_REQUEST),
    (FolderNotEmptyError, status.HTTP_400_BAD_REQUEST),
    (InvalidReservationError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (SizeMismatchError, 422),
    (DriveError, status.HTTP_502_BAD_GATEWAY),
]


# ――― request bodies ――― #

class UploadInitRequest(APIModel):
    name: str = Field(..., min_length=1)
    size: ByteCount = Field(..., gt=0)
    mime_type: str = Field(..., min_length=1)
    folder_id: Optional[UUID] = None
    folder_path: Optional[str] = None


class UploadFinalizeRequest(APIModel):
    google_file_id: str = Field(..., min_length=1)
    node_id: UUID
    reservation_id: UUID
    file_meta: FileMeta


class UploadCancelRequest(APIModel):
    reservation_id: UUID


class NodePatch(APIModel):
    node_id: UUID
    is_active: bool


class NodeSyncRequest(APIModel):
    node_id: UUID


class FolderPatch(APIModel):
    id: UUID
    name: str = Field(..., min_length=1, max_length=255)


class FileMove(APIModel):
    folder_id: Optional[UUID] = None


def get_client(request: Request) -> EDSClient:
    return request.app.state.client


Client = Annotated[EDSClient, Depends(get_client)]

drive_router = APIRouter(prefix="/api/drive", tags=["Drive"])
activity_router = APIRouter(prefix="/api/activity", tags=["Activity"])


# ――― uploads ――― #

@drive_router.post("/upload/init", response_model=UploadSession)
async def upload_init(body: UploadInitRequest, request: Request, client: Client):
    """Reserves space on a node and returns a resumable session the browser uploads to directly."""
    return await client.uploads.init_upload(
        name=body.name,
        size=body.size,
        mime_type=body.mime_type,
        folder_id=body.folder_id,
        folder_path=body.folder_path,
        origin=request.headers.get("origin"),
    )


@drive_router.post("/upload/finalize", status_code=status.HTTP_201_CREATED)
async def upload_finalize(body: UploadFinalizeRequest, client: Client):
    file = await client.uploads.finalize_upload(
        backend_file_id=body.google_file_id,
        node_id=body.node_id,
        reservation_id=body.reservation_id,
        file_meta=body.file_meta,
    )
    return {"success": True, "file": file}


@drive_router.post("/upload/cancel")
async def upload_cancel(body: UploadCancelRequest, client: Client):
    released = await client.uploads.cancel_upload(body.reservation_id)
    return {"success": True, "released": released}


@drive_router.post("/upload", status_code=status.HTTP_201_CREATED)
async def upload_simple(
    client: Client,
    file: UploadFile = File(...),
    folder_id: Optional[UUID] = Form(None, alias="folderId"),
):
    """Uploads through the server in one request. Meant for small files."""
    content = await file.read()
    created = await client.uploads.upload_file(
        name=file.filename or "",
        content=content,
        mime_type=file.content_type,
        folder_id=folder_id,
    )
    return {"success": True, "file": created}


# ――― nodes ――― #

@drive_router.get("/nodes")
async def list_nodes(client: Client):
    return {"nodes": await client.list_nodes()}


@drive_router.patch("/nodes")
async def toggle_node(body: NodePatch, client: Client):
    return {"node": await client.toggle_node(body.node_id, body.is_active)}


@drive_router.delete("/nodes")
async def delete_node(client: Client, node_id: UUID = Query(..., alias="id")):
    await client.delete_node(node_id)
    return {"success": True}


@drive_router.post("/nodes/sync")
async def sync_node(body: NodeSyncRequest, client: Client):
    return {"node": await client.sync_node(body.node_id)}


@drive_router.get("/nodes/auth-url")
async def node_auth_url(client: Client):
    return {"url": client.get_auth_url()}


@drive_router.get("/nodes/callback")
async def node_callback(
    client: Client,
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    if error:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": error})
    if not code:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "no_code"})
    return {"success": True, "node": await client.link_node_from_code(code)}


@drive_router.get("/stats", response_model=StorageStats)
async def storage_stats(client: Client):
    return await client.stats()


# ――― folders ――― #

@drive_router.get("/folders")
async def list_folders(client: Client, parent_id: Optional[UUID] = Query(None, alias="parentId")):
    return {"folders": await client.list_folders(parent_id)}


@drive_router.post("/folders", status_code=status.HTTP_201_CREATED)
async def create_folder(body: FolderCreate, client: Client):
    return {"folder": await client.create_folder(body.name, body.parent_id)}


@drive_router.patch("/folders")
async def rename_folder(body: FolderPatch, client: Client):
    return {"folder": await client.rename_folder(body.id, body.name)}


@drive_router.delete("/folders")
async def delete_folder(client: Client, folder_id: UUID = Query(..., alias="id")):
    await client.delete_folder(folder_id)
    return {"success": True}


# ――― files ――― #

@drive_router.get("/files")
async def list_files(client: Client, folder_id: Optional[UUID] = Query(None, alias="folderId")):
    return {"files": await client.list_files(folder_id)}


@drive_router.get("/files/{file_id}")
async def download_file(file_id: UUID, client: Client):
    file, stream = await client.download_file(file_id)
    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(file.name)}",
        "Content-Length": str(file.size),
    }
    return StreamingResponse(stream, media_type=file.mime_type, headers=headers)


@drive_router.delete("/files/{file_id}")
async def delete_file(file_id: UUID, client: Client):
    await client.delete_file(file_id)
    return {"success": True}


@drive_router.patch("/files/{file_id}/move")
async def move_file(file_id: UUID, body: FileMove, client: Client):
    return {"success": True, "file": await client.move_file(file_id, body.folder_id)}


@drive_router.get("/search")
async def search(client: Client, q: str = Query("")):
    return {"results": await client.search(q)}


# ――― activity ――― #

@activity_router.get("", response_model=ActivityPage)
async def list_activity(
    client: Client,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
):
    return await client.list_activity(page, limit)


@activity_router.delete("")
async def clear_activity(client: Client):
    return {"success": True, "deleted": await client.clear_activity()}


# ――― app ――― #

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DataClientError)
    async def data_client_error_handler(request: Request, exc: DataClientError):
        for cls, code in ERROR_STATUS:
            if isinstance(exc, cls):
                break
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR

        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        message = str(exc)
        if isinstance(exc, DriveError):
            message = "Storage backend request failed"
        elif code == status.HTTP_500_INTERNAL_SERVER_ERROR:
            message = "An internal error occurred."
        return JSONResponse(status_code=code, content={"error": message})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


def create_app(client: Optional[EDSClient] = None, run_sweeper: bool = True) -> FastAPI:
    """
    Builds the HTTP app. Without an explicit client one is created from the environment
    on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.client is None
        if owned:
            configure_logging()
            app.state.client = create_data_client()
        if run_sweeper:
            await app.state.client.sweeper.start()
        try:
            yield
        finally:
            await app.state.client.sweeper.stop()
            if owned:
                await app.state.client.aclose()

    app = FastAPI(title="EDS storage aggregator", lifespan=lifespan)
    app.state.client = client
    app.include_router(drive_router)
    app.include_router(activity_router)
    register_exception_handlers(app)
    return app
