import json
import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

import httpx

from eds_data_client.config import DriveConfig
from eds_data_client.exceptions import BackendUploadError, DriveError
from eds_data_client.models.node import DriveQuota, OAuthTokens

logger = logging.getLogger(__name__)

MULTIPART_BOUNDARY = "foo_bar_baz"


def _multipart_body(name: str, mime_type: str, content: bytes) -> bytes:
    metadata = json.dumps({"name": name, "mimeType": mime_type})
    head = (
        f"--{MULTIPART_BOUNDARY}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{metadata}\r\n"
        f"--{MULTIPART_BOUNDARY}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    )
    return head.encode("utf-8") + content + f"\r\n--{MULTIPART_BOUNDARY}--".encode("utf-8")


def _expiry(payload: dict) -> Optional[datetime]:
    expires_in = payload.get("expires_in")
    if expires_in is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class DriveRepository:
    """
    Thin async client for the Google Drive v3 REST API and the Google OAuth endpoints.
    Every call takes an already decrypted access token; it never touches the database.
    """

    def __init__(self, settings: DriveConfig, http_client: httpx.AsyncClient | None = None):
        self._cfg = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self._cfg.api_url.rstrip('/')}{path}"

    @staticmethod
    def _auth(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @staticmethod
    async def _raise_for_status(resp: httpx.Response, what: str, error_cls=DriveError):
        if resp.is_success:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        logger.error(f"Drive API error during {what}: {resp.status_code} {body[:500]}")
        raise error_cls(f"Drive API error during {what} ({resp.status_code})", status_code=resp.status_code)

    async def _request(self, method: str, url: str, what: str, error_cls=DriveError, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"Drive API unreachable during {what}: {e}") from e
        await self._raise_for_status(resp, what, error_cls)
        return resp

    # ――― storage ――― #

    async def get_storage_quota(self, access_token: str) -> DriveQuota:
        resp = await self._request(
            "GET", self._url("/drive/v3/about"), "quota query",
            params={"fields": "storageQuota"}, headers=self._auth(access_token),
        )
        quota = resp.json().get("storageQuota") or {}
        # accounts without a limit report none
        return DriveQuota(
            total_space=int(quota.get("limit") or self._cfg.default_total_space),
            used_space=int(quota.get("usage") or 0),
        )

    async def create_resumable_session(
        self, access_token: str, name: str, mime_type: str, size: int, origin: str | None = None
    ) -> str:
        """Opens a resumable upload session and returns its upload URL (Location header)."""
        headers = {
            **self._auth(access_token),
            "X-Upload-Content-Type": mime_type,
            "X-Upload-Content-Length": str(size),
        }
        if origin:
            headers["Origin"] = origin
        resp = await self._request(
            "POST", self._url("/upload/drive/v3/files"), "resumable session",
            error_cls=BackendUploadError,
            params={"uploadType": "resumable"},
            headers=headers,
            json={"name": name, "mimeType": mime_type},
        )
        location = resp.headers.get("Location")
        if not location:
            raise BackendUploadError("No upload URL returned by the backend")
        return location

    async def upload_simple(self, access_token: str, name: str, mime_type: str, content: bytes) -> str:
        """Single-request multipart upload. Returns the backend file id."""
        resp = await self._request(
            "POST", self._url("/upload/drive/v3/files"), "upload",
            error_cls=BackendUploadError,
            params={"uploadType": "multipart"},
            headers={
                **self._auth(access_token),
                "Content-Type": f"multipart/related; boundary={MULTIPART_BOUNDARY}",
            },
            content=_multipart_body(name, mime_type, content),
        )
        file_id = resp.json().get("id")
        if not file_id:
            raise BackendUploadError("Backend did not return a file id")
        return file_id

    async def open_file_stream(self, access_token: str, backend_file_id: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """
        Starts a download and checks the status before any byte is handed out.
        The returned iterator closes the response when exhausted.
        """
        request = self._client.build_request(
            "GET", self._url(f"/drive/v3/files/{backend_file_id}"),
            params={"alt": "media"}, headers=self._auth(access_token),
        )
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise DriveError(f"Drive API unreachable during download: {e}") from e
        try:
            await self._raise_for_status(resp, "download")
        except DriveError:
            await resp.aclose()
            raise
        return self._iter_and_close(resp, chunk_size)

    @staticmethod
    async def _iter_and_close(resp: httpx.Response, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_bytes(chunk_size):
                yield chunk
        finally:
            await resp.aclose()

    async def delete_file(self, access_token: str, backend_file_id: str) -> None:
        try:
            resp = await self._client.delete(
                self._url(f"/drive/v3/files/{backend_file_id}"), headers=self._auth(access_token)
            )
        except httpx.HTTPError as e:
            raise DriveError(f"Drive API unreachable during delete: {e}") from e
        if resp.status_code == 404:
            logger.info(f"Backend object {backend_file_id} already gone")
            return
        await self._raise_for_status(resp, "delete")

    # ――― OAuth ――― #

    def build_auth_url(self) -> str:
        params = {
            "client_id": self._cfg.client_id,
            "redirect_uri": self._cfg.redirect_uri,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "scope": " ".join(self._cfg.scopes),
        }
        return str(httpx.URL(self._cfg.auth_url, params=params))

    async def exchange_code(self, code: str) -> OAuthTokens:
        resp = await self._request(
            "POST", self._cfg.token_url, "code exchange",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._cfg.client_id,
                "client_secret": self._cfg.client_secret,
                "redirect_uri": self._cfg.redirect_uri,
            },
        )
        payload = resp.json()
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=_expiry(payload),
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        resp = await self._request(
            "POST", self._cfg.token_url, "token refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._cfg.client_id,
                "client_secret": self._cfg.client_secret,
            },
        )
        payload = resp.json()
        if not payload.get("access_token"):
            raise DriveError("Token endpoint returned no access token")
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=_expiry(payload),
        )

    async def get_user_email(self, access_token: str) -> Optional[str]:
        resp = await self._request(
            "GET", self._url("/oauth2/v2/userinfo"), "userinfo", headers=self._auth(access_token)
        )
        return resp.json().get("email")
