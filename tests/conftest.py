import json
import itertools
from datetime import datetime
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from eds_data_client import EDSClient, create_data_client
from eds_data_client.config import DataClientConfig, PostgresConfig, QuotaConfig, VaultConfig
from eds_data_client.vault import TokenVault

VAULT_KEY = TokenVault.generate_key()


class FakeDrive:
    """
    In-memory stand-in for the Drive REST API and the OAuth token endpoint,
    served through httpx.MockTransport.
    """

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.requests: list[httpx.Request] = []
        self.rejected_tokens: set[str] = set()
        self.fail_uploads = False
        self.fail_refresh = False
        self.quota = {"limit": "1000", "usage": "100"}
        self.email = "new-node@example.com"
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")

        if request.url.host == "oauth2.googleapis.com":
            return self._token_endpoint(request)
        if token in self.rejected_tokens:
            return httpx.Response(401, json={"error": "invalid_credentials"})

        if path == "/drive/v3/about":
            return httpx.Response(200, json={"storageQuota": self.quota})
        if path == "/oauth2/v2/userinfo":
            return httpx.Response(200, json={"email": self.email})
        if path == "/upload/drive/v3/files":
            upload_type = request.url.params.get("uploadType")
            if upload_type == "resumable":
                n = next(self._ids)
                return httpx.Response(200, headers={"Location": f"https://upload.example/session/{n}"})
            if self.fail_uploads:
                return httpx.Response(500, text="backend exploded")
            file_id = f"gfile-{next(self._ids)}"
            self.files[file_id] = request.content
            return httpx.Response(200, json={"id": file_id})
        if path.startswith("/drive/v3/files/"):
            file_id = path.rsplit("/", 1)[-1]
            if request.method == "DELETE":
                self.deleted.append(file_id)
                if self.files.pop(file_id, None) is None:
                    return httpx.Response(404, json={"error": "notFound"})
                return httpx.Response(204)
            if file_id not in self.files:
                return httpx.Response(404, json={"error": "notFound"})
            return httpx.Response(200, content=self.files[file_id])
        return httpx.Response(404)

    def _token_endpoint(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        if form.get("grant_type") == "refresh_token":
            if self.fail_refresh:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "refreshed-token", "expires_in": 3600})
        if form.get("grant_type") == "authorization_code":
            return httpx.Response(200, json={
                "access_token": "linked-access",
                "refresh_token": "linked-refresh",
                "expires_in": 3600,
            })
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path and r.content]


@pytest.fixture
def drive_backend() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def client_config(tmp_path) -> DataClientConfig:
    """
    File-backed SQLite so that concurrent transactions get their own connections.
    """
    return DataClientConfig(
        postgres=PostgresConfig(dsn=f"sqlite+aiosqlite:///{tmp_path}/eds.db"),
        quota=QuotaConfig(reservation_ttl_seconds=3600, sweep_interval_seconds=0.05, max_node_attempts=3),
        vault=VaultConfig(encryption_key=VAULT_KEY),
    )


@pytest_asyncio.fixture(scope="function")
async def eds_client(client_config, drive_backend) -> EDSClient:
    """
    A fully wired client on an empty database, talking to the fake backend.
    """
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(drive_backend.handler))
    client = create_data_client(client_config, http_client=http_client)
    await client.create_tables()
    yield client
    await client.aclose()
    await http_client.aclose()


@pytest.fixture
def quota(eds_client):
    return eds_client.quota


@pytest.fixture
def make_node(eds_client):
    """Factory: creates a node with the given counters and returns its id."""
    counter = itertools.count(1)

    async def _make(
        total: int,
        used: int = 0,
        active: bool = True,
        token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        email: Optional[str] = None,
    ):
        n = next(counter)
        node = await eds_client.nodes.create(
            email=email or f"node{n}@example.com",
            access_token_encrypted=eds_client.vault.encrypt(token or f"token-{n}"),
            refresh_token_encrypted=eds_client.vault.encrypt(f"refresh-{n}"),
            token_expires_at=token_expires_at,
            total_space=total,
            used_space=used,
        )
        if not active:
            await eds_client.nodes.set_active(node.id, False)
        return node.id

    return _make
