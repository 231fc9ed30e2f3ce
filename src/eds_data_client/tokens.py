import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from eds_data_client.db.nodes.node_orm import StorageNodeORM
from eds_data_client.exceptions import DriveError, NodeTokenError, VaultError
from eds_data_client.repositories.drive_repository import DriveRepository
from eds_data_client.repositories.pg_repositoryNode import NodeRepository
from eds_data_client.vault import TokenVault

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NodeTokenProvider:
    """Hands out a usable access token per node, refreshing it shortly before it expires."""

    def __init__(
        self,
        node_repo: NodeRepository,
        vault: TokenVault,
        drive: DriveRepository,
        refresh_buffer_seconds: int = 300,
    ):
        self._nodes = node_repo
        self._vault = vault
        self._drive = drive
        self._buffer = timedelta(seconds=refresh_buffer_seconds)

    async def get_valid_access_token(self, node_id: UUID) -> str:
        node = await self._nodes.get_orm(node_id)
        if not node or not node.is_active:
            raise NodeTokenError(node_id, f"Storage node {node_id} is missing or inactive")

        expires_at = as_utc(node.token_expires_at)
        if expires_at is not None and expires_at - self._buffer <= datetime.now(timezone.utc):
            return await self._refresh(node)

        try:
            return self._vault.decrypt(node.access_token_encrypted)
        except VaultError as e:
            raise NodeTokenError(node_id, f"Cannot decrypt access token of node {node_id}") from e

    async def _refresh(self, node: StorageNodeORM) -> str:
        logger.info(f"Refreshing access token for node {node.id}")
        try:
            refresh_token = self._vault.decrypt(node.refresh_token_encrypted)
            tokens = await self._drive.refresh_access_token(refresh_token)
        except (VaultError, DriveError) as e:
            logger.warning(f"Token refresh failed for node {node.id}: {e}")
            raise NodeTokenError(node.id) from e

        await self._nodes.update_tokens(
            node.id,
            access_token_encrypted=self._vault.encrypt(tokens.access_token),
            token_expires_at=tokens.expires_at,
            refresh_token_encrypted=self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
        )
        return tokens.access_token
