import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from eds_data_client.config import VaultConfig
from eds_data_client.exceptions import VaultError

logger = logging.getLogger(__name__)


class TokenVault:
    """
    Encrypts node OAuth tokens at rest.
    Without a configured key the vault can be built but every encrypt/decrypt raises VaultError.
    """

    def __init__(self, settings: VaultConfig):
        self._fernet: Optional[Fernet] = None
        if settings.encryption_key:
            try:
                self._fernet = Fernet(settings.encryption_key.encode())
            except ValueError as e:
                raise VaultError(f"Invalid vault key: {e}") from e

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise VaultError("VAULT__ENCRYPTION_KEY is not set.")
        return self._fernet

    def encrypt(self, plain: str) -> str:
        return self._require().encrypt(plain.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        fernet = self._require()
        try:
            return fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt node token. Check that VAULT__ENCRYPTION_KEY matches.")
            raise VaultError("Token decryption failed.") from e
