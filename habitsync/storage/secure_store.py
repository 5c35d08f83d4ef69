"""JSON values on top of a blob store, optionally encrypted"""

import json
from typing import Any, Optional
import logging

from ..crypto.cipher import LocalCipher
from ..errors import EncryptionError, StorageError
from .blob_store import BlobStore

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "encrypted_"


class SecureStore:
    """
    Stores JSON-serializable values under string keys
    Encrypted values live under ``encrypted_<key>`` so both kinds can
    share one blob store
    """

    def __init__(self, blobs: BlobStore, cipher: Optional[LocalCipher] = None):
        self.blobs = blobs
        self.cipher = cipher

    def _storage_key(self, key: str, encrypted: bool) -> str:
        return f"{ENCRYPTED_PREFIX}{key}" if encrypted else key

    def _check_cipher(self, encrypted: bool):
        if encrypted and self.cipher is None:
            raise EncryptionError("No cipher configured for encrypted storage")

    def set_item(self, key: str, value: Any, encrypted: bool = True) -> None:
        self._check_cipher(encrypted)

        try:
            serialized = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not serializable: {e}") from e

        if encrypted:
            payload = self.cipher.encrypt(serialized)
        else:
            payload = serialized

        self.blobs.set_blob(self._storage_key(key, encrypted), payload.encode('utf-8'))

    def get_item(self, key: str, encrypted: bool = True) -> Optional[Any]:
        self._check_cipher(encrypted)

        raw = self.blobs.get_blob(self._storage_key(key, encrypted))
        if raw is None:
            return None

        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise StorageError(f"Stored value for {key} is not UTF-8: {e}") from e

        if encrypted:
            text = self.cipher.decrypt(text)

        try:
            return json.loads(text)
        except ValueError as e:
            raise StorageError(f"Stored value for {key} is not valid JSON: {e}") from e

    def remove_item(self, key: str, encrypted: bool = True) -> None:
        self.blobs.remove_blob(self._storage_key(key, encrypted))

    def storage_key(self, key: str, encrypted: bool = True) -> str:
        """Blob key that holds ``key``"""
        return self._storage_key(key, encrypted)
