"""Local durable key/value stores for serialized blobs"""

import hashlib
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
import logging

from ..errors import StorageError

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r'^[A-Za-z0-9_.-]+$')


class BlobStore(ABC):
    """Opaque get/set/remove of byte blobs, synchronous"""

    @abstractmethod
    def get_blob(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def set_blob(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def remove_blob(self, key: str) -> None:
        ...


class MemoryBlobStore(BlobStore):
    """In-process store, used for tests and ephemeral replicas"""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def get_blob(self, key: str) -> Optional[bytes]:
        return self.blobs.get(key)

    def set_blob(self, key: str, data: bytes) -> None:
        self.blobs[key] = bytes(data)

    def remove_blob(self, key: str) -> None:
        self.blobs.pop(key, None)


class FileBlobStore(BlobStore):
    """
    One file per key inside a directory
    Writes go through a temp file and an atomic replace; the digest of
    every blob this instance wrote is remembered so that changes made by
    other processes can be detected
    """

    SUFFIX = ".blob"

    def __init__(self, directory: Path):
        self.directory = Path(directory).resolve()
        self.directory.mkdir(parents=True, exist_ok=True)

        try:
            os.chmod(self.directory, 0o700)
        except OSError as e:
            logger.debug(f"Could not restrict permissions on {self.directory}: {e}")

        self._written: Dict[str, str] = {}

    def path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"

    def key_for(self, path: Path) -> Optional[str]:
        path = Path(path).resolve()
        if path.parent != self.directory or path.suffix != self.SUFFIX:
            return None
        return path.stem

    def get_blob(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def set_blob(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(path.suffix + '.tmp')

        try:
            with open(tmp_path, 'wb') as f:
                f.write(data)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

        self._written[key] = hashlib.sha256(data).hexdigest()
        logger.debug(f"Stored {len(data)} bytes under {key}")

    def remove_blob(self, key: str) -> None:
        path = self.path_for(key)
        self._written.pop(key, None)

        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove {key}: {e}") from e

    def changed_externally(self, key: str) -> bool:
        """True when the blob on disk differs from what this instance last wrote"""
        data = self.get_blob(key)
        if data is None:
            return key in self._written
        return hashlib.sha256(data).hexdigest() != self._written.get(key)
