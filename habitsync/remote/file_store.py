"""Directory-backed object store, for shared folders and tests"""

import asyncio
import hashlib
import os
from pathlib import Path, PurePosixPath
from typing import Optional
import logging

import aiofiles
import aiofiles.os

from ..errors import NetworkError, StorageError, VersionConflict
from .store import ObjectStore, RemoteObject

logger = logging.getLogger(__name__)


def content_token(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class FileObjectStore(ObjectStore):
    """
    Objects are files under a root directory
    The version token is the SHA-256 of the content; the compare-and-write
    is serialized within this process
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or '..' in relative.parts:
            raise StorageError(f"Invalid object path: {path}")
        return self.root.joinpath(*relative.parts)

    async def _read(self, target: Path) -> Optional[bytes]:
        if not await aiofiles.os.path.exists(target):
            return None
        try:
            async with aiofiles.open(target, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise NetworkError(f"Failed to read {target}: {e}") from e

    async def get(self, path: str) -> Optional[RemoteObject]:
        content = await self._read(self._resolve(path))
        if content is None:
            return None
        return RemoteObject(content=content, version_token=content_token(content))

    async def put(self, path: str, content: bytes,
                  version_token: Optional[str] = None) -> str:
        target = self._resolve(path)

        async with self._lock:
            current = await self._read(target)

            if current is not None:
                current_token = content_token(current)
                if version_token != current_token:
                    raise VersionConflict(
                        f"{path} changed (expected {version_token}, found {current_token})"
                    )
            elif version_token is not None:
                raise VersionConflict(f"{path} was removed since it was read")

            tmp_target = target.with_name(f".{target.name}.{os.getpid()}.tmp")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_target, 'wb') as f:
                    await f.write(content)
                await aiofiles.os.replace(tmp_target, target)
            except OSError as e:
                raise NetworkError(f"Failed to write {path}: {e}") from e

        new_token = content_token(content)
        logger.debug(f"Wrote {len(content)} bytes to {path} ({new_token[:12]})")
        return new_token
