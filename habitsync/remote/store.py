"""Remote object store contract"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class RemoteObject:
    """Stored content plus the token a conditional write must present"""
    content: bytes
    version_token: str


class ObjectStore(ABC):
    """
    Single-object store with optimistic concurrency
    put() raises VersionConflict when the supplied token is stale, or when
    no token is supplied and the object already exists
    """

    @abstractmethod
    async def get(self, path: str) -> Optional[RemoteObject]:
        """Return the object, or None when it does not exist"""

    @abstractmethod
    async def put(self, path: str, content: bytes,
                  version_token: Optional[str] = None) -> str:
        """Write the object and return its new version token"""

    async def close(self):
        """Release transport resources"""
