"""Error taxonomy shared by the sync engine and its adapters"""

from datetime import datetime
from typing import Optional


class SyncError(Exception):
    """Base class for failures surfaced by a sync cycle"""

    kind = "storage"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class AuthError(SyncError):
    """Credential missing, invalid or expired - never retried"""

    kind = "auth"


class NetworkError(SyncError):
    """Transient transport failure"""

    kind = "network"


class RateLimited(SyncError):
    """Remote store quota exhausted until reset_at"""

    kind = "rate_limit"

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at


class VersionConflict(SyncError):
    """Write rejected because the version token is stale"""

    kind = "version_conflict"


class EncodingError(SyncError):
    """Remote content could not be decoded as a dataset snapshot"""

    kind = "encoding"


class StorageError(SyncError):
    """Local storage failure, or an exhausted retry budget"""

    kind = "storage"


class EncryptionError(StorageError):
    """Local encryption or decryption failed"""


class ResolutionMismatch(ValueError):
    """Number of resolutions differs from number of conflicts"""
