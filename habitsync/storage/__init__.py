from .blob_store import BlobStore, FileBlobStore, MemoryBlobStore
from .secure_store import SecureStore
from .watcher import LocalChangeWatcher

__all__ = [
    'BlobStore',
    'FileBlobStore',
    'MemoryBlobStore',
    'SecureStore',
    'LocalChangeWatcher'
]
