from .store import ObjectStore, RemoteObject
from .file_store import FileObjectStore
from .github import GitHubContentStore, RateLimit
from .codec import (
    encode_snapshot, decode_snapshot, encode_text, decode_text,
    looks_mojibake, repair_mojibake
)

__all__ = [
    'ObjectStore',
    'RemoteObject',
    'FileObjectStore',
    'GitHubContentStore',
    'RateLimit',
    'encode_snapshot',
    'decode_snapshot',
    'encode_text',
    'decode_text',
    'looks_mojibake',
    'repair_mojibake'
]
