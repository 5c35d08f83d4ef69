"""
storage/watcher.py - Detects dataset changes written by other processes
Filesystem events arrive on the observer thread and are handed to the
event loop
"""

import asyncio
from typing import Callable, Optional, Set
import logging

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import StorageError
from .blob_store import FileBlobStore

logger = logging.getLogger(__name__)


class _BlobEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: 'LocalChangeWatcher'):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        self.watcher.handle_path(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        self.watcher.handle_path(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        # Blob writes land through an atomic rename
        self.watcher.handle_path(event.dest_path)


class LocalChangeWatcher:
    """
    Calls ``callback`` on the event loop whenever a watched blob changes
    on disk and the change was not written by this process
    """

    def __init__(self, blobs: FileBlobStore, keys: Set[str],
                 callback: Callable[[], None]):
        self.blobs = blobs
        self.keys = set(keys)
        self.callback = callback
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        if self._observer is not None:
            return
        self._loop = loop or asyncio.get_running_loop()

        self._observer = Observer()
        self._observer.schedule(_BlobEventHandler(self), str(self.blobs.directory),
                                recursive=False)
        self._observer.start()
        logger.info(f"Watching {self.blobs.directory} for external changes")

    def stop(self):
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)

    def handle_path(self, path) -> bool:
        """Route one filesystem event; returns True if the callback was scheduled"""
        if isinstance(path, bytes):
            path = path.decode('utf-8', errors='replace')

        key = self.blobs.key_for(path)
        if key is None or key not in self.keys:
            return False

        try:
            changed = self.blobs.changed_externally(key)
        except StorageError as e:
            logger.debug(f"Could not inspect {path}: {e}")
            return False

        if not changed:
            return False

        logger.info(f"External change detected in {key}")
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.callback)
        else:
            self.callback()
        return True
