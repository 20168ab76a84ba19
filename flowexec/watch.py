import os
from typing import TYPE_CHECKING

import anyio
import structlog
from anyio.from_thread import BlockingPortal
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path
    from types import TracebackType

    from watchdog.events import FileSystemEvent
    from watchdog.observers.api import BaseObserver

logger = structlog.get_logger(__name__)


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: "DirectoryWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: "FileSystemEvent") -> None:
        if event.is_directory or event.event_type not in ("created", "moved"):
            return

        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = os.fsdecode(path)

        if os.path.basename(path).endswith(self.watcher.suffixes):
            self.watcher.notify_from_thread()


class DirectoryWatcher:
    """
    Wakes pollers of a directory as soon as a file with one of the watched suffixes
    appears in it. Filesystem events arrive on watchdog's observer thread and are
    handed to the event loop through a blocking portal.

    Usage: take a `mark()` before scanning the directory, then `wait(mark,
    timeout)` after the scan. A change that happens during the scan is not lost.
    When disabled, `wait` simply sleeps for the timeout.
    """

    def __init__(
        self, directory: "Path", suffixes: tuple[str, ...], enabled: bool = True
    ) -> None:
        self.directory = directory
        self.suffixes = suffixes
        self.enabled = enabled
        self._changed: anyio.Event | None = None
        self._portal: BlockingPortal | None = None
        self._observer: "BaseObserver | None" = None

    async def __aenter__(self) -> "DirectoryWatcher":
        self._changed = anyio.Event()
        if not self.enabled:
            return self

        self._portal = await BlockingPortal().__aenter__()

        observer = Observer()
        observer.schedule(_ChangeHandler(self), str(self.directory), recursive=False)
        try:
            observer.start()
        except OSError as e:
            # e.g. inotify watch limits; fall back to plain polling
            logger.warning(
                "directory watch unavailable", path=str(self.directory), error=str(e)
            )
            await self._portal.__aexit__(None, None, None)
            self._portal = None
            return self

        self._observer = observer
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: "TracebackType | None",
    ) -> None:
        with anyio.CancelScope(shield=True):
            if self._observer is not None:
                self._observer.stop()
                await anyio.to_thread.run_sync(self._observer.join)
                self._observer = None

            if self._portal is not None:
                await self._portal.__aexit__(None, None, None)
                self._portal = None

    def _notify(self) -> None:
        changed, self._changed = self._changed, anyio.Event()
        if changed is not None:
            changed.set()

    def notify_from_thread(self) -> None:
        if (portal := self._portal) is None:
            return

        try:
            portal.call(self._notify)
        except RuntimeError:
            # the portal is shutting down
            pass

    def mark(self) -> anyio.Event:
        if self._changed is None:
            raise RuntimeError("DirectoryWatcher must be entered before use.")

        return self._changed

    async def wait(self, mark: anyio.Event, timeout: float) -> bool:
        """Wait until a change after `mark` or the timeout. True on change."""
        with anyio.move_on_after(timeout):
            await mark.wait()

        return mark.is_set()
