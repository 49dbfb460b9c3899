"""Keyed snapshot storage shared between clients ("tabs").

Two backends:

- MemoryStorage: in-process. Several views can share one backing dict, and a
  write through one view is delivered to the subscribers of every other view.
- FileStorage: one file per key in a directory. Writes are atomic
  (temp file + os.replace). Changes made by other processes are picked up
  by ``poll()``, which the service calls from a watcher thread.
"""

from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Callable

ChangeCallback = Callable[[str, "str | None"], None]


class StorageFullError(OSError):
    """The write would exceed the storage quota."""


class SnapshotStorage:
    needs_polling = False

    def get_item(self, key: str) -> str | None:
        raise NotImplementedError

    def set_item(self, key: str, text: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def subscribe(self, callback: ChangeCallback | None) -> None:
        raise NotImplementedError

    def poll(self) -> int:
        return 0


def _size(text: str | None) -> int:
    return len(text.encode("utf-8")) if text else 0


class _SharedItems:
    def __init__(self, max_bytes: int) -> None:
        self.items: dict[str, str] = {}
        self.max_bytes = int(max_bytes)
        self.views: list[MemoryStorage] = []
        self.lock = threading.RLock()


class MemoryStorage(SnapshotStorage):
    def __init__(self, max_bytes: int = 0, *, _shared: _SharedItems | None = None) -> None:
        self._shared = _shared if _shared is not None else _SharedItems(max_bytes)
        self._subscriber: ChangeCallback | None = None
        with self._shared.lock:
            self._shared.views.append(self)

    @property
    def max_bytes(self) -> int:
        return self._shared.max_bytes

    @max_bytes.setter
    def max_bytes(self, value: int) -> None:
        self._shared.max_bytes = int(value)

    def open_tab(self) -> MemoryStorage:
        """Return another view onto the same items (a second browser tab)."""
        return MemoryStorage(_shared=self._shared)

    def get_item(self, key: str) -> str | None:
        with self._shared.lock:
            return self._shared.items.get(key)

    def set_item(self, key: str, text: str) -> None:
        with self._shared.lock:
            items = self._shared.items
            limit = self._shared.max_bytes
            if limit > 0:
                used = sum(_size(v) for k, v in items.items() if k != key)
                if used + _size(text) > limit:
                    raise StorageFullError(f"quota exceeded writing {key!r}")
            if items.get(key) == text:
                return
            items[key] = text
            others = [v for v in self._shared.views if v is not self]

        for view in others:
            view._deliver(key, text)

    def remove_item(self, key: str) -> None:
        with self._shared.lock:
            if key not in self._shared.items:
                return
            self._shared.items.pop(key, None)
            others = [v for v in self._shared.views if v is not self]

        for view in others:
            view._deliver(key, None)

    def subscribe(self, callback: ChangeCallback | None) -> None:
        self._subscriber = callback

    def close(self) -> None:
        self._subscriber = None
        with self._shared.lock:
            if self in self._shared.views:
                self._shared.views.remove(self)

    def _deliver(self, key: str, text: str | None) -> None:
        cb = self._subscriber
        if cb is not None:
            cb(key, text)


class FileStorage(SnapshotStorage):
    needs_polling = True

    def __init__(self, directory: str | Path, max_bytes: int = 0) -> None:
        self.directory = Path(directory)
        self.max_bytes = int(max_bytes)
        self.log = logging.getLogger("p2pmsg.storage")
        self._subscriber: ChangeCallback | None = None
        # Last content this process wrote or observed, per key.
        self._seen: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"invalid storage key {key!r}")
        return self.directory / f"{key}.toml"

    def _read(self, key: str) -> str | None:
        p = self._path(key)
        try:
            return p.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            self.log.warning("Could not read %s: %s", p, e)
            return None

    def get_item(self, key: str) -> str | None:
        text = self._read(key)
        with self._lock:
            self._seen[key] = text
        return text

    def _used_bytes(self, exclude: str) -> int:
        used = 0
        try:
            entries = list(self.directory.glob("*.toml"))
        except OSError:
            return 0
        for p in entries:
            if p.stem == exclude:
                continue
            try:
                used += p.stat().st_size
            except OSError:
                continue
        return used

    def set_item(self, key: str, text: str) -> None:
        p = self._path(key)
        if self.max_bytes > 0 and self._used_bytes(key) + _size(text) > self.max_bytes:
            raise StorageFullError(f"quota exceeded writing {key!r}")

        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(f".{p.name}.{os.getpid()}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, p)
        except OSError as e:
            try:
                tmp.unlink()
            except OSError:
                pass
            if e.errno == errno.ENOSPC:
                raise StorageFullError(str(e)) from e
            raise

        with self._lock:
            self._seen[key] = text

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        with self._lock:
            self._seen[key] = None

    def subscribe(self, callback: ChangeCallback | None) -> None:
        self._subscriber = callback

    def poll(self) -> int:
        """Deliver changes written by other processes. Returns the number delivered."""
        keys: set[str] = set()
        try:
            keys.update(p.stem for p in self.directory.glob("*.toml"))
        except OSError:
            pass
        with self._lock:
            keys.update(self._seen.keys())

        changed: list[tuple[str, str | None]] = []
        for key in sorted(keys):
            text = self._read(key)
            with self._lock:
                if key in self._seen and self._seen[key] == text:
                    continue
                first_sight = key not in self._seen
                self._seen[key] = text
            if first_sight and text is None:
                continue
            changed.append((key, text))

        cb = self._subscriber
        if cb is not None:
            for key, text in changed:
                cb(key, text)
        return len(changed)


class StorageWatcher:
    """Background poller that feeds changes from other processes to the storage subscriber."""

    def __init__(
        self,
        storage: SnapshotStorage,
        *,
        interval_s: float = 1.0,
        lock: threading.RLock | None = None,
    ) -> None:
        self.storage = storage
        self.interval_s = max(0.05, float(interval_s))
        self.log = logging.getLogger("p2pmsg.storage")
        self._lock = lock
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="p2pmsg-storage-watch",
            daemon=True,
        )
        self._thread.start()

    def poll_once(self) -> int:
        if self._lock is None:
            return self.storage.poll()
        with self._lock:
            return self.storage.poll()

    def _poll_loop(self) -> None:
        while not self._shutdown.wait(self.interval_s):
            try:
                n = self.poll_once()
            except Exception:
                self.log.exception("Storage poll failed")
                continue
            if n:
                self.log.debug("Storage poll delivered %s change(s)", n)

    def stop(self) -> None:
        self._shutdown.set()
        t, self._thread = self._thread, None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
