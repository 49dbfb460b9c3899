"""Bounded per-room message history with snapshot persistence."""

from __future__ import annotations

import logging

import tomlkit

from .constants import HISTORY_CAP, SCHEMA_VERSION, STORAGE_KEY_MESSAGES
from .events import Listener, Notice, StorageCleanup, null_listener
from .models import ChatMessage
from .storage import SnapshotStorage, StorageFullError


def parse_messages_snapshot(text: str | None, cap: int = HISTORY_CAP) -> dict[str, list[ChatMessage]]:
    """Parse a messages snapshot; anything unusable degrades to empty."""
    if not text:
        return {}

    try:
        data = tomlkit.parse(text).unwrap()
    except Exception:
        return {}

    if not isinstance(data, dict):
        return {}

    rooms = data.get("rooms")
    if not isinstance(rooms, dict):
        return {}

    out: dict[str, list[ChatMessage]] = {}
    for room_key, records in rooms.items():
        if not isinstance(room_key, str) or not room_key or not isinstance(records, list):
            continue
        msgs = [m for m in (ChatMessage.from_record(r) for r in records) if m is not None]
        if not msgs:
            continue
        out[room_key] = msgs[-cap:] if cap > 0 else msgs
    return out


def dump_messages_snapshot(history: dict[str, list[ChatMessage]]) -> str:
    doc = tomlkit.document()
    doc["version"] = SCHEMA_VERSION

    rooms = tomlkit.table()
    for room_key, msgs in history.items():
        if not msgs:
            continue
        aot = tomlkit.aot()
        for m in msgs:
            tbl = tomlkit.table()
            for k, v in m.to_record().items():
                tbl[k] = v
            aot.append(tbl)
        rooms[room_key] = aot
    doc["rooms"] = rooms
    return tomlkit.dumps(doc)


class MessageStore:
    """
    Per-room message history.

    - Appends are FIFO-capped at ``cap`` entries per room (oldest evicted).
    - Rooms are kept in order of local activity: an append moves its room
      to the end, and the snapshot is written in that order.
    - After every mutation an all-rooms snapshot is written to storage.
    - If storage reports it is full, the oldest message of the least
      recently active room is evicted and the write retried. The message
      that was just appended is never evicted, and the loop is bounded by
      the number of stored messages.
    - Another client's snapshot replaces the local copy wholesale.
    """

    def __init__(
        self,
        storage: SnapshotStorage,
        listener: Listener = null_listener,
        *,
        cap: int = HISTORY_CAP,
    ) -> None:
        self.storage = storage
        self.cap = int(cap)
        self.log = logging.getLogger("p2pmsg.history")
        self._listener = listener
        self._history: dict[str, list[ChatMessage]] = {}
        self.evictions = 0

    def load(self) -> None:
        self._history = parse_messages_snapshot(
            self.storage.get_item(STORAGE_KEY_MESSAGES), self.cap
        )
        self.log.info(
            "Loaded message history rooms=%s messages=%s",
            len(self._history),
            sum(len(v) for v in self._history.values()),
        )

    def history(self, room_key: str) -> list[ChatMessage]:
        return list(self._history.get(room_key, ()))

    def room_keys(self) -> list[str]:
        """Room keys, least recently active first."""
        return list(self._history.keys())

    def snapshot(self) -> dict[str, list[ChatMessage]]:
        return {k: list(v) for k, v in self._history.items()}

    def append(self, room_key: str, message: ChatMessage) -> None:
        # Re-insert so dict order tracks local arrival, not sender timestamps.
        msgs = self._history.pop(room_key, [])
        self._history[room_key] = msgs
        msgs.append(message)
        if self.cap > 0 and len(msgs) > self.cap:
            del msgs[: len(msgs) - self.cap]
        self.persist(keep_newest_of=room_key)

    def drop_room(self, room_key: str) -> bool:
        if self._history.pop(room_key, None) is None:
            return False
        self.persist()
        return True

    def unread_count(self, room_key: str, last_read: int) -> int:
        return sum(
            1
            for m in self._history.get(room_key, ())
            if not m.is_own and m.timestamp > last_read
        )

    def _evict_one(self, keep_newest_of: str | None) -> str | None:
        """Drop the oldest evictable message. Returns its room key, or None."""
        for key, msgs in self._history.items():
            floor = 1 if key == keep_newest_of else 0
            if len(msgs) > floor:
                del msgs[0]
                if not msgs:
                    del self._history[key]
                return key
        return None

    def persist(self, *, keep_newest_of: str | None = None) -> bool:
        """Write the snapshot, evicting old messages while storage is full.

        ``keep_newest_of`` names the room whose last message must survive
        the cleanup (the one just appended).
        """
        evicted_rooms: list[str] = []
        evicted = 0
        attempts = sum(len(v) for v in self._history.values()) + 1
        ok = False

        for _ in range(attempts):
            try:
                self.storage.set_item(STORAGE_KEY_MESSAGES, dump_messages_snapshot(self._history))
                ok = True
                break
            except StorageFullError as e:
                victim = self._evict_one(keep_newest_of)
                if victim is None:
                    self.log.error("Message history not saved, storage full with nothing to evict: %s", e)
                    break
                evicted += 1
                if victim not in evicted_rooms:
                    evicted_rooms.append(victim)
            except OSError as e:
                self.log.warning("Message history persist failed: %s", e)
                self._listener(Notice(f"History persist failed: {e}"))
                return False

        if evicted:
            self.evictions += evicted
            self.log.warning(
                "Storage full, evicted messages=%s rooms=%s saved=%s",
                evicted,
                evicted_rooms,
                ok,
            )
            self._listener(
                StorageCleanup(evicted_rooms=tuple(evicted_rooms), evicted_messages=evicted)
            )
        return ok

    def on_external_snapshot_changed(self, text: str | None) -> set[str]:
        """Replace local history from another client's snapshot.

        Returns the room keys whose content differs from before.
        """
        new = parse_messages_snapshot(text, self.cap)
        old = self._history
        changed = {k for k in set(old) | set(new) if old.get(k, []) != new.get(k, [])}
        self._history = new
        if changed:
            self.log.debug("Message history reloaded changed_rooms=%s", sorted(changed))
        return changed
