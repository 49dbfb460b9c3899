"""Room directory for the p2pmsg client.

This module handles the set of rooms the local user knows about:
- The always-present personal room
- Joined rooms (added by explicit join or from an invite)
- Rename / remove / read-marker updates
- Snapshot persistence to TOML (tomlkit) and v1 -> v2 migration
- Wholesale reload when another client rewrites the snapshot
"""

from __future__ import annotations

import logging

import tomlkit

from .constants import SCHEMA_VERSION, STORAGE_KEY_ROOMS
from .events import Listener, Notice, null_listener
from .models import Room, RoomKind, personal_room
from .storage import SnapshotStorage, StorageFullError
from .util import sanitize_room_id


def parse_rooms_snapshot(text: str | None) -> tuple[list[Room], bool]:
    """Parse a rooms snapshot.

    Returns (rooms, needs_rewrite). The personal room is always first and
    always present. ``needs_rewrite`` is True when the snapshot predates the
    current schema or had to be repaired.
    """
    if not text:
        return [personal_room()], False

    try:
        data = tomlkit.parse(text).unwrap()
    except Exception:
        return [personal_room()], False

    if not isinstance(data, dict):
        return [personal_room()], False

    version = data.get("version")
    needs_rewrite = version != SCHEMA_VERSION

    records = data.get("rooms")
    if not isinstance(records, list):
        return [personal_room()], needs_rewrite

    personal = personal_room()
    rooms: list[Room] = [personal]
    seen: set[tuple[str, str]] = {personal.identity}

    for rec in records:
        room = Room.from_record(rec)
        if room is None or sanitize_room_id(room.id) != room.id:
            needs_rewrite = True
            continue

        if room.identity == personal.identity:
            # Only the read marker of the personal room is user state.
            personal.last_read = max(personal.last_read, room.last_read)
            if room.kind != RoomKind.PERSONAL or room.secret:
                needs_rewrite = True
            continue

        if room.kind == RoomKind.PERSONAL:
            room.kind = RoomKind.JOINED
            needs_rewrite = True

        if room.identity in seen:
            needs_rewrite = True
            continue

        seen.add(room.identity)
        rooms.append(room)

    if version is None:
        # v1 snapshots had no kind/last_read fields; defaults were applied above.
        needs_rewrite = True

    return rooms, needs_rewrite


def dump_rooms_snapshot(rooms: list[Room]) -> str:
    doc = tomlkit.document()
    doc.add(tomlkit.comment("p2pmsg room directory (maintained by p2pmsg)"))
    doc["version"] = SCHEMA_VERSION

    aot = tomlkit.aot()
    for room in rooms:
        tbl = tomlkit.table()
        for k, v in room.to_record().items():
            tbl[k] = v
        aot.append(tbl)
    doc["rooms"] = aot
    return tomlkit.dumps(doc)


def diff_summary(old: list[Room], new: list[Room]) -> list[str]:
    """Generate human-readable summary of directory changes."""
    old_ids = {r.identity: r for r in old}
    new_ids = {r.identity: r for r in new}
    added = sorted(r.id for k, r in new_ids.items() if k not in old_ids)
    removed = sorted(r.id for k, r in old_ids.items() if k not in new_ids)
    renamed = sorted(
        r.id for k, r in new_ids.items() if k in old_ids and old_ids[k].name != r.name
    )

    lines: list[str] = []
    if added:
        preview = ", ".join(added[:10])
        suffix = "" if len(added) <= 10 else f" (+{len(added) - 10} more)"
        lines.append(f"rooms_added={len(added)}: {preview}{suffix}")
    if removed:
        preview = ", ".join(removed[:10])
        suffix = "" if len(removed) <= 10 else f" (+{len(removed) - 10} more)"
        lines.append(f"rooms_removed={len(removed)}: {preview}{suffix}")
    if renamed:
        lines.append(f"rooms_renamed={len(renamed)}: {', '.join(renamed[:10])}")
    return lines


class RoomDirectory:
    """Known rooms, their secrets and read markers."""

    def __init__(self, storage: SnapshotStorage, listener: Listener = null_listener) -> None:
        self.storage = storage
        self.log = logging.getLogger("p2pmsg.rooms")
        self._listener = listener
        self._rooms: list[Room] = [personal_room()]

    @property
    def personal(self) -> Room:
        return self._rooms[0]

    def list(self) -> list[Room]:
        return list(self._rooms)

    def __len__(self) -> int:
        return len(self._rooms)

    def get(self, room_id: str, owner: str = "") -> Room | None:
        for room in self._rooms:
            if room.id == room_id and room.owner == owner:
                return room
        return None

    def find(self, room_id: str) -> list[Room]:
        """All rooms with this id, across owners."""
        return [r for r in self._rooms if r.id == room_id]

    def contains(self, room: Room) -> bool:
        return self.get(room.id, room.owner) is not None

    def load(self) -> None:
        text = self.storage.get_item(STORAGE_KEY_ROOMS)
        rooms, needs_rewrite = parse_rooms_snapshot(text)
        self._rooms = rooms
        self.log.info("Loaded room directory rooms=%s", len(rooms))
        if needs_rewrite and text:
            self.log.info("Migrating room directory to schema v%s", SCHEMA_VERSION)
            self.persist()

    def add(self, room: Room) -> Room:
        """Add a joined room, or refresh name/secret of an existing one."""
        if room.kind == RoomKind.PERSONAL or room.identity == self.personal.identity:
            raise ValueError("the personal room cannot be added")
        if sanitize_room_id(room.id) != room.id or not room.id:
            raise ValueError(f"invalid room id {room.id!r}")

        existing = self.get(room.id, room.owner)
        if existing is not None:
            changed = False
            if room.secret != existing.secret:
                existing.secret = room.secret
                changed = True
            if room.name and room.name != existing.name:
                existing.name = room.name
                changed = True
            if changed:
                self.persist()
            return existing

        self._rooms.append(room)
        self.log.info("Room added id=%s owner=%s private=%s", room.id, room.owner or "-", bool(room.secret))
        self.persist()
        return room

    def remove(self, room: Room) -> bool:
        if room.kind == RoomKind.PERSONAL or room.identity == self.personal.identity:
            raise ValueError("the personal room cannot be removed")
        existing = self.get(room.id, room.owner)
        if existing is None:
            return False
        self._rooms.remove(existing)
        self.log.info("Room removed id=%s owner=%s", room.id, room.owner or "-")
        self.persist()
        return True

    def rename(self, room: Room, name: str) -> Room:
        clean = name.strip() if isinstance(name, str) else ""
        if not clean:
            raise ValueError("room name must not be empty")
        existing = self.get(room.id, room.owner)
        if existing is None:
            raise KeyError(room.id)
        if existing.name != clean:
            existing.name = clean
            self.persist()
        return existing

    def mark_read(self, room: Room, ts: int, *, persist: bool = True) -> None:
        existing = self.get(room.id, room.owner)
        if existing is None or ts <= existing.last_read:
            return
        existing.last_read = int(ts)
        if persist:
            self.persist()

    def snapshot(self) -> str:
        return dump_rooms_snapshot(self._rooms)

    def persist(self) -> bool:
        try:
            self.storage.set_item(STORAGE_KEY_ROOMS, self.snapshot())
        except StorageFullError as e:
            self.log.warning("Room directory not saved: %s", e)
            self._listener(Notice("Storage full, room list not saved."))
            return False
        except OSError as e:
            self.log.warning("Room directory persist failed: %s", e)
            self._listener(Notice(f"Room list persist failed: {e}"))
            return False
        return True

    def on_external_snapshot_changed(self, text: str | None) -> list[str]:
        """Replace local state from a snapshot another client wrote."""
        old = self._rooms
        rooms, _ = parse_rooms_snapshot(text)
        self._rooms = rooms
        summary = diff_summary(old, rooms)
        if summary:
            self.log.info("Room directory reloaded: %s", "; ".join(summary))
        return summary

