from __future__ import annotations

import logging
import threading

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .config import ClientRuntimeConfig
from .constants import STORAGE_KEY_ACTIVE, STORAGE_KEY_MESSAGES, STORAGE_KEY_PROFILE, STORAGE_KEY_ROOMS
from .events import (
    ActiveRoomChanged,
    Event,
    HistoryChanged,
    Listener,
    MessageReceived,
    PresenceChanged,
    ProfileChanged,
    RoomsChanged,
    StorageCleanup,
    null_listener,
)
from .history import MessageStore
from .invite import Invite, build_invite_url
from .manager import RoomSessionManager
from .models import ChatMessage, PeerRecord, Profile, Room
from .rooms import RoomDirectory
from .stats import StatsManager
from .storage import SnapshotStorage, StorageFullError, StorageWatcher
from .transcript import TranscriptView, render_message, render_system
from .transport import Transport
from .util import generate_owner_id, normalize_handle, sanitize_room_id


class AmbiguousRoomError(ValueError):
    """A bare room id matches rooms from more than one owner."""

    def __init__(self, room_id: str, keys: list[str]) -> None:
        super().__init__(f"#{room_id} is ambiguous; use one of: {', '.join(keys)}")
        self.room_id = room_id
        self.keys = keys


def parse_profile(text: str | None) -> Profile:
    if not text:
        return Profile(handle=None, owner_id="")
    try:
        data = tomlkit.parse(text).unwrap()
    except TOMLKitError:
        return Profile(handle=None, owner_id="")
    handle = normalize_handle(data.get("handle"))
    owner = data.get("owner_id")
    return Profile(handle=handle, owner_id=owner if isinstance(owner, str) else "")


def dump_profile(profile: Profile) -> str:
    doc = tomlkit.document()
    if profile.handle:
        doc["handle"] = profile.handle
    doc["owner_id"] = profile.owner_id
    return tomlkit.dumps(doc)


def event_line(event: Event, active_key: str) -> str | None:
    """Transcript line for an event, or None when it is not shown."""
    if isinstance(event, MessageReceived):
        if event.room_key is not None and event.room_key != active_key:
            return None
        return render_message(event.message)
    if isinstance(event, (PresenceChanged, HistoryChanged, ProfileChanged)):
        return None
    return render_system(event.text())


class ChatService:
    """
    The p2pmsg client as a whole.

    This class is responsible for:
    - Loading and saving the profile, room directory and message history
    - Owning the state lock shared with transport callbacks
    - Routing user operations to the room session manager
    - Applying snapshots written by other clients on the same storage
    - Keeping the transcript view for the active room
    """

    def __init__(
        self,
        config: ClientRuntimeConfig,
        *,
        storage: SnapshotStorage,
        transport: Transport,
        listener: Listener = null_listener,
        lock: threading.RLock | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("p2pmsg.service")

        # Transport callbacks arrive on other threads and share this lock.
        self._state_lock = lock or threading.RLock()

        self.storage = storage
        self.transport = transport
        self._listener = listener

        self.stats_manager = StatsManager()
        self.profile = Profile(handle=None, owner_id="")
        self.directory = RoomDirectory(storage, self._emit)
        self.store = MessageStore(storage, self._emit, cap=config.history_cap)
        self.manager = RoomSessionManager(
            transport,
            self.directory,
            self.store,
            self._emit,
            app_id=config.app_id,
            stats=self.stats_manager,
        )
        self.transcript = TranscriptView(config.transcript_height)

        self._watcher: StorageWatcher | None = None
        self._loaded = False
        self._started = False

    @property
    def state_lock(self) -> threading.RLock:
        return self._state_lock

    @property
    def active_room(self) -> Room:
        return self.manager.active_room

    @property
    def handle(self) -> str | None:
        return self.profile.handle

    def _emit(self, event: Event) -> None:
        if isinstance(event, ActiveRoomChanged):
            self.transcript.rebuild_from(self.store.history(event.room.key))
            self.transcript.scroll_to_bottom()
        elif isinstance(event, StorageCleanup):
            self.stats_manager.inc("storage_evictions", event.evicted_messages)

        line = event_line(event, self.manager.active_room.key)
        if line is not None:
            self.transcript.append_line(line)
        self._listener(event)

    # State

    def load_state(self) -> None:
        with self._state_lock:
            if self._loaded:
                return
            self.directory.load()
            self.store.load()
            self.profile = parse_profile(self.storage.get_item(STORAGE_KEY_PROFILE))
            if not self.profile.owner_id:
                self.profile.owner_id = generate_owner_id()
                self._save_profile()
            self._loaded = True

    def _save_profile(self) -> None:
        try:
            self.storage.set_item(STORAGE_KEY_PROFILE, dump_profile(self.profile))
        except (StorageFullError, OSError) as e:
            self.log.warning("Profile not saved: %s", e)

    def _save_active(self) -> None:
        room = self.manager.active_room
        doc = tomlkit.document()
        doc["room"] = room.id
        doc["owner"] = room.owner
        try:
            self.storage.set_item(STORAGE_KEY_ACTIVE, tomlkit.dumps(doc))
        except (StorageFullError, OSError) as e:
            self.log.warning("Active room not saved: %s", e)

    def _restore_active(self) -> Room:
        text = self.storage.get_item(STORAGE_KEY_ACTIVE)
        if not text:
            return self.directory.personal
        try:
            data = tomlkit.parse(text).unwrap()
        except TOMLKitError:
            return self.directory.personal
        rid = data.get("room")
        owner = data.get("owner") or ""
        if not isinstance(rid, str) or not isinstance(owner, str):
            return self.directory.personal
        return self.directory.get(rid, owner) or self.directory.personal

    # Lifecycle

    def start(self, invite: Invite | None = None) -> None:
        with self._state_lock:
            if self._started:
                return
            self.load_state()
            self.stats_manager.set_start_time()

            handle = normalize_handle(self.config.handle) or self.profile.handle
            if handle is None and invite is not None and invite.name:
                handle = invite.name
            if handle is None:
                raise RuntimeError("handle is not set")
            if handle != self.profile.handle:
                self.profile.handle = handle
                self._save_profile()
            self.manager.set_local_handle(handle)

            self.storage.subscribe(self.on_external_change)
            if self.storage.needs_polling:
                self._watcher = StorageWatcher(
                    self.storage,
                    interval_s=self.config.storage_poll_interval_s,
                    lock=self._state_lock,
                )
                self._watcher.start()

            self._started = True
            self.log.info(
                "Client started handle=%s rooms=%s owner_id=%s",
                handle,
                len(self.directory),
                self.profile.owner_id,
            )

            if invite is not None:
                self.manager.join_invite(invite)
            else:
                self.manager.switch_to(self._restore_active())
            self._save_active()

    def stop(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.stop()

        with self._state_lock:
            self.storage.subscribe(None)
            self.manager.stop()
            self._started = False

        try:
            self.transport.shutdown()
        except Exception:
            self.log.exception("Transport shutdown failed")
        self.log.info("Client stopped")

    # Operations

    def send(self, text: str) -> ChatMessage | None:
        with self._state_lock:
            msg = self.manager.send_to_active_room(text)
            if msg is not None:
                self.transcript.append_line(render_message(msg))
            return msg

    def join(self, room_id: str, *, secret: str = "", name: str | None = None) -> Room:
        with self._state_lock:
            room = self.manager.join(room_id, secret=secret, name=name)
            self._save_active()
            return room

    def join_invite(self, invite: Invite) -> Room:
        with self._state_lock:
            room = self.manager.join_invite(invite)
            self._save_active()
            return room

    def resolve_room(self, name: str) -> Room:
        """Find a joined room by ``id`` or by its ``id@owner`` key.

        Raises KeyError when nothing matches and AmbiguousRoomError when a
        bare id is shared by rooms with different owners.
        """
        text = (name or "").strip().lstrip("#")
        rid, sep, owner = text.partition("@")
        rid = sanitize_room_id(rid)
        if sep:
            with self._state_lock:
                room = self.directory.get(rid, owner.strip().lower())
            if room is None:
                raise KeyError(text)
            return room

        with self._state_lock:
            candidates = self.directory.find(rid)
        if not candidates:
            raise KeyError(rid)
        if len(candidates) > 1:
            raise AmbiguousRoomError(rid, [r.key for r in candidates])
        return candidates[0]

    def switch(self, name: str) -> Room:
        with self._state_lock:
            room = self.manager.switch_to(self.resolve_room(name))
            self._save_active()
            return room

    def leave(self) -> Room:
        with self._state_lock:
            room = self.manager.active_room
            self.manager.leave(room)
            self._save_active()
            return room

    def rename(self, name: str) -> Room:
        with self._state_lock:
            return self.manager.rename_active(name)

    def set_handle(self, value: str) -> str:
        handle = normalize_handle(value)
        if handle is None:
            raise ValueError("handle must be 2-20 characters")
        with self._state_lock:
            if handle == self.profile.handle:
                return handle
            self.profile.handle = handle
            self._save_profile()
            self.manager.set_local_handle(handle)
            self._emit(ProfileChanged(handle))
            return handle

    def invite_url(self, *, suggested_name: str | None = None) -> str:
        with self._state_lock:
            room = self.manager.active_room
            if room.is_personal:
                raise ValueError("the personal room cannot be shared")
            return build_invite_url(self.config.invite_base_url, room, handle=suggested_name)

    def room_summaries(self) -> list[tuple[Room, int]]:
        with self._state_lock:
            return [
                (room, self.store.unread_count(room.key, room.last_read))
                for room in self.directory.list()
            ]

    def peers(self) -> list[PeerRecord]:
        with self._state_lock:
            engine = self.manager.engine
            return engine.peers() if engine is not None else []

    def format_stats(self) -> str:
        with self._state_lock:
            return self.stats_manager.format_stats(
                active_room=self.manager.active_room.id,
                peer_count=self.manager.get_peer_count(),
            )

    # Changes from other clients

    def on_external_change(self, key: str, text: str | None) -> None:
        """Apply a snapshot another client wrote. Never writes storage."""
        with self._state_lock:
            if key == STORAGE_KEY_ROOMS:
                summary = self.directory.on_external_snapshot_changed(text)
                self.manager.reconcile_rooms()
                if summary:
                    self._emit(RoomsChanged(tuple(summary)))
            elif key == STORAGE_KEY_MESSAGES:
                changed = self.store.on_external_snapshot_changed(text)
                active_key = self.manager.active_room.key
                if active_key in changed:
                    self.transcript.rebuild_from(self.store.history(active_key))
                for room_key in sorted(changed):
                    self._emit(HistoryChanged(room_key))
            elif key == STORAGE_KEY_PROFILE:
                profile = parse_profile(text)
                if profile.owner_id:
                    self.profile.owner_id = profile.owner_id
                if profile.handle and profile.handle != self.profile.handle:
                    self.profile.handle = profile.handle
                    self.manager.set_local_handle(profile.handle)
                    self._emit(ProfileChanged(profile.handle))
            else:
                self.log.debug("Ignoring external change key=%s", key)
