"""Room session lifecycle for the p2pmsg client."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum

from .constants import APP_ID, CHAT_MAX_BYTES
from .envelope import now_ms
from .events import (
    ActiveRoomChanged,
    ConnectionFailed,
    Event,
    Listener,
    MessageReceived,
    Notice,
    PresenceChanged,
    RoomsChanged,
)
from .history import MessageStore
from .invite import Invite
from .models import ChatMessage, Room, RoomKind
from .presence import PresenceEngine
from .rooms import RoomDirectory
from .stats import StatsManager
from .transport import Session, Transport, TransportError
from .util import sanitize_room_id, validate_room_id


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"


@dataclass
class SessionHandle:
    room: Room
    topic: str
    session: Session | None = None
    engine: PresenceEngine | None = None


def derive_topic(app_id: str, room: Room) -> str:
    """Transport topic for a room; distinct owners yield distinct topics."""
    h = hashlib.sha256()
    for part in (app_id, room.id, room.owner):
        h.update(part.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


class RoomSessionManager:
    """
    Owns the single active room session.

    This class is responsible for:
    - Switching rooms (old session torn down before a new one is opened)
    - Keeping the personal room local-only
    - Storing sent and received messages under the active room
    - Leaving rooms and reconciling with directory changes from other clients
    - Converting transport failures into events
    """

    def __init__(
        self,
        transport: Transport,
        directory: RoomDirectory,
        store: MessageStore,
        listener: Listener,
        *,
        local_handle: str = "",
        app_id: str = APP_ID,
        stats: StatsManager | None = None,
    ) -> None:
        self.transport = transport
        self.directory = directory
        self.store = store
        self.app_id = app_id
        self.local_handle = local_handle
        self.stats = stats or StatsManager()
        self.log = logging.getLogger("p2pmsg.manager")
        self._listener = listener
        self.state = SessionState.IDLE
        self._handle: SessionHandle | None = None
        self.active_room: Room = directory.personal
        self.peer_count = 1

    @property
    def session_handle(self) -> SessionHandle | None:
        return self._handle

    @property
    def engine(self) -> PresenceEngine | None:
        return self._handle.engine if self._handle is not None else None

    def _emit(self, event: Event) -> None:
        if isinstance(event, PresenceChanged):
            self.peer_count = event.count
        self._listener(event)

    def _on_engine_event(self, handle: SessionHandle, event: Event) -> None:
        # Events from an engine that is no longer the active one are stale.
        if handle is not self._handle:
            return
        if isinstance(event, MessageReceived):
            room_key = handle.room.key
            self.store.append(room_key, event.message)
            event = MessageReceived(event.message, room_key)
        self._emit(event)

    def _teardown(self) -> None:
        handle, self._handle = self._handle, None
        self.state = SessionState.IDLE
        if handle is None:
            return
        owned = handle.engine is not None and handle.engine.running
        if handle.engine is not None:
            handle.engine.stop()
        if handle.session is not None and not owned:
            try:
                handle.session.close()
            except (TransportError, OSError) as e:
                self.log.warning("Session close failed room=%s: %s", handle.room.id, e)
        self.log.info("Session closed room=%s", handle.room.id)

    def switch_to(self, room: Room, *, mark_read: bool = True) -> Room:
        """Make ``room`` the active room. Returns the room actually active.

        The old session is always torn down before a new one is opened. If
        the transport cannot open a session the client falls back to the
        personal room and a ConnectionFailed event follows.
        """
        self._teardown()
        self._activate(room, mark_read=mark_read)

        if room.kind == RoomKind.PERSONAL:
            self.log.info("Switched to personal room")
            return room

        error = self._open(room)
        if error is not None:
            self._activate(self.directory.personal, mark_read=mark_read)
            self._emit(ConnectionFailed(error))
        return self.active_room

    def _activate(self, room: Room, *, mark_read: bool) -> None:
        self.active_room = room
        if mark_read:
            self.directory.mark_read(room, now_ms())
        self._emit(PresenceChanged(1))
        self._emit(ActiveRoomChanged(room))

    def _open(self, room: Room) -> str | None:
        topic = derive_topic(self.app_id, room)
        handle = SessionHandle(room=room, topic=topic)
        self._handle = handle
        self.state = SessionState.CONNECTING
        self.log.info("Connecting room=%s topic=%s private=%s", room.id, topic[:12], bool(room.secret))

        try:
            handle.session = self.transport.open_session(topic, room.secret or None)
            handle.engine = PresenceEngine(
                lambda ev, h=handle: self._on_engine_event(h, ev),
                stats=self.stats,
            )
            if room.secret:
                self._emit(Notice("Encryption active."))
            self._emit(Notice(f"Looking for peers in #{room.id}..."))
            handle.engine.start(handle.session, self.local_handle)
        except Exception as e:
            self.stats.inc("transport_errors")
            self.log.warning("Could not open session room=%s: %s", room.id, e)
            self._teardown()
            return str(e) or type(e).__name__

        self.stats.inc("sessions_opened")
        if self._handle is handle:
            self.state = SessionState.ACTIVE
        return None

    def send_to_active_room(self, text: str) -> ChatMessage | None:
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            return None
        size = len(text.encode("utf-8"))
        if size > CHAT_MAX_BYTES:
            self._emit(Notice(f"Message too long ({size} bytes, limit {CHAT_MAX_BYTES})."))
            return None

        room = self.active_room
        engine = self.engine
        if room.kind == RoomKind.PERSONAL or engine is None:
            msg = ChatMessage(text=text, sender=self.local_handle, timestamp=now_ms(), is_own=True)
        else:
            msg = engine.send(text)

        self.store.append(room.key, msg)
        return msg

    def join(
        self,
        room_id: str,
        *,
        name: str | None = None,
        secret: str = "",
        owner: str = "",
    ) -> Room:
        rid = sanitize_room_id(room_id)
        if not validate_room_id(rid):
            raise ValueError(f"invalid room id {room_id!r}")
        if rid == self.directory.personal.id and not owner:
            return self.switch_to(self.directory.personal)

        existing = self.directory.get(rid, owner or "")
        if existing is not None:
            room = self.directory.add(
                Room(
                    id=rid,
                    name=(name or "").strip() or existing.name,
                    secret=secret or existing.secret,
                    owner=existing.owner,
                )
            )
        else:
            room = self.directory.add(
                Room(id=rid, name=(name or "").strip() or rid, secret=secret or "", owner=owner or "")
            )
            self._emit(RoomsChanged((f"rooms_added=1: {rid}",)))
        return self.switch_to(room)

    def join_invite(self, invite: Invite) -> Room:
        return self.join(invite.room, secret=invite.secret, owner=invite.creator)

    def leave(self, room: Room) -> None:
        if room.kind == RoomKind.PERSONAL:
            raise ValueError("the personal room cannot be left")

        if self.active_room.identity == room.identity:
            self.switch_to(self.directory.personal)

        if self.directory.remove(room):
            self.store.drop_room(room.key)
            self._emit(RoomsChanged((f"rooms_removed=1: {room.id}",)))
            self.log.info("Left room=%s", room.id)

    def rename_active(self, name: str) -> Room:
        room = self.directory.rename(self.active_room, name)
        self.active_room = room
        self._emit(RoomsChanged((f"rooms_renamed=1: {room.id}",)))
        return room

    def set_local_handle(self, handle: str) -> None:
        self.local_handle = handle
        engine = self.engine
        if engine is not None:
            engine.set_local_handle(handle)

    def reconcile_rooms(self) -> None:
        """Re-bind to the directory after another client replaced it."""
        current = self.directory.get(self.active_room.id, self.active_room.owner)
        if current is None:
            self.log.info("Active room=%s removed elsewhere; switching to personal", self.active_room.id)
            self._emit(Notice(f"#{self.active_room.id} was removed in another window."))
            self.switch_to(self.directory.personal, mark_read=False)
            return

        # Name or read-marker edits do not touch the live session.
        self.active_room = current
        if self._handle is not None:
            self._handle.room = current

    def get_peer_count(self) -> int:
        engine = self.engine
        return engine.get_peer_count() if engine is not None else 1

    def stop(self) -> None:
        self._teardown()
        self.active_room = self.directory.personal
        self.peer_count = 1
