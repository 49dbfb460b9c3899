"""Events delivered from the core to the notification boundary.

Every component that produces events takes a single listener callable at
construction time. Listeners receive one of the frozen dataclasses below and
can render it with ``text()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

from .models import ChatMessage, Room


@dataclass(frozen=True)
class PeerFound:
    peer_id: str

    def text(self) -> str:
        return "Peer found, shaking hands..."


@dataclass(frozen=True)
class PeerJoined:
    peer_id: str
    handle: str

    def text(self) -> str:
        return f"{self.handle} joined."


@dataclass(frozen=True)
class PeerConnected:
    peer_id: str
    handle: str

    def text(self) -> str:
        return f"Connected to {self.handle}."


@dataclass(frozen=True)
class PeerLeft:
    peer_id: str
    handle: str | None

    def text(self) -> str:
        return f"{self.handle or 'A peer'} left."


@dataclass(frozen=True)
class PresenceChanged:
    count: int

    def text(self) -> str:
        return f"{self.count} Peer{'' if self.count == 1 else 's'}"


@dataclass(frozen=True)
class MessageReceived:
    message: ChatMessage
    room_key: str | None = None

    def text(self) -> str:
        return f"{self.message.sender}: {self.message.text}"


@dataclass(frozen=True)
class ConnectionFailed:
    reason: str

    def text(self) -> str:
        return f"Connection Error: {self.reason}"


@dataclass(frozen=True)
class Notice:
    message: str

    def text(self) -> str:
        return self.message


@dataclass(frozen=True)
class StorageCleanup:
    evicted_rooms: tuple[str, ...] = ()
    evicted_messages: int = 0

    def text(self) -> str:
        return "Storage full, cleaning up old history."


@dataclass(frozen=True)
class ActiveRoomChanged:
    room: Room

    def text(self) -> str:
        return f"Now in #{self.room.id}"


@dataclass(frozen=True)
class RoomsChanged:
    summary: tuple[str, ...] = field(default_factory=tuple)

    def text(self) -> str:
        return "; ".join(self.summary) if self.summary else "Room list updated."


@dataclass(frozen=True)
class HistoryChanged:
    room_key: str

    def text(self) -> str:
        return f"History updated for {self.room_key}"


@dataclass(frozen=True)
class ProfileChanged:
    handle: str | None

    def text(self) -> str:
        return f"Handle is now {self.handle}" if self.handle else "Handle cleared."


Event = Union[
    PeerFound,
    PeerJoined,
    PeerConnected,
    PeerLeft,
    PresenceChanged,
    MessageReceived,
    ConnectionFailed,
    Notice,
    StorageCleanup,
    ActiveRoomChanged,
    RoomsChanged,
    HistoryChanged,
    ProfileChanged,
]

Listener = Callable[[Event], None]


def null_listener(event: Event) -> None:
    return None
