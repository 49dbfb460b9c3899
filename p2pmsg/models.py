"""Value types shared by the directory, store, engine and manager."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .constants import PERSONAL_ROOM_ID, PERSONAL_ROOM_NAME


class RoomKind(str, Enum):
    PERSONAL = "personal"
    JOINED = "joined"


@dataclass
class Room:
    id: str
    name: str
    secret: str = ""
    kind: RoomKind = RoomKind.JOINED
    owner: str = ""
    last_read: int = 0

    @property
    def is_personal(self) -> bool:
        return self.kind == RoomKind.PERSONAL

    @property
    def identity(self) -> tuple[str, str]:
        return (self.id, self.owner)

    @property
    def key(self) -> str:
        """Message-store key. Owner-less rooms key by bare id."""
        if not self.owner:
            return self.id
        return f"{self.id}@{self.owner}"

    def to_record(self) -> dict[str, Any]:
        rec: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "last_read": int(self.last_read),
        }
        if self.secret:
            rec["secret"] = self.secret
        if self.owner:
            rec["owner"] = self.owner
        return rec

    @classmethod
    def from_record(cls, rec: Any) -> Room | None:
        """Build a Room from a persisted record; None if the record is unusable."""
        if not isinstance(rec, dict):
            return None

        room_id = rec.get("id")
        if not isinstance(room_id, str) or not room_id:
            return None

        name = rec.get("name")
        if not isinstance(name, str) or not name.strip():
            name = room_id

        secret = rec.get("secret")
        if not isinstance(secret, str):
            # v1 snapshots stored the secret as "password"
            secret = rec.get("password") if isinstance(rec.get("password"), str) else ""

        try:
            kind = RoomKind(rec.get("kind", RoomKind.JOINED.value))
        except ValueError:
            kind = RoomKind.JOINED

        owner = rec.get("owner")
        if not isinstance(owner, str):
            owner = ""

        try:
            last_read = int(rec.get("last_read", 0) or 0)
        except (TypeError, ValueError):
            last_read = 0

        return cls(
            id=room_id,
            name=name,
            secret=secret or "",
            kind=kind,
            owner=owner,
            last_read=max(0, last_read),
        )


def personal_room() -> Room:
    return Room(
        id=PERSONAL_ROOM_ID,
        name=PERSONAL_ROOM_NAME,
        kind=RoomKind.PERSONAL,
    )


@dataclass(frozen=True)
class ChatMessage:
    text: str
    sender: str
    timestamp: int
    is_own: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "sender": self.sender,
            "timestamp": int(self.timestamp),
            "is_own": bool(self.is_own),
        }

    @classmethod
    def from_record(cls, rec: Any) -> ChatMessage | None:
        if not isinstance(rec, dict):
            return None
        text = rec.get("text")
        sender = rec.get("sender")
        ts = rec.get("timestamp")
        if not isinstance(text, str) or not isinstance(sender, str):
            return None
        if isinstance(ts, bool) or not isinstance(ts, int) or ts < 0:
            return None
        return cls(
            text=text,
            sender=sender,
            timestamp=ts,
            is_own=bool(rec.get("is_own", False)),
        )


@dataclass
class PeerRecord:
    peer_id: str
    handle: str
    identified_at: float


@dataclass
class Profile:
    handle: str | None
    owner_id: str
