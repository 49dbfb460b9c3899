"""Shareable invite links.

An invite is a URL whose fragment carries ``room``, and optionally ``pass``
(the room secret), ``name`` (a suggested handle for the invitee) and
``creator`` (the owner id that disambiguates same-named rooms).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

from .models import Room
from .util import normalize_handle, sanitize_room_id

_OWNER_RE = re.compile(r"[0-9a-f]{1,64}")


@dataclass(frozen=True)
class Invite:
    room: str
    secret: str = ""
    name: str = ""
    creator: str = ""


def build_invite_url(base: str, room: Room, *, handle: str | None = None) -> str:
    params: list[tuple[str, str]] = [("room", room.id)]
    if room.secret:
        params.append(("pass", room.secret))
    if handle:
        params.append(("name", handle))
    if room.owner:
        params.append(("creator", room.owner))
    return f"{base.split('#', 1)[0]}#{urlencode(params)}"


def parse_invite(value: str | None) -> Invite | None:
    """Parse an invite URL or bare fragment. Returns None without a usable room."""
    if not value:
        return None

    fragment = urlsplit(value).fragment if "#" in value else value
    fragment = fragment.lstrip("#")
    if not fragment:
        return None

    params = parse_qs(fragment, keep_blank_values=True)

    def first(key: str) -> str:
        vals = params.get(key) or [""]
        return vals[0].strip()

    room = sanitize_room_id(first("room"))
    if not room:
        return None

    creator = first("creator").lower()

    return Invite(
        room=room,
        secret=first("pass"),
        name=normalize_handle(first("name")) or "",
        creator=creator if _OWNER_RE.fullmatch(creator) else "",
    )
