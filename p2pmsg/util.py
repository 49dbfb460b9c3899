from __future__ import annotations

import html
import os
import re
import secrets
import string
import time

from .constants import HANDLE_MAX_CHARS, HANDLE_MIN_CHARS, ROOM_ID_MAX_CHARS

_ROOM_ID_BAD = re.compile(r"[^a-z0-9-]")
_ROOM_ID_ALPHABET = string.ascii_lowercase + string.digits


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_handle(value) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if len(s) < HANDLE_MIN_CHARS or len(s) > HANDLE_MAX_CHARS:
        return None

    # Embedded newlines or NUL break transcript lines and log output.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def validate_handle(value) -> bool:
    return normalize_handle(value) is not None


def sanitize_room_id(value) -> str:
    if not isinstance(value, str) or not value:
        return ""
    return _ROOM_ID_BAD.sub("-", value.strip().lower())[:ROOM_ID_MAX_CHARS]


def validate_room_id(value) -> bool:
    s = sanitize_room_id(value)
    return 1 <= len(s) <= ROOM_ID_MAX_CHARS


def generate_room_id() -> str:
    return "room-" + "".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(7))


def generate_owner_id() -> str:
    return secrets.token_hex(8)


def escape_html(text) -> str:
    if not text:
        return ""
    return html.escape(str(text), quote=True).replace("&#x27;", "&#039;")


def get_initials(name) -> str:
    if not isinstance(name, str) or not name.strip():
        return "??"
    return "".join(part[0] for part in name.strip().split(" ") if part)[:2].upper()


def truncate(text, length: int = 50):
    if not text or len(text) <= length:
        return text
    return text[:length] + "..."


def format_time(timestamp_ms) -> str:
    try:
        return time.strftime("%H:%M", time.localtime(int(timestamp_ms) / 1000.0))
    except (TypeError, ValueError, OverflowError, OSError):
        return "--:--"
