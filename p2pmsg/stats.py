"""Statistics tracking and reporting for the p2pmsg client."""

from __future__ import annotations

import threading
import time


class StatsManager:
    """
    Counters for the running client.

    Tracks:
    - Handshake payloads sent (HELLO / HELLO_ACK)
    - Chat payloads in/out
    - Quarantined (malformed or unknown) payloads
    - Transport errors
    - Storage evictions
    - Sessions opened
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_monotonic: float | None = None
        self._counters: dict[str, int] = {
            "hellos_sent": 0,
            "hello_acks_sent": 0,
            "chats_in": 0,
            "chats_out": 0,
            "payloads_bad": 0,
            "payloads_unknown": 0,
            "transport_errors": 0,
            "storage_evictions": 0,
            "sessions_opened": 0,
        }

    def set_start_time(self) -> None:
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def format_stats(self, *, active_room: str | None = None, peer_count: int | None = None) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        with self._lock:
            c = dict(self._counters)

        lines: list[str] = []
        lines.append(f"p2pmsg {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        if active_room is not None:
            lines.append(f"room={active_room} peers={peer_count if peer_count is not None else '-'}")
        lines.append(
            "handshake: hellos_sent={} acks_sent={} sessions_opened={}".format(
                c.get("hellos_sent", 0),
                c.get("hello_acks_sent", 0),
                c.get("sessions_opened", 0),
            )
        )
        lines.append(
            "chat: in={} out={} bad={} unknown={}".format(
                c.get("chats_in", 0),
                c.get("chats_out", 0),
                c.get("payloads_bad", 0),
                c.get("payloads_unknown", 0),
            )
        )
        lines.append(
            "errors: transport={} storage_evictions={}".format(
                c.get("transport_errors", 0),
                c.get("storage_evictions", 0),
            )
        )
        return "\n".join(lines)
