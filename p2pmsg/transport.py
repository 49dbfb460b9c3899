"""Transport port consumed by the presence engine.

A transport opens one session per (topic, secret). Peers that opened a
session with the same topic and secret can reach each other; a different
secret under the same topic cannot. Discovery, link encryption and per-peer
ordered delivery are the transport's job.
Sessions may also offer ``should_initiate(peer_id)`` and
``send_to(peer_id, data)``; the presence engine uses them when present.

``LoopbackNetwork`` is an in-process transport. It queues every delivery and
hands them out from ``run_pending()``, which plays the role of the event loop.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable

PayloadCallback = Callable[[str, bytes], None]
PeerCallback = Callable[[str], None]


class TransportError(Exception):
    """A session could not be opened or a payload could not be sent."""


class Session:
    def broadcast(self, data: bytes) -> None:
        raise NotImplementedError

    def on_payload(self, callback: PayloadCallback) -> None:
        raise NotImplementedError

    def on_peer_connect(self, callback: PeerCallback) -> None:
        raise NotImplementedError

    def on_peer_disconnect(self, callback: PeerCallback) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class Transport:
    def open_session(self, topic: str, secret: str | None = None) -> Session:
        raise NotImplementedError

    def shutdown(self) -> None:
        return None


def _seq(peer_id: str) -> int:
    try:
        return int(peer_id.rsplit("-", 1)[-1])
    except ValueError:
        return 0


class LoopbackSession(Session):
    def __init__(self, network: LoopbackNetwork, peer_id: str, topic: str, secret: str | None) -> None:
        self.network = network
        self.peer_id = peer_id
        self.topic = topic
        self.secret = secret
        self.closed = False
        self.fail_broadcast = False
        self._on_payload: PayloadCallback | None = None
        self._on_connect: PeerCallback | None = None
        self._on_disconnect: PeerCallback | None = None

    def broadcast(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("session closed")
        if self.fail_broadcast:
            raise TransportError("broadcast failed")
        self.network._broadcast(self, bytes(data))

    def send_to(self, peer_id: str, data: bytes) -> None:
        if self.closed:
            raise TransportError("session closed")
        if self.fail_broadcast:
            raise TransportError("send failed")
        self.network._send_to(self, peer_id, bytes(data))

    def should_initiate(self, peer_id: str) -> bool:
        """The newer side of a pair sends the HELLO."""
        return _seq(self.peer_id) > _seq(peer_id)

    def on_payload(self, callback: PayloadCallback) -> None:
        self._on_payload = callback

    def on_peer_connect(self, callback: PeerCallback) -> None:
        self._on_connect = callback
        # In autorun mode, connects queued at open wait for this callback.
        self.network._maybe_run()

    def on_peer_disconnect(self, callback: PeerCallback) -> None:
        self._on_disconnect = callback

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.network._detach(self)

    def _deliver_payload(self, sender: str, data: bytes) -> None:
        if not self.closed and self._on_payload is not None:
            self._on_payload(sender, data)

    def _deliver_connect(self, peer_id: str) -> None:
        if not self.closed and self._on_connect is not None:
            self._on_connect(peer_id)

    def _deliver_disconnect(self, peer_id: str) -> None:
        if not self.closed and self._on_disconnect is not None:
            self._on_disconnect(peer_id)


class LoopbackNetwork:
    """Shared medium for loopback transports."""

    def __init__(self, *, autorun: bool = False) -> None:
        self.autorun = autorun
        self.log = logging.getLogger("p2pmsg.transport.loopback")
        self.fail_open = False
        self.sent: list[tuple[str, bytes]] = []
        self._groups: dict[tuple[str, str | None], list[LoopbackSession]] = {}
        self._pending: deque[Callable[[], None]] = deque()
        self._next_id = 0
        self._lock = threading.RLock()
        self._running = False

    def transport(self) -> LoopbackTransport:
        return LoopbackTransport(self)

    def open_sessions(self) -> list[LoopbackSession]:
        with self._lock:
            return [s for group in self._groups.values() for s in group]

    def _open(self, topic: str, secret: str | None) -> LoopbackSession:
        with self._lock:
            if self.fail_open:
                raise TransportError(f"cannot reach signaling for topic {topic[:12]}")
            self._next_id += 1
            sess = LoopbackSession(self, f"peer-{self._next_id}", topic, secret)
            group = self._groups.setdefault((topic, secret or None), [])
            for other in group:
                self._pending.append(lambda o=other, s=sess: o._deliver_connect(s.peer_id))
                self._pending.append(lambda o=other, s=sess: s._deliver_connect(o.peer_id))
            group.append(sess)
            self.log.debug("Session opened peer_id=%s topic=%s", sess.peer_id, topic[:12])
        return sess

    def _detach(self, sess: LoopbackSession) -> None:
        with self._lock:
            key = (sess.topic, sess.secret or None)
            group = self._groups.get(key, [])
            if sess in group:
                group.remove(sess)
            if not group:
                self._groups.pop(key, None)
            for other in group:
                self._pending.append(lambda o=other, s=sess: o._deliver_disconnect(s.peer_id))
            self.log.debug("Session closed peer_id=%s", sess.peer_id)
        self._maybe_run()

    def _broadcast(self, sess: LoopbackSession, data: bytes) -> None:
        with self._lock:
            self.sent.append((sess.peer_id, data))
            for other in self._groups.get((sess.topic, sess.secret or None), []):
                if other is sess:
                    continue
                self._pending.append(lambda o=other, s=sess: o._deliver_payload(s.peer_id, data))
        self._maybe_run()

    def _send_to(self, sess: LoopbackSession, peer_id: str, data: bytes) -> None:
        with self._lock:
            self.sent.append((sess.peer_id, data))
            for other in self._groups.get((sess.topic, sess.secret or None), []):
                if other.peer_id == peer_id and other is not sess:
                    self._pending.append(lambda o=other, s=sess: o._deliver_payload(s.peer_id, data))
        self._maybe_run()

    def _maybe_run(self) -> None:
        if self.autorun:
            self.run_pending()

    def run_pending(self, limit: int = 10_000) -> int:
        """Deliver queued events in order. Returns the number delivered."""
        with self._lock:
            if self._running:
                return 0
            self._running = True
        delivered = 0
        try:
            while delivered < limit:
                with self._lock:
                    if not self._pending:
                        break
                    fn = self._pending.popleft()
                fn()
                delivered += 1
        finally:
            with self._lock:
                self._running = False
        return delivered


class LoopbackTransport(Transport):
    def __init__(self, network: LoopbackNetwork) -> None:
        self.network = network

    def open_session(self, topic: str, secret: str | None = None) -> Session:
        return self.network._open(topic, secret)
