from __future__ import annotations

import logging
import time

from .codec import decode, encode
from .constants import T_CHAT, T_HELLO, T_HELLO_ACK
from .envelope import (
    Chat,
    Hello,
    HelloAck,
    UnknownPayloadError,
    make_envelope,
    now_ms,
    parse_payload,
)
from .events import (
    ConnectionFailed,
    Listener,
    MessageReceived,
    Notice,
    PeerConnected,
    PeerFound,
    PeerJoined,
    PeerLeft,
    PresenceChanged,
)
from .models import ChatMessage, PeerRecord
from .stats import StatsManager
from .transport import Session, TransportError
from .util import normalize_handle

UNKNOWN_HANDLE = "Peer"


class SessionAlreadyBoundError(RuntimeError):
    """start() was called on an engine that already owns a session."""


def display_handle(value) -> str:
    return normalize_handle(value) or UNKNOWN_HANDLE


class PresenceEngine:
    """
    Presence and handshake for one transport session.

    This class is responsible for:
    - Running the HELLO / HELLO_ACK handshake with each transport peer
    - Keeping the roster of identified peers (PeerRecords)
    - Deriving the self-inclusive peer count
    - Turning chat payloads into MessageReceived events
    - Quarantining malformed or unknown payloads

    The listener is fixed at construction. Callbacks that arrive after
    ``stop()`` are ignored.
    """

    def __init__(self, listener: Listener, *, stats: StatsManager | None = None) -> None:
        self.log = logging.getLogger("p2pmsg.presence")
        self._listener = listener
        self.stats = stats or StatsManager()
        self.local_handle = ""
        self._session: Session | None = None
        self._stopped = False
        self._peers: dict[str, PeerRecord] = {}
        self._hello_sent: set[str] = set()

    @property
    def running(self) -> bool:
        return self._session is not None and not self._stopped

    def start(self, session: Session, local_handle: str) -> None:
        if self._session is not None or self._stopped:
            raise SessionAlreadyBoundError("presence engine is already bound to a session")

        self._session = session
        self.local_handle = local_handle
        session.on_payload(self._guard(self.on_payload_received))
        session.on_peer_connect(self._guard(self.on_transport_peer_connected))
        session.on_peer_disconnect(self._guard(self.on_transport_peer_disconnected))
        self.log.debug("Presence engine started handle=%r", local_handle)

    def _guard(self, fn):
        def cb(*args):
            if self._stopped:
                return
            fn(*args)

        return cb

    def _emit(self, event) -> None:
        if not self._stopped:
            self._listener(event)

    def get_peer_count(self) -> int:
        return len(self._peers) + 1

    def peers(self) -> list[PeerRecord]:
        return [
            PeerRecord(peer_id=p.peer_id, handle=p.handle, identified_at=p.identified_at)
            for p in self._peers.values()
        ]

    def _broadcast(self, msg_type: int, body=None, *, peer_id: str | None = None) -> bool:
        """Send a payload to every peer, or only to ``peer_id`` when the session can address one."""
        session = self._session
        if session is None or self._stopped:
            return False
        payload = encode(make_envelope(msg_type, sender=self.local_handle, body=body))
        send_to = getattr(session, "send_to", None) if peer_id is not None else None
        try:
            if send_to is not None:
                send_to(peer_id, payload)
            else:
                session.broadcast(payload)
        except (TransportError, OSError) as e:
            self.stats.inc("transport_errors")
            self.log.warning("Broadcast failed type=%s bytes=%s err=%s", msg_type, len(payload), e)
            self._emit(ConnectionFailed(str(e) or type(e).__name__))
            return False
        return True

    def _should_initiate(self, peer_id: str) -> bool:
        session = self._session
        decide = getattr(session, "should_initiate", None)
        if decide is None:
            return True
        return bool(decide(peer_id))

    def on_transport_peer_connected(self, peer_id: str) -> None:
        self.log.info("Transport peer connected peer_id=%s", peer_id)
        self._emit(PeerFound(peer_id))

        if peer_id in self._peers or peer_id in self._hello_sent:
            return
        if not self._should_initiate(peer_id):
            # The other side opens the handshake for this pair.
            return

        if self._broadcast(T_HELLO, peer_id=peer_id):
            self._hello_sent.add(peer_id)
            self.stats.inc("hellos_sent")

    def _identify(self, peer_id: str, handle: str) -> tuple[bool, str | None]:
        """Create or overwrite the record. Returns (is_new, previous_handle)."""
        rec = self._peers.get(peer_id)
        if rec is None:
            self._peers[peer_id] = PeerRecord(
                peer_id=peer_id, handle=handle, identified_at=time.time()
            )
            return True, None
        previous = rec.handle
        rec.handle = handle
        return False, previous

    def on_payload_received(self, peer_id: str, data: bytes) -> None:
        try:
            payload = parse_payload(decode(data))
        except UnknownPayloadError as e:
            self.stats.inc("payloads_unknown")
            self.log.debug("Quarantined payload peer_id=%s type=%s", peer_id, e.msg_type)
            return
        except Exception as e:
            self.stats.inc("payloads_bad")
            self.log.debug(
                "Bad payload peer_id=%s bytes=%s err=%s",
                peer_id,
                len(data) if isinstance(data, (bytes, bytearray)) else "-",
                e,
            )
            return

        if isinstance(payload, Hello):
            self._handle_hello(peer_id, payload)
        elif isinstance(payload, HelloAck):
            self._handle_hello_ack(peer_id, payload)
        elif isinstance(payload, Chat):
            self._handle_chat(peer_id, payload)

    def _handle_hello(self, peer_id: str, hello: Hello) -> None:
        handle = display_handle(hello.handle)
        is_new, previous = self._identify(peer_id, handle)

        if is_new or previous != handle:
            if self._broadcast(T_HELLO_ACK, peer_id=peer_id):
                self.stats.inc("hello_acks_sent")

        self._emit(PresenceChanged(self.get_peer_count()))
        if is_new:
            self.log.info("Peer joined peer_id=%s handle=%r", peer_id, handle)
            self._emit(PeerJoined(peer_id, handle))
        elif previous != handle:
            self._emit(Notice(f"{previous} is now known as {handle}."))

    def _handle_hello_ack(self, peer_id: str, ack: HelloAck) -> None:
        handle = display_handle(ack.handle)
        is_new, previous = self._identify(peer_id, handle)

        self._emit(PresenceChanged(self.get_peer_count()))
        if is_new:
            self.log.info("Connected to peer peer_id=%s handle=%r", peer_id, handle)
            self._emit(PeerConnected(peer_id, handle))
        elif previous != handle:
            self._emit(Notice(f"{previous} is now known as {handle}."))

    def _handle_chat(self, peer_id: str, chat: Chat) -> None:
        if peer_id not in self._peers:
            self.log.debug("Chat from unidentified peer_id=%s; using payload sender", peer_id)
        self.stats.inc("chats_in")
        msg = ChatMessage(
            text=chat.text,
            sender=display_handle(chat.sender),
            timestamp=chat.ts,
            is_own=False,
        )
        self._emit(MessageReceived(msg))

    def on_transport_peer_disconnected(self, peer_id: str) -> None:
        self._hello_sent.discard(peer_id)
        rec = self._peers.pop(peer_id, None)
        self.log.info(
            "Transport peer disconnected peer_id=%s handle=%r",
            peer_id,
            rec.handle if rec else None,
        )
        self._emit(PresenceChanged(self.get_peer_count()))
        self._emit(PeerLeft(peer_id, rec.handle if rec else None))

    def send(self, text: str) -> ChatMessage:
        msg = ChatMessage(text=text, sender=self.local_handle, timestamp=now_ms(), is_own=True)
        if self._session is None or self._stopped:
            self._emit(ConnectionFailed("not connected"))
            return msg
        payload = encode(make_envelope(T_CHAT, sender=self.local_handle, body=text, ts=msg.timestamp))
        try:
            self._session.broadcast(payload)
            self.stats.inc("chats_out")
        except (TransportError, OSError) as e:
            self.stats.inc("transport_errors")
            self.log.warning("Chat send failed bytes=%s err=%s", len(payload), e)
            self._emit(ConnectionFailed(str(e) or type(e).__name__))
        return msg

    def set_local_handle(self, handle: str) -> None:
        """Change the local handle and re-announce it to identified peers."""
        if handle == self.local_handle:
            return
        self.local_handle = handle
        if self._peers and self._broadcast(T_HELLO):
            self.stats.inc("hellos_sent")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        session, self._session = self._session, None
        self._peers.clear()
        self._hello_sent.clear()
        if session is not None:
            try:
                session.close()
            except (TransportError, OSError) as e:
                self.log.warning("Session close failed: %s", e)
        self.log.debug("Presence engine stopped")
