"""Reticulum-backed transport.

Each room session hosts one SINGLE/IN destination named
``p2pmsg.room.<digest>``. The digest covers the topic and the room secret,
so peers with a different secret never find each other. Peers are
discovered through announces. For every pair, only the side with the lower
destination hash opens the RNS.Link, and link packets carry the payloads.

RNS delivers callbacks on its own threads; every callback into the session
owner runs under the lock handed to the transport.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from typing import Any

import RNS

from .codec import encode
from .constants import APP_ID, P2P_VERSION, PAYLOAD_MAX_BYTES
from .transport import PayloadCallback, PeerCallback, Session, Transport, TransportError
from .util import expand_path

APP_NAME = "p2pmsg"


def room_digest(topic: str, secret: str | None) -> str:
    h = hashlib.sha256()
    h.update(topic.encode("utf-8"))
    h.update(b"\x00")
    h.update((secret or "").encode("utf-8"))
    return h.hexdigest()[:32]


def packet_would_fit(link: Any, payload: bytes) -> bool:
    """Check if payload fits within link MDU without creating/packing packets."""
    try:
        if hasattr(link, "MDU") and link.MDU is not None:
            return len(payload) <= link.MDU
        pkt = RNS.Packet(link, payload)
        pkt.pack()
        return True
    except Exception:
        return False


def _fmt_link_id(link: Any) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class RnsSession(Session):
    def __init__(
        self,
        transport: RnsTransport,
        destination: RNS.Destination,
        digest: str,
    ) -> None:
        self.transport = transport
        self.destination = destination
        self.digest = digest
        self.aspect_filter = f"{APP_NAME}.room.{digest}"
        self.log = logging.getLogger("p2pmsg.transport.rns")
        self.closed = False

        self._links: dict[str, RNS.Link] = {}
        self._resources: set[RNS.Resource] = set()
        self._initiated: set[str] = set()
        self._dialing: set[bytes] = set()

        self._on_payload: PayloadCallback | None = None
        self._on_connect: PeerCallback | None = None
        self._on_disconnect: PeerCallback | None = None

        self._stop = threading.Event()
        self._announce_thread: threading.Thread | None = None

    # Session port

    def on_payload(self, callback: PayloadCallback) -> None:
        self._on_payload = callback

    def on_peer_connect(self, callback: PeerCallback) -> None:
        self._on_connect = callback

    def on_peer_disconnect(self, callback: PeerCallback) -> None:
        self._on_disconnect = callback

    def should_initiate(self, peer_id: str) -> bool:
        return peer_id in self._initiated

    def broadcast(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("session closed")

        with self.transport.lock:
            links = list(self._links.items())

        failures = 0
        for peer_id, link in links:
            try:
                self._send_link(link, data)
            except Exception as e:
                failures += 1
                self.log.warning(
                    "Send failed peer_id=%s bytes=%s err=%s", peer_id, len(data), e
                )

        if links and failures == len(links):
            raise TransportError(f"send failed to all {failures} peer(s)")

    def send_to(self, peer_id: str, data: bytes) -> None:
        if self.closed:
            raise TransportError("session closed")
        with self.transport.lock:
            link = self._links.get(peer_id)
        if link is None:
            raise TransportError(f"no link to peer {peer_id[:12]}")
        try:
            self._send_link(link, data)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"send failed: {e}") from e

    def _send_link(self, link: RNS.Link, data: bytes) -> None:
        if packet_would_fit(link, data):
            RNS.Packet(link, data).send()
            return

        limit = self.transport.max_payload_bytes
        if len(data) > limit:
            raise TransportError(f"payload too large: {len(data)} > {limit} bytes")

        resource = RNS.Resource(
            data, link, advertise=True, auto_compress=False, callback=self._outbound_concluded
        )
        with self.transport.lock:
            self._resources.add(resource)
        self.log.debug(
            "Sent resource link_id=%s size=%s", _fmt_link_id(link), len(data)
        )

    def close(self) -> None:
        with self.transport.lock:
            if self.closed:
                return
            self.closed = True
            links = list(self._links.values())
            self._links.clear()
            self._initiated.clear()
            self._dialing.clear()
            self._resources.clear()

        self._stop.set()
        try:
            RNS.Transport.deregister_announce_handler(self)
        except Exception:
            self.log.debug("Announce handler deregistration failed", exc_info=True)

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Link teardown failed link_id=%s", _fmt_link_id(link), exc_info=True)

        self.transport._session_closed(self)
        self.log.info("Room session closed digest=%s", self.digest[:12])

    # Lifecycle

    def start(self) -> None:
        self.destination.set_link_established_callback(self._on_inbound_link)
        RNS.Transport.register_announce_handler(self)
        self._announce_once()

        period = float(self.transport.announce_period_s)
        if period > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="p2pmsg-announce",
                daemon=True,
            )
            self._announce_thread.start()

    def _announce_once(self) -> None:
        try:
            self.destination.announce(app_data=encode({"app": APP_ID, "v": P2P_VERSION}))
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.transport.announce_period_s)
        while not self._stop.wait(period):
            if self.closed:
                break
            self._announce_once()

    # RNS callbacks

    def received_announce(self, destination_hash, announced_identity, app_data) -> None:
        if self.closed or announced_identity is None:
            return
        own = self.destination.hash
        if destination_hash == own:
            return
        # Lower hash dials; the other side waits for the inbound link.
        if bytes(own) > bytes(destination_hash):
            return

        with self.transport.lock:
            if bytes(destination_hash) in self._dialing:
                return
            self._dialing.add(bytes(destination_hash))

        try:
            out = RNS.Destination(
                announced_identity,
                RNS.Destination.OUT,
                RNS.Destination.SINGLE,
                APP_NAME,
                "room",
                self.digest,
            )
            RNS.Link(
                out,
                established_callback=self._on_outbound_link,
                closed_callback=self._on_link_closed,
            )
            self.log.debug("Dialing peer dest=%s", bytes(destination_hash).hex()[:12])
        except Exception as e:
            with self.transport.lock:
                self._dialing.discard(bytes(destination_hash))
            self.log.warning("Could not open link dest=%s: %s", bytes(destination_hash).hex()[:12], e)

    def _on_inbound_link(self, link: RNS.Link) -> None:
        if self.closed:
            try:
                link.teardown()
            except Exception:
                pass
            return
        link.set_link_closed_callback(self._on_link_closed)
        self._attach(link, initiated=False)

    def _on_outbound_link(self, link: RNS.Link) -> None:
        if self.closed:
            try:
                link.teardown()
            except Exception:
                pass
            return
        self._attach(link, initiated=True)

    def _attach(self, link: RNS.Link, *, initiated: bool) -> None:
        peer_id = _fmt_link_id(link)
        link.set_packet_callback(lambda data, pkt: self._on_packet(peer_id, data))
        link.set_resource_strategy(RNS.Link.ACCEPT_APP)
        link.set_resource_callback(self._resource_advertised)
        link.set_resource_concluded_callback(lambda res: self._resource_concluded(peer_id, res))

        with self.transport.lock:
            if self.closed:
                return
            self._links[peer_id] = link
            if initiated:
                self._initiated.add(peer_id)
            cb = self._on_connect
            self.log.info("Link established peer_id=%s initiated=%s", peer_id, initiated)
            if cb is not None:
                cb(peer_id)

    def _on_packet(self, peer_id: str, data: bytes) -> None:
        with self.transport.lock:
            if self.closed or peer_id not in self._links:
                return
            cb = self._on_payload
            if cb is not None:
                cb(peer_id, bytes(data))

    def _outbound_concluded(self, resource: RNS.Resource) -> None:
        with self.transport.lock:
            self._resources.discard(resource)
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Outbound resource failed link_id=%s status=%s",
                _fmt_link_id(resource.link),
                resource.status,
            )

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        limit = self.transport.max_payload_bytes
        if self.closed or size > limit:
            self.log.warning(
                "Rejecting resource size=%s limit=%s link_id=%s",
                size,
                limit,
                _fmt_link_id(resource.link),
            )
            return False
        return True

    def _resource_concluded(self, peer_id: str, resource: RNS.Resource) -> None:
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed peer_id=%s status=%s", peer_id, resource.status
            )
            return

        try:
            data = resource.data.read() if hasattr(resource.data, "read") else resource.data
        except Exception as e:
            self.log.error("Failed to read resource data peer_id=%s: %s", peer_id, e)
            return
        if len(data) > self.transport.max_payload_bytes:
            self.log.warning("Dropping oversize resource peer_id=%s size=%s", peer_id, len(data))
            return
        self._on_packet(peer_id, bytes(data))

    def _on_link_closed(self, link: RNS.Link) -> None:
        peer_id = _fmt_link_id(link)
        with self.transport.lock:
            if self.closed:
                return
            known = self._links.pop(peer_id, None) is not None
            self._initiated.discard(peer_id)
            dest = getattr(link, "destination", None)
            dest_hash = getattr(dest, "hash", None)
            if isinstance(dest_hash, (bytes, bytearray)):
                self._dialing.discard(bytes(dest_hash))
            cb = self._on_disconnect
            self.log.info("Link closed peer_id=%s", peer_id)
            if known and cb is not None:
                cb(peer_id)


class RnsTransport(Transport):
    """Opens room sessions on a Reticulum instance."""

    def __init__(
        self,
        *,
        configdir: str | None = None,
        identity_path: str | None = None,
        lock: threading.RLock | None = None,
        announce_period_s: float = 300.0,
        max_payload_bytes: int = PAYLOAD_MAX_BYTES,
    ) -> None:
        self.configdir = configdir
        self.identity_path = identity_path
        self.lock = lock or threading.RLock()
        self.announce_period_s = announce_period_s
        self.max_payload_bytes = int(max_payload_bytes)
        self.log = logging.getLogger("p2pmsg.transport.rns")
        self.identity: RNS.Identity | None = None
        self._reticulum: RNS.Reticulum | None = None
        self._destinations: dict[str, RNS.Destination] = {}
        self._sessions: list[RnsSession] = []

    def start(self) -> None:
        if self._reticulum is not None:
            return
        self.log.info("Starting Reticulum")
        self._reticulum = RNS.Reticulum(configdir=self.configdir, require_shared_instance=False)
        self.identity = self._load_identity(self.identity_path)

    def _load_identity(self, path: str | None) -> RNS.Identity:
        if not path:
            return RNS.Identity()
        p = expand_path(path)
        if os.path.exists(p):
            ident = RNS.Identity.from_file(p)
            if ident is None:
                raise RuntimeError(f"Could not load identity from {p}")
            return ident
        ident = RNS.Identity()
        ident.to_file(p)
        try:
            os.chmod(p, 0o600)
        except OSError:
            pass
        self.log.info("Created identity path=%s", p)
        return ident

    def open_session(self, topic: str, secret: str | None = None) -> Session:
        try:
            self.start()
        except Exception as e:
            raise TransportError(f"Reticulum unavailable: {e}") from e

        digest = room_digest(topic, secret)
        try:
            dest = self._destinations.get(digest)
            if dest is None:
                # Destinations stay registered for the process lifetime; reuse on rejoin.
                dest = RNS.Destination(
                    self.identity,
                    RNS.Destination.IN,
                    RNS.Destination.SINGLE,
                    APP_NAME,
                    "room",
                    digest,
                )
                self._destinations[digest] = dest
            session = RnsSession(self, dest, digest)
            session.start()
        except Exception as e:
            raise TransportError(f"could not open room session: {e}") from e

        with self.lock:
            self._sessions.append(session)
        self.log.info("Room session open digest=%s dest_hash=%s", digest[:12], dest.hash.hex())
        return session

    def _session_closed(self, session: RnsSession) -> None:
        with self.lock:
            if session in self._sessions:
                self._sessions.remove(session)

    def shutdown(self) -> None:
        with self.lock:
            sessions = list(self._sessions)
        for s in sessions:
            s.close()
