import io
import types

import pytest

RNS = pytest.importorskip("RNS")

from p2pmsg.rns_transport import RnsSession, RnsTransport, packet_would_fit, room_digest  # noqa: E402
from p2pmsg.transport import TransportError  # noqa: E402


def test_room_digest_is_stable() -> None:
    assert room_digest("abc", "pw") == room_digest("abc", "pw")
    assert len(room_digest("abc", None)) == 32


def test_room_digest_depends_on_secret() -> None:
    assert room_digest("abc", "") == room_digest("abc", None)
    assert room_digest("abc", "pw") != room_digest("abc", "other")
    assert room_digest("abc", "pw") != room_digest("abd", "pw")


class _Link:
    def __init__(self, mdu: int = 100) -> None:
        self.MDU = mdu
        self.link_id = b"\x01" * 16


class _Sent:
    def __init__(self, kind: str, link, data: bytes) -> None:
        self.kind = kind
        self.link = link
        self.data = data


def _session(monkeypatch, max_payload_bytes: int = 1000):
    sent: list[_Sent] = []

    class FakePacket:
        def __init__(self, link, data) -> None:
            self.link = link
            self.data = data

        def send(self) -> None:
            sent.append(_Sent("packet", self.link, self.data))

    real_resource = RNS.Resource

    class FakeResource:
        COMPLETE = real_resource.COMPLETE
        FAILED = real_resource.FAILED

        def __init__(self, data, link, **kwargs) -> None:
            sent.append(_Sent("resource", link, data))

    monkeypatch.setattr(RNS, "Packet", FakePacket)
    monkeypatch.setattr(RNS, "Resource", FakeResource)

    transport = RnsTransport(max_payload_bytes=max_payload_bytes)
    destination = types.SimpleNamespace(hash=b"\x00" * 16)
    session = RnsSession(transport, destination, room_digest("t", None))
    link = _Link()
    session._links["peer"] = link
    return session, sent


def test_packet_would_fit_uses_link_mdu() -> None:
    assert packet_would_fit(_Link(10), b"x" * 10)
    assert not packet_would_fit(_Link(10), b"x" * 11)


def test_small_payload_goes_as_packet(monkeypatch) -> None:
    session, sent = _session(monkeypatch)
    session.broadcast(b"x" * 50)
    assert [s.kind for s in sent] == ["packet"]


def test_large_payload_goes_as_resource(monkeypatch) -> None:
    session, sent = _session(monkeypatch)
    session.send_to("peer", b"x" * 500)
    assert [s.kind for s in sent] == ["resource"]
    assert sent[0].data == b"x" * 500


def test_oversize_payload_is_refused(monkeypatch) -> None:
    session, sent = _session(monkeypatch, max_payload_bytes=200)
    with pytest.raises(TransportError):
        session.broadcast(b"x" * 500)
    with pytest.raises(TransportError):
        session.send_to("peer", b"x" * 500)
    assert sent == []


def test_received_resource_is_delivered_as_payload(monkeypatch) -> None:
    session, _ = _session(monkeypatch)
    got: list = []
    session.on_payload(lambda peer_id, data: got.append((peer_id, data)))

    small = types.SimpleNamespace(total_size=300, link=_Link())
    big = types.SimpleNamespace(total_size=5000, link=_Link())
    assert session._resource_advertised(small) is True
    assert session._resource_advertised(big) is False

    done = types.SimpleNamespace(status=RNS.Resource.COMPLETE, data=io.BytesIO(b"payload"))
    session._resource_concluded("peer", done)
    failed = types.SimpleNamespace(status=RNS.Resource.FAILED, data=io.BytesIO(b"lost"))
    session._resource_concluded("peer", failed)

    assert got == [("peer", b"payload")]
