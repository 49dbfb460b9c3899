import pytest

from p2pmsg.codec import decode, encode
from p2pmsg.constants import K_T, T_CHAT, T_HELLO, T_HELLO_ACK
from p2pmsg.envelope import make_envelope
from p2pmsg.events import (
    ConnectionFailed,
    MessageReceived,
    Notice,
    PeerConnected,
    PeerFound,
    PeerJoined,
    PeerLeft,
    PresenceChanged,
)
from p2pmsg.presence import PresenceEngine, SessionAlreadyBoundError
from p2pmsg.transport import LoopbackNetwork


def _engine(net: LoopbackNetwork, handle: str, topic: str = "topic", secret=None):
    events: list = []
    session = net.transport().open_session(topic, secret)
    engine = PresenceEngine(events.append)
    engine.start(session, handle)
    return engine, session, events


def _sent_types(net: LoopbackNetwork) -> list[int]:
    return [decode(data)[K_T] for _, data in net.sent]


def test_two_peers_handshake_once_each_way() -> None:
    net = LoopbackNetwork()
    alice, _, alice_events = _engine(net, "alice")
    bob, _, bob_events = _engine(net, "bob")
    net.run_pending()

    assert alice.get_peer_count() == 2
    assert bob.get_peer_count() == 2
    assert _sent_types(net) == [T_HELLO, T_HELLO_ACK]

    joined = [e for e in alice_events if isinstance(e, PeerJoined)]
    assert [e.text() for e in joined] == ["bob joined."]

    connected = [e for e in bob_events if isinstance(e, PeerConnected)]
    assert [e.text() for e in connected] == ["Connected to alice."]

    assert any(isinstance(e, PeerFound) for e in alice_events)
    assert PresenceChanged(2) in alice_events


def test_three_peers_all_count_three() -> None:
    net = LoopbackNetwork()
    engines = [_engine(net, name)[0] for name in ("alice", "bob", "carol")]
    net.run_pending()

    assert [e.get_peer_count() for e in engines] == [3, 3, 3]
    types = _sent_types(net)
    assert types.count(T_HELLO) == 3
    assert types.count(T_HELLO_ACK) == 3


def test_peer_count_follows_disconnect() -> None:
    net = LoopbackNetwork()
    alice, _, alice_events = _engine(net, "alice")
    _, bob_session, _ = _engine(net, "bob")
    net.run_pending()

    bob_session.close()
    net.run_pending()

    assert alice.get_peer_count() == 1
    assert alice.peers() == []
    left = [e for e in alice_events if isinstance(e, PeerLeft)]
    assert [e.text() for e in left] == ["bob left."]
    assert alice_events[-2] == PresenceChanged(1)


def test_disconnect_of_unidentified_peer() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")

    alice.on_transport_peer_disconnected("peer-99")

    assert alice.get_peer_count() == 1
    assert events[-1].text() == "A peer left."


def test_duplicate_hello_is_not_reacked() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")
    hello = encode(make_envelope(T_HELLO, sender="carol"))

    alice.on_payload_received("peer-7", hello)
    alice.on_payload_received("peer-7", hello)
    net.run_pending()

    assert _sent_types(net) == [T_HELLO_ACK]
    assert alice.get_peer_count() == 2
    assert len([e for e in events if isinstance(e, PeerJoined)]) == 1


def test_hello_with_new_handle_renames_and_reacks() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")

    alice.on_payload_received("peer-7", encode(make_envelope(T_HELLO, sender="carol")))
    alice.on_payload_received("peer-7", encode(make_envelope(T_HELLO, sender="caroline")))

    assert _sent_types(net) == [T_HELLO_ACK, T_HELLO_ACK]
    assert [p.handle for p in alice.peers()] == ["caroline"]
    assert Notice("carol is now known as caroline.") in events


def test_handle_change_is_announced_to_peers() -> None:
    net = LoopbackNetwork()
    alice, _, _ = _engine(net, "alice")
    bob, _, bob_events = _engine(net, "bob")
    net.run_pending()

    alice.set_local_handle("alicia")
    net.run_pending()

    assert [p.handle for p in bob.peers()] == ["alicia"]
    assert Notice("alice is now known as alicia.") in bob_events


def test_unknown_payload_is_quarantined() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")

    alice.on_payload_received("peer-7", encode(make_envelope(99, sender="eve", body="hi")))

    assert not any(isinstance(e, MessageReceived) for e in events)
    assert alice.stats.get("payloads_unknown") == 1
    assert alice.get_peer_count() == 1


def test_malformed_payload_is_dropped() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")

    alice.on_payload_received("peer-7", b"\xff\x00garbage")
    alice.on_payload_received("peer-7", encode({"not": "an envelope"}))

    assert events == []
    assert alice.stats.get("payloads_bad") == 2


def test_chat_from_unidentified_peer_is_delivered() -> None:
    net = LoopbackNetwork()
    alice, _, events = _engine(net, "alice")

    alice.on_payload_received("peer-7", encode(make_envelope(T_CHAT, sender="mallory", body="hey", ts=42)))

    received = [e for e in events if isinstance(e, MessageReceived)]
    assert len(received) == 1
    msg = received[0].message
    assert (msg.sender, msg.text, msg.timestamp, msg.is_own) == ("mallory", "hey", 42, False)


def test_chat_between_peers() -> None:
    net = LoopbackNetwork()
    alice, _, _ = _engine(net, "alice")
    _, _, bob_events = _engine(net, "bob")
    net.run_pending()

    sent = alice.send("hello bob")
    net.run_pending()

    assert sent.is_own and sent.sender == "alice"
    received = [e.message for e in bob_events if isinstance(e, MessageReceived)]
    assert [(m.sender, m.text) for m in received] == [("alice", "hello bob")]
    assert alice.stats.get("chats_out") == 1


def test_send_failure_becomes_connection_error() -> None:
    net = LoopbackNetwork()
    alice, session, events = _engine(net, "alice")
    session.fail_broadcast = True

    msg = alice.send("lost")

    assert msg.text == "lost"
    errors = [e for e in events if isinstance(e, ConnectionFailed)]
    assert [e.text() for e in errors] == ["Connection Error: broadcast failed"]


def test_start_twice_raises() -> None:
    net = LoopbackNetwork()
    alice, _, _ = _engine(net, "alice")
    other = net.transport().open_session("topic")

    with pytest.raises(SessionAlreadyBoundError):
        alice.start(other, "alice")


def test_stop_is_idempotent_and_final() -> None:
    net = LoopbackNetwork()
    alice, session, events = _engine(net, "alice")

    alice.stop()
    alice.stop()

    assert session.closed
    assert not alice.running
    with pytest.raises(SessionAlreadyBoundError):
        alice.start(net.transport().open_session("topic"), "alice")

    alice.on_payload_received("peer-7", encode(make_envelope(T_HELLO, sender="carol")))
    alice.on_transport_peer_connected("peer-8")
    assert events == []


def test_connection_failed_event_is_not_the_builtin() -> None:
    import builtins

    assert ConnectionFailed is not builtins.ConnectionError
    assert not issubclass(ConnectionFailed, OSError)
    assert ConnectionFailed("link down").text() == "Connection Error: link down"
