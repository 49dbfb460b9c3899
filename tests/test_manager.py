import pytest

from p2pmsg.constants import APP_ID, CHAT_MAX_BYTES, PERSONAL_ROOM_ID
from p2pmsg.events import (
    ActiveRoomChanged,
    ConnectionFailed,
    MessageReceived,
    Notice,
    PeerJoined,
    PresenceChanged,
)
from p2pmsg.history import MessageStore
from p2pmsg.manager import RoomSessionManager, SessionState, derive_topic
from p2pmsg.models import ChatMessage, Room
from p2pmsg.rooms import RoomDirectory
from p2pmsg.storage import MemoryStorage
from p2pmsg.transport import LoopbackNetwork


def _client(net: LoopbackNetwork, handle: str, storage: MemoryStorage | None = None):
    events: list = []
    storage = storage if storage is not None else MemoryStorage()
    directory = RoomDirectory(storage, events.append)
    directory.load()
    store = MessageStore(storage, events.append)
    store.load()
    mgr = RoomSessionManager(net.transport(), directory, store, events.append, local_handle=handle)
    return mgr, events


def test_starts_in_personal_room_idle() -> None:
    mgr, _ = _client(LoopbackNetwork(), "alice")
    assert mgr.active_room.id == PERSONAL_ROOM_ID
    assert mgr.state == SessionState.IDLE
    assert mgr.get_peer_count() == 1


def test_peer_joins_room() -> None:
    net = LoopbackNetwork()
    nova, nova_events = _client(net, "Nova")
    rex, _ = _client(net, "Rex")

    nova.join("alpha")
    assert nova.get_peer_count() == 1
    rex.join("alpha")
    net.run_pending()

    assert nova.get_peer_count() == 2
    assert nova.peer_count == 2
    joined = [e for e in nova_events if isinstance(e, PeerJoined)]
    assert [e.text() for e in joined] == ["Rex joined."]
    counts = [e.count for e in nova_events if isinstance(e, PresenceChanged)]
    assert counts[-1] == 2 and 1 in counts


def test_personal_room_send_is_local_only() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")

    msg = mgr.send_to_active_room("hello world")

    assert msg is not None and msg.is_own
    assert mgr.store.history(PERSONAL_ROOM_ID) == [msg]
    assert net.open_sessions() == []
    assert net.sent == []


def test_blank_send_is_ignored() -> None:
    mgr, _ = _client(LoopbackNetwork(), "alice")
    assert mgr.send_to_active_room("   ") is None
    assert mgr.store.history(PERSONAL_ROOM_ID) == []


def test_oversize_message_is_refused_before_sending() -> None:
    net = LoopbackNetwork()
    mgr, events = _client(net, "alice")
    mgr.join("lobby")
    events.clear()

    text = "x" * (CHAT_MAX_BYTES + 1)
    assert mgr.send_to_active_room(text) is None

    assert net.sent == []
    assert mgr.store.history("lobby") == []
    assert events == [Notice(f"Message too long ({CHAT_MAX_BYTES + 1} bytes, limit {CHAT_MAX_BYTES}).")]
    assert mgr.send_to_active_room("x" * CHAT_MAX_BYTES) is not None


def test_only_one_session_open_across_switches() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")

    mgr.join("alpha")
    mgr.join("beta")
    mgr.switch_to(mgr.directory.get("alpha"))
    mgr.join("gamma")

    sessions = net.open_sessions()
    assert len(sessions) == 1
    assert sessions[0].topic == derive_topic(APP_ID, mgr.active_room)
    assert mgr.state == SessionState.ACTIVE


def test_switching_to_personal_closes_session() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")
    mgr.join("alpha")

    mgr.switch_to(mgr.directory.personal)

    assert net.open_sessions() == []
    assert mgr.state == SessionState.IDLE
    assert mgr.engine is None


def test_old_room_events_are_ignored_after_switch() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")
    mgr.join("alpha")
    old = mgr.session_handle

    mgr.join("beta")
    stale = ChatMessage(text="late", sender="bob", timestamp=1)
    mgr._on_engine_event(old, MessageReceived(stale))

    assert mgr.store.history("alpha") == []
    assert mgr.store.history("beta") == []


def test_messages_flow_between_rooms_members() -> None:
    net = LoopbackNetwork()
    alice, _ = _client(net, "alice")
    bob, bob_events = _client(net, "bob")
    alice.join("lobby")
    bob.join("lobby")
    net.run_pending()

    sent = alice.send_to_active_room("hi bob")
    net.run_pending()

    assert alice.store.history("lobby") == [sent]
    received = bob.store.history("lobby")
    assert [(m.sender, m.text, m.is_own) for m in received] == [("alice", "hi bob", False)]
    assert MessageReceived(received[0], "lobby") in bob_events


def test_send_failure_still_stores_message() -> None:
    net = LoopbackNetwork()
    mgr, events = _client(net, "alice")
    mgr.join("lobby")
    net.open_sessions()[0].fail_broadcast = True

    msg = mgr.send_to_active_room("offline")

    assert msg is not None and msg.is_own
    assert mgr.store.history("lobby") == [msg]
    assert any(isinstance(e, ConnectionFailed) for e in events)


def test_open_failure_falls_back_to_personal() -> None:
    net = LoopbackNetwork()
    net.fail_open = True
    mgr, events = _client(net, "alice")

    active = mgr.join("lobby")

    assert active.id == PERSONAL_ROOM_ID
    assert mgr.active_room.id == PERSONAL_ROOM_ID
    assert mgr.state == SessionState.IDLE
    assert mgr.directory.get("lobby") is not None
    assert mgr.stats.get("transport_errors") == 1
    assert isinstance(events[-1], ConnectionFailed)
    changes = [e.room.id for e in events if isinstance(e, ActiveRoomChanged)]
    assert changes == ["lobby", PERSONAL_ROOM_ID]


def test_private_room_announces_encryption() -> None:
    mgr, events = _client(LoopbackNetwork(), "alice")
    mgr.join("vault", secret="s3cret")
    assert Notice("Encryption active.") in events
    assert Notice("Looking for peers in #vault...") in events


def test_different_secret_is_unreachable() -> None:
    net = LoopbackNetwork()
    alice, _ = _client(net, "alice")
    bob, _ = _client(net, "bob")
    carol, _ = _client(net, "carol")

    alice.join("vault", secret="one")
    bob.join("vault", secret="two")
    carol.join("vault", secret="one")
    net.run_pending()

    assert alice.get_peer_count() == 2
    assert bob.get_peer_count() == 1
    assert carol.get_peer_count() == 2


def test_owner_disambiguates_rooms_with_same_id() -> None:
    net = LoopbackNetwork()
    alice, _ = _client(net, "alice")
    bob, _ = _client(net, "bob")

    alice.join("lobby", owner="aa11")
    bob.join("lobby", owner="bb22")
    net.run_pending()

    assert derive_topic(APP_ID, Room(id="lobby", name="lobby", owner="aa11")) != derive_topic(
        APP_ID, Room(id="lobby", name="lobby")
    )
    assert alice.get_peer_count() == 1
    assert bob.get_peer_count() == 1
    assert alice.active_room.key == "lobby@aa11"


def test_rejoin_keeps_name_and_secret() -> None:
    mgr, _ = _client(LoopbackNetwork(), "alice")
    mgr.join("lobby", name="The Lobby", secret="pw")
    mgr.switch_to(mgr.directory.personal)

    room = mgr.join("lobby")

    assert room.name == "The Lobby"
    assert room.secret == "pw"
    assert len(mgr.directory.find("lobby")) == 1


def test_join_rejects_invalid_room_id() -> None:
    mgr, _ = _client(LoopbackNetwork(), "alice")
    with pytest.raises(ValueError):
        mgr.join("   ")


def test_leave_personal_room_raises() -> None:
    mgr, _ = _client(LoopbackNetwork(), "alice")
    with pytest.raises(ValueError):
        mgr.leave(mgr.directory.personal)


def test_leave_active_room() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")
    room = mgr.join("lobby")
    mgr.send_to_active_room("bye")

    mgr.leave(room)

    assert mgr.active_room.id == PERSONAL_ROOM_ID
    assert mgr.directory.get("lobby") is None
    assert mgr.store.history("lobby") == []
    assert net.open_sessions() == []


def test_reconcile_switches_to_personal_when_active_room_removed() -> None:
    net = LoopbackNetwork()
    storage = MemoryStorage()
    mgr, events = _client(net, "alice", storage)
    mgr.join("lobby")

    other = RoomDirectory(storage.open_tab())
    other.load()
    other.remove(other.get("lobby"))
    mgr.directory.on_external_snapshot_changed(storage.get_item("rooms"))
    mgr.reconcile_rooms()

    assert mgr.active_room.id == PERSONAL_ROOM_ID
    assert net.open_sessions() == []
    assert Notice("#lobby was removed in another window.") in events


def test_stop_closes_session() -> None:
    net = LoopbackNetwork()
    mgr, _ = _client(net, "alice")
    mgr.join("lobby")

    mgr.stop()

    assert net.open_sessions() == []
    assert mgr.active_room.id == PERSONAL_ROOM_ID
