import pytest

from p2pmsg.constants import K_BODY, K_SENDER, K_T, K_TS, K_V, P2P_VERSION, T_CHAT, T_HELLO, T_HELLO_ACK
from p2pmsg.envelope import (
    Chat,
    Hello,
    HelloAck,
    UnknownPayloadError,
    make_envelope,
    parse_payload,
    validate_envelope,
)


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    validate_envelope(env)
    assert env[K_V] == P2P_VERSION
    assert K_BODY not in env


def test_validate_rejects_missing_required_key() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    env.pop(K_TS)
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_wrong_version() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    env[K_V] = P2P_VERSION + 1
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_non_integer_keys() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    env["x"] = 1
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_non_string_sender() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    env[K_SENDER] = b"alice"
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_negative_timestamp() -> None:
    env = make_envelope(T_HELLO, sender="alice")
    env[K_TS] = -1
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_parse_payload_variants() -> None:
    assert parse_payload(make_envelope(T_HELLO, sender="alice", ts=5)) == Hello(handle="alice", ts=5)
    assert parse_payload(make_envelope(T_HELLO_ACK, sender="bob", ts=6)) == HelloAck(handle="bob", ts=6)
    assert parse_payload(make_envelope(T_CHAT, sender="bob", body="hi", ts=7)) == Chat(
        sender="bob", text="hi", ts=7
    )


def test_parse_payload_chat_requires_text_body() -> None:
    env = make_envelope(T_CHAT, sender="bob", body={"text": "hi"})
    with pytest.raises(TypeError):
        parse_payload(env)


def test_parse_payload_unknown_type_is_distinct_error() -> None:
    env = make_envelope(99, sender="bob", body="hi")
    with pytest.raises(UnknownPayloadError) as exc:
        parse_payload(env)
    assert exc.value.msg_type == 99
    assert env[K_T] == 99
