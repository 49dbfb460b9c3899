from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Union

from .constants import (
    K_BODY,
    K_SENDER,
    K_T,
    K_TS,
    K_V,
    P2P_VERSION,
    T_CHAT,
    T_HELLO,
    T_HELLO_ACK,
)


class UnknownPayloadError(ValueError):
    """Raised for a well-formed envelope carrying a type this client does not speak."""

    def __init__(self, msg_type: int) -> None:
        super().__init__(f"unknown payload type {msg_type}")
        self.msg_type = msg_type


@dataclass(frozen=True)
class Hello:
    handle: str
    ts: int


@dataclass(frozen=True)
class HelloAck:
    handle: str
    ts: int


@dataclass(frozen=True)
class Chat:
    sender: str
    text: str
    ts: int


Payload = Union[Hello, HelloAck, Chat]


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(
    msg_type: int,
    *,
    sender: str,
    body=None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: P2P_VERSION,
        K_T: int(msg_type),
        K_TS: ts or now_ms(),
        K_SENDER: sender,
    }
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_TS, K_SENDER):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != P2P_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, int):
        raise TypeError("message type must be an integer")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    sender = env[K_SENDER]
    if not isinstance(sender, str):
        raise TypeError("sender handle must be a string")


def parse_payload(env: dict) -> Payload:
    """Validate `env` and return the matching payload variant.

    Raises TypeError/ValueError for malformed envelopes and
    UnknownPayloadError for an unrecognized type tag.
    """
    validate_envelope(env)

    t = env[K_T]
    sender = env[K_SENDER]
    ts = env[K_TS]

    if t == T_HELLO:
        return Hello(handle=sender, ts=ts)
    if t == T_HELLO_ACK:
        return HelloAck(handle=sender, ts=ts)
    if t == T_CHAT:
        body = env.get(K_BODY)
        if not isinstance(body, str):
            raise TypeError("chat body must be a string")
        return Chat(sender=sender, text=body, ts=ts)

    raise UnknownPayloadError(t)
