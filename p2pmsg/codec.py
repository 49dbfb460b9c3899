from __future__ import annotations

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    if not isinstance(b, (bytes, bytearray)):
        raise TypeError("payload must be bytes")
    return cbor2.loads(bytes(b))
