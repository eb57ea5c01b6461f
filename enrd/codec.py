from __future__ import annotations

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    """Decode one CBOR frame.

    Raises ValueError for anything that is not well-formed CBOR so callers
    only have to handle one failure type.
    """
    try:
        return cbor2.loads(b)
    except cbor2.CBORDecodeError as e:
        raise ValueError(f"undecodable frame: {e}") from e
