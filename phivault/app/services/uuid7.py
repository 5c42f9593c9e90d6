"""
UUIDv7 identifiers.

UUIDv7 embeds a millisecond timestamp in the first 48 bits, so ledger
transaction ids and audit entry ids sort by creation time.
"""

import os
import time
import uuid


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (RFC 9562).

    Layout: 48-bit Unix ms timestamp, 4-bit version (7), 12 random bits,
    2-bit variant (10), 62 random bits.
    """
    timestamp_ms = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    random_bytes = bytearray(os.urandom(10))

    random_bytes[0] = (random_bytes[0] & 0x0F) | 0x70  # version 7
    random_bytes[2] = (random_bytes[2] & 0x3F) | 0x80  # RFC 4122 variant

    return str(uuid.UUID(bytes=timestamp_ms.to_bytes(6, byteorder="big") + bytes(random_bytes)))
