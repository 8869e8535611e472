# utils.py
import hashlib

import config


def hash_key(value: str, m: int = config.M) -> int:
    """
    Hash a string into an identifier in range [0, 2^m).
    The first 4 digest bytes are read as a signed big-endian int, made positive
    and reduced mod 2^m. Rings wider than 31 bits take the leading m bits instead.
    """
    h = hashlib.new(config.HASH_ALGORITHM, value.encode("utf-8")).digest()
    if m <= 31:
        prefix = int.from_bytes(h[:4], "big", signed=True)
        return abs(prefix) % (1 << m)
    total_bits = len(h) * 8
    v = int.from_bytes(h, "big")
    if m >= total_bits:
        return v
    return v >> (total_bits - m)


def forward_distance(a: int, b: int, m: int = config.M) -> int:
    """Steps walking clockwise from a to b."""
    return (b - a) % (1 << m)


def backward_distance(a: int, b: int, m: int = config.M) -> int:
    """Steps walking counter-clockwise from a to b."""
    return (a - b) % (1 << m)


def in_interval(start: int, end: int, x: int, inclusive_start: bool=False, inclusive_end: bool=False, m: int = config.M) -> bool:
    """
    Return whether x lies on the arc from start to end, walking clockwise.
    inclusive_start/end control closed endpoints.
    start == end denotes the whole ring: (n, n) is every id but n, (n, n] is every id.
    """
    mod = 1 << m
    span = forward_distance(start, end, m) or mod
    offset = forward_distance(start, x, m)
    if offset == 0:
        return inclusive_start or (span == mod and inclusive_end)
    if offset == span:
        return inclusive_end
    return offset < span
