"""Short public keys derived from internal memory ids.

A key is the base-64 rendering of the numeric id, most significant digit
first, so it is dense, stable and collision-free by construction.
"""

from __future__ import annotations

KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE = len(KEY_ALPHABET)
_DIGITS = {ch: idx for idx, ch in enumerate(KEY_ALPHABET)}


def encode_key(n: int) -> str:
    """Encode a non-negative integer id as a memory key."""
    if n < 0:
        raise ValueError("memory ids are non-negative")
    if n == 0:
        return KEY_ALPHABET[0]
    digits: list[str] = []
    while n > 0:
        n, remainder = divmod(n, _BASE)
        digits.append(KEY_ALPHABET[remainder])
    return "".join(reversed(digits))


def decode_key(key: str) -> int:
    """Inverse of :func:`encode_key`."""
    if not key:
        raise ValueError("empty key")
    n = 0
    for ch in key:
        try:
            n = n * _BASE + _DIGITS[ch]
        except KeyError:
            raise ValueError(f"invalid key character {ch!r} in {key!r}") from None
    return n
