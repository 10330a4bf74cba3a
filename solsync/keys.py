"""Canonical account key handling.

Every key that enters the package is converted into a
:class:`solders.pubkey.Pubkey` at the boundary.  Internal maps are keyed by
the canonical base58 string of that key, never by raw bytes or wrapper
objects.
"""

from __future__ import annotations

from typing import Any, Iterable, List

from solders.pubkey import Pubkey

from .constants import PUBKEY_LENGTH
from .errors import InvalidKeyError

AccountKey = Pubkey


def to_key(value: Any) -> Pubkey:
    """Return ``value`` as a :class:`Pubkey`.

    Accepts an existing ``Pubkey``, 32 raw bytes (``bytes``, ``bytearray``,
    ``memoryview``), a list or tuple of 32 integers, or a base58 string.
    Anything else raises :class:`InvalidKeyError`.
    """

    if value is None:
        raise InvalidKeyError("missing key")
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidKeyError("empty key string")
        try:
            return Pubkey.from_string(text)
        except Exception as exc:
            raise InvalidKeyError(f"invalid base58 key {text!r}: {exc}") from exc
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    elif isinstance(value, (list, tuple)):
        try:
            raw = bytes(value)
        except (TypeError, ValueError) as exc:
            raise InvalidKeyError(f"invalid key byte sequence: {exc}") from exc
    else:
        raise InvalidKeyError(f"unsupported key type {type(value).__name__}")
    if len(raw) != PUBKEY_LENGTH:
        raise InvalidKeyError(
            f"key must be {PUBKEY_LENGTH} bytes, got {len(raw)}"
        )
    return Pubkey.from_bytes(raw)


def to_key_string(value: Any) -> str:
    """Return the canonical base58 encoding of ``value``."""

    return str(to_key(value))


def to_keys(values: Iterable[Any]) -> List[Pubkey]:
    return [to_key(v) for v in values]


def is_valid_key_string(text: str) -> bool:
    if not isinstance(text, str):
        return False
    try:
        to_key(text)
    except InvalidKeyError:
        return False
    return True


def short_key(value: Any, chars: int = 4) -> str:
    """Abbreviate a key for log output, e.g. ``"Toke...Q5DA"``."""

    text = to_key_string(value)
    if len(text) < chars * 2 + 3:
        return text
    return f"{text[:chars]}...{text[-chars:]}"
