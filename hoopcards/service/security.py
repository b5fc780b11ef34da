"""Constant-time comparison and random token helpers.

Every secret comparison in the auth core (CSRF double-submit values, reset
tokens, payment fingerprints) goes through :func:`constant_time_equals` so the
timing behaviour is defined in exactly one place.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional, Union

_Comparable = Union[str, bytes]


def _as_bytes(value: _Comparable) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def constant_time_equals(a: Optional[_Comparable], b: Optional[_Comparable]) -> bool:
    """Return True iff ``a`` and ``b`` are byte-for-byte equal.

    ``hmac.compare_digest`` folds over the whole buffer instead of stopping at
    the first differing byte. When lengths differ, ``a`` is still compared
    against itself padded to full length so the call does the same amount of
    work before reporting the mismatch. ``None`` never matches.
    """
    if a is None or b is None:
        return False
    left = _as_bytes(a)
    right = _as_bytes(b)
    if len(left) != len(right):
        hmac.compare_digest(left, left)
        return False
    return hmac.compare_digest(left, right)


def generate_token_hex(nbytes: int = 32) -> str:
    """Random hex token from the OS CSPRNG (``2 * nbytes`` characters)."""
    return secrets.token_hex(nbytes)
