from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write would break a uniqueness rule (email, saved card fingerprint).

    ``message`` is safe to show to the caller; ``detail`` stays in the logs.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
