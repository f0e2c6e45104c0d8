from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateRefreshTokenId(ConstraintViolation):
    """A refresh token identifier was recorded twice.

    Identifiers come from a random generator, so this means the generator is
    broken. It is an integrity failure and must not be retried.
    """

    def __init__(self, refresh_id: str):
        super().__init__(
            "refresh token identifier already recorded", {"refresh_id": refresh_id}
        )
        self.refresh_id = refresh_id


__all__ = ["ConstraintViolation", "DuplicateRefreshTokenId"]
