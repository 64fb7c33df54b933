from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store rejected a write: duplicate username/email, reused token or dangling reference.

    ``detail["field"]`` names the offending field when there is one.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")
