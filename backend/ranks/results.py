"""Structured results returned by the outward engine operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ranks.errors import RankEngineError


@dataclass
class OperationResult:
    """Standardized return from every mutating engine operation.

    ``message`` is suitable for direct display; ``code`` is None on success
    and one of the RankEngineError codes otherwise.
    """

    success: bool
    message: str
    code: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **payload: Any) -> "OperationResult":
        return cls(success=True, message=message, payload=payload)

    @classmethod
    def failed(cls, error: RankEngineError) -> "OperationResult":
        payload = {k: v for k, v in error.context.items() if _is_displayable(v)}
        return cls(success=False, message=error.message, code=error.code, payload=payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "code": self.code,
            **self.payload,
        }


def _is_displayable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool, list, dict, type(None)))
