from __future__ import annotations

from typing import Any


class HermesError(RuntimeError):
    """Base class for failures raised by a stage or aggregation invocation."""

    def __init__(self, message: str, *, stage_id: str | None = None, detail: Any | None = None) -> None:
        super().__init__(message)
        self.stage_id = stage_id
        self.detail = detail

    def as_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "stage_id": self.stage_id,
            "detail": self.detail,
        }


class ValidationError(HermesError):
    """Raised when required user input is missing; the reasoning service is never called."""


class TransportError(HermesError):
    """Raised when the reasoning-service call fails at the network or protocol level, or times out."""


class SchemaConformanceError(HermesError):
    """Raised when a response arrives but does not match the stage's expected shape."""


class InsufficientDataError(HermesError):
    """Raised when aggregation is requested while the output store is empty."""


class StageSupersededError(HermesError):
    """Raised for an invocation whose result lost to a newer completed invocation, or that was cancelled."""


__all__ = [
    "HermesError",
    "ValidationError",
    "TransportError",
    "SchemaConformanceError",
    "InsufficientDataError",
    "StageSupersededError",
]
