# core/errors.py

from dataclasses import dataclass
from typing import Any, Optional


class PlanningError(Exception):
    """Base class for every error the planning engine reports."""
    retryable = False


class InvalidInputError(PlanningError):
    """Non-positive, NaN or otherwise unusable optical or geometric parameter."""


class DegenerateGeometryError(PlanningError):
    """Zero-area face or polygon, or a normal that is NaN / not unit length."""


class StaleOriginError(PlanningError):
    """A LocalPoint was expressed against an origin that is no longer active."""


class AccelerationStructureUnavailable(PlanningError):
    """Face query issued while a mesh BVH is UNBUILT or BUILDING."""
    retryable = True


class ValidationError(PlanningError):
    """Path generation preconditions are not met."""


@dataclass
class PlanningResult:
    """Value-or-error returned across the planner boundary."""
    ok: bool
    value: Any = None
    error: Optional[PlanningError] = None

    @classmethod
    def success(cls, value=None):
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: PlanningError):
        return cls(ok=False, error=error)

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error else None

    @property
    def message(self) -> str:
        return str(self.error) if self.error else ""
