"""
Analysis error taxonomy and explicit stage outcomes.

Estimators raise the errors below; the pipeline turns them into Outcome
values so a run can report "statistic undefined for this input" next to
the results that did succeed.
"""

from dataclasses import dataclass
from typing import Any, Optional


class AnalysisError(Exception):
    """Base class for conditions that make a statistic unreportable."""
    pass


class InsufficientStructureError(AnalysisError):
    """Too few regions, mismatched inputs, or no neighbour pairs at all."""
    pass


class StatisticUndefinedError(AnalysisError):
    """The statistic or its variance is not finite for this input."""
    pass


@dataclass(frozen=True)
class Outcome:
    """Success-with-value or failure-with-reason for one pipeline stage."""
    stage: str
    ok: bool
    value: Any = None
    reason: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def success(cls, stage: str, value: Any) -> "Outcome":
        return cls(stage=stage, ok=True, value=value)

    @classmethod
    def failure(cls, stage: str, error: Exception) -> "Outcome":
        return cls(
            stage=stage,
            ok=False,
            reason=str(error),
            error_type=type(error).__name__,
        )

    def unwrap(self) -> Any:
        """Return the value, or raise AnalysisError carrying the reason."""
        if not self.ok:
            raise AnalysisError(f"{self.stage}: {self.reason}")
        return self.value

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "reason": self.reason,
            "error_type": self.error_type,
        }
