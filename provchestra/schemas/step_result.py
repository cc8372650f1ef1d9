"""
StepResult schema - the audit record of one configuration step execution.

A StepResult is produced once per step execution and retained in the run
report so that a failed run can be resumed from its first non-succeeded step.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class StepStatus(str, Enum):
    """Status of a configuration step execution."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_MISSING_OPTIONAL_INPUT = "skipped_missing_optional_input"


@dataclass(frozen=True)
class StepResult:
    """
    The outcome of executing a single configuration step.

    Attributes:
        step_name: Name of the step
        status: succeeded, failed, or skipped_missing_optional_input
        attempts: Number of times the action was invoked (0 for skips)
        started_at: When the step started
        completed_at: When the step completed
        error: Error details if status is failed ({type, message, transient})
        missing_inputs: Optional outputs that were absent (for skips)
        output: Small JSON-safe summary returned by the step
        carried_over: True if reused from a previous run during resume
    """
    step_name: str
    status: StepStatus
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    missing_inputs: tuple[str, ...] = ()
    output: dict[str, Any] = field(default_factory=dict)
    carried_over: bool = False

    def __post_init__(self):
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.status == StepStatus.FAILED and self.error is None:
            raise ValueError("failed steps must carry error details")
        if self.status == StepStatus.SKIPPED_MISSING_OPTIONAL_INPUT and not self.missing_inputs:
            raise ValueError("skipped steps must name the missing inputs")

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    @property
    def skipped(self) -> bool:
        return self.status == StepStatus.SKIPPED_MISSING_OPTIONAL_INPUT

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def retries(self) -> int:
        """Retries performed beyond the first attempt."""
        return max(self.attempts - 1, 0)

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def as_carried_over(self) -> "StepResult":
        return replace(self, carried_over=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "step_name": self.step_name,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.missing_inputs:
            result["missing_inputs"] = list(self.missing_inputs)
        if self.output:
            result["output"] = self.output
        if self.carried_over:
            result["carried_over"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        """Deserialize from dictionary."""
        return cls(
            step_name=data["step_name"],
            status=StepStatus(data["status"]),
            attempts=data.get("attempts", 0),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
            error=data.get("error"),
            missing_inputs=tuple(data.get("missing_inputs", ())),
            output=data.get("output", {}),
            carried_over=data.get("carried_over", False),
        )
