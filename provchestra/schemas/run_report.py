"""
RunReport schema - the record of one deployment run.

A RunReport is created when a run starts, saved after Phase 1 and after every
configuration step, and finalized with the overall status. It is the only
state a resumed run reads back, so it carries everything Phase 2 needs:
the deployment outputs and the ordered StepResults. Credential tokens are
never part of a report.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .outputs import DeploymentOutputs
from .step_result import StepResult, StepStatus

# ULID type alias for documentation
ULID = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Overall status of a deployment run."""
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    PHASE1_FAILED = "PHASE1_FAILED"
    PHASE2_FAILED = "PHASE2_FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self != RunStatus.RUNNING

    @property
    def is_resumable(self) -> bool:
        return self in (RunStatus.PHASE1_FAILED, RunStatus.PHASE2_FAILED, RunStatus.CANCELLED)


@dataclass
class RunReport:
    """
    A record of a deployment run.

    Attributes:
        run_id: ULID uniquely identifying this run
        deployment_name: Name of the deployment (from configuration)
        parameters: Non-secret input parameters the run was started with
        status: Overall run status
        failed_step: Name of the failing step when status is PHASE2_FAILED
        outputs: Phase 1 outputs (empty until Phase 1 succeeds)
        step_results: Ordered StepResults for Phase 2
        node_status: Per-resource status reported by the backend
        backend_run_id: Identifier of the backend deployment operation
        error: Structured error detail ({component, type, message, ...})
        started_at: When the run started
        completed_at: When the run reached a terminal status
        resumed_from: run_id this run continues, if any
    """
    run_id: ULID
    deployment_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    failed_step: Optional[str] = None
    outputs: DeploymentOutputs = field(default_factory=DeploymentOutputs.empty)
    step_results: list[StepResult] = field(default_factory=list)
    node_status: dict[str, str] = field(default_factory=dict)
    backend_run_id: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    resumed_from: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def phase1_complete(self) -> bool:
        return not self.outputs.is_empty

    def get_result(self, step_name: str) -> Optional[StepResult]:
        """Get the result recorded for a step, if any."""
        for result in self.step_results:
            if result.step_name == step_name:
                return result
        return None

    def results_with_status(self, status: StepStatus) -> list[StepResult]:
        return [r for r in self.step_results if r.status == status]

    def finish(
        self,
        status: RunStatus,
        failed_step: Optional[str] = None,
        error: Optional[dict[str, Any]] = None,
    ) -> None:
        """Move the report to a terminal status."""
        self.status = status
        self.failed_step = failed_step
        self.error = error
        self.completed_at = _utcnow()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "deployment_name": self.deployment_name,
            "parameters": self.parameters,
            "status": self.status.value,
            "outputs": self.outputs.to_dict(),
            "step_results": [r.to_dict() for r in self.step_results],
            "started_at": self.started_at.isoformat(),
        }
        if self.failed_step is not None:
            result["failed_step"] = self.failed_step
        if self.node_status:
            result["node_status"] = self.node_status
        if self.backend_run_id is not None:
            result["backend_run_id"] = self.backend_run_id
        if self.error is not None:
            result["error"] = self.error
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.resumed_from is not None:
            result["resumed_from"] = self.resumed_from
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunReport":
        """Deserialize from dictionary."""
        completed_at = None
        if data.get("completed_at"):
            completed_at = datetime.fromisoformat(data["completed_at"])
        return cls(
            run_id=data["run_id"],
            deployment_name=data["deployment_name"],
            parameters=data.get("parameters", {}),
            status=RunStatus(data.get("status", "RUNNING")),
            failed_step=data.get("failed_step"),
            outputs=DeploymentOutputs.from_dict(data.get("outputs", {})),
            step_results=[StepResult.from_dict(r) for r in data.get("step_results", [])],
            node_status=data.get("node_status", {}),
            backend_run_id=data.get("backend_run_id"),
            error=data.get("error"),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=completed_at,
            resumed_from=data.get("resumed_from"),
        )
