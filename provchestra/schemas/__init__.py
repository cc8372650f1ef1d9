"""
provchestra.schemas - Data structures for the two-phase deployment engine.

ResourceNode -> ResourceGraph -> DeploymentOutputs -> StepResult -> RunReport

Lifecycle:
1. ResourceGraph: Built from configuration, optional modules included or omitted
2. DeploymentOutputs: Populated once, atomically, when Phase 1 succeeds
3. StepResult: One per Phase 2 step execution, kept for the audit trail
4. RunReport: Everything above plus the overall status; persisted for resume
"""

from .resource import (
    ResourceNode,
    ResourceGraph,
)
from .outputs import (
    DeploymentOutputs,
)
from .step_result import (
    StepResult,
    StepStatus,
)
from .run_report import (
    RunReport,
    RunStatus,
    ULID,
)

__all__ = [
    # Resource graph
    "ResourceNode",
    "ResourceGraph",
    # Outputs
    "DeploymentOutputs",
    # Step results
    "StepResult",
    "StepStatus",
    # Run report
    "RunReport",
    "RunStatus",
    "ULID",
]
