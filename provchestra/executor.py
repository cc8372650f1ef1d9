"""
Phase-1 Executor.

Hands the validated ResourceGraph to a provisioning backend as one atomic,
blocking operation and turns the backend's answer into DeploymentOutputs.

Guarantees:
- The graph is checked for cycles before anything is submitted
- Outputs are published all at once, and only when the backend succeeded
- Any backend failure surfaces as ProvisioningError with diagnostics
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from provchestra.backend import ProvisioningBackend
from provchestra.errors import (
    Cancelled,
    ConfigurationError,
    CyclicDependencyError,
    ProvisioningError,
)
from provchestra.schemas import DeploymentOutputs, ResourceGraph

logger = logging.getLogger(__name__)


@dataclass
class Phase1Result:
    """Outcome of a successful Phase 1."""
    outputs: DeploymentOutputs
    node_status: dict[str, str] = field(default_factory=dict)
    backend_run_id: Optional[str] = None
    duration_ms: int = 0


class Phase1Executor:
    """
    Submit a ResourceGraph to a ProvisioningBackend.

    Args:
        backend: The provisioning backend
    """

    def __init__(self, backend: ProvisioningBackend):
        self.backend = backend

    def execute(
        self,
        graph: ResourceGraph,
        parameters: dict[str, Any],
        deployment_name: str,
    ) -> Phase1Result:
        """
        Provision the graph.

        Args:
            graph: The resource graph
            parameters: Deployment parameters
            deployment_name: Name of the deployment operation

        Returns:
            Phase1Result with immutable outputs

        Raises:
            CyclicDependencyError: If the graph has a cycle (nothing submitted)
            ProvisioningError: If the backend reports failure or raises
        """
        order = graph.topological_order()
        logger.info(
            f"Phase 1: provisioning {len(order)} resources "
            f"(modules: {sorted(graph.included_modules) or 'none'})"
        )
        if graph.excluded_modules:
            logger.info(f"  excluded modules: {sorted(graph.excluded_modules)}")

        start_time = time.time()
        try:
            result = self.backend.submit(graph, parameters, deployment_name)
        except (ConfigurationError, CyclicDependencyError, Cancelled):
            raise
        except Exception as e:
            # Unknown = permanent (fail fast)
            raise ProvisioningError(
                f"Provisioning backend failed: {e}",
                diagnostics=[{"code": type(e).__name__, "message": str(e)}],
            ) from e
        duration_ms = int((time.time() - start_time) * 1000)

        if not result.succeeded:
            failed = sorted(nid for nid, state in result.node_status.items() if state == "Failed")
            logger.error(f"Phase 1 failed after {duration_ms}ms; failed resources: {failed or 'unknown'}")
            raise ProvisioningError(
                f"Deployment '{deployment_name}' failed"
                + (f" at resource(s) {failed}" if failed else ""),
                diagnostics=result.diagnostics,
                node_status=result.node_status,
                run_id=result.run_id,
            )

        outputs = DeploymentOutputs(result.outputs, included_modules=graph.included_modules)
        logger.info(f"Phase 1 succeeded in {duration_ms}ms ({len(outputs)} outputs)")
        return Phase1Result(
            outputs=outputs,
            node_status=dict(result.node_status),
            backend_run_id=result.run_id,
            duration_ms=duration_ms,
        )
