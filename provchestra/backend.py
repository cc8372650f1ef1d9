"""
Provisioning backends for Phase 1.

A backend receives the whole ResourceGraph and provisions it in one blocking
operation. Creation order inside that operation is the backend's concern;
provchestra only guarantees that the graph it hands over is acyclic.

Backends:
- AzureCliBackend: serializes the graph into a deployment template with
  dependsOn edges and runs `az deployment group create`
- SimulatedBackend: deterministic, in-memory; used for dry runs and tests
"""

import json
import logging
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from provchestra.azure_cli import AzureCli
from provchestra.errors import AzureCliError
from provchestra.graph_builder import (
    APP_PLAN,
    IDENTITY,
    OPENAI_ACCOUNT,
    OPENAI_DEPLOYMENT,
    ROLE_ASSIGNMENT,
    SEARCH_SERVICE,
    SQL_DATABASE,
    SQL_SERVER,
    WEB_APP,
)
from provchestra.schemas import ResourceGraph, ResourceNode

logger = logging.getLogger(__name__)

SUCCEEDED = "Succeeded"
FAILED = "Failed"
NOT_STARTED = "NotStarted"

API_VERSIONS: dict[str, str] = {
    IDENTITY: "2023-01-31",
    SQL_SERVER: "2023-05-01-preview",
    SQL_DATABASE: "2023-05-01-preview",
    APP_PLAN: "2023-12-01",
    WEB_APP: "2023-12-01",
    OPENAI_ACCOUNT: "2024-10-01",
    OPENAI_DEPLOYMENT: "2024-10-01",
    SEARCH_SERVICE: "2023-11-01",
    ROLE_ASSIGNMENT: "2022-04-01",
}

# Properties that the template format expects beside "properties", not inside it
_TOP_LEVEL_KEYS = ("sku", "kind", "identity", "scope")

# Kinds that inherit their location from the parent or scope
_NO_LOCATION = {OPENAI_DEPLOYMENT, ROLE_ASSIGNMENT}


@dataclass
class BackendResult:
    """
    What a backend reports for one submission.

    Attributes:
        run_id: Backend identifier of the deployment operation
        succeeded: True if every resource was provisioned
        outputs: Output name -> value (empty unless succeeded)
        node_status: node_id -> backend provisioning state
        diagnostics: Structured failure details, one dict per failing operation
    """
    run_id: str
    succeeded: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    node_status: dict[str, str] = field(default_factory=dict)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)


class ProvisioningBackend(ABC):
    """Abstract base class for provisioning backends."""

    @abstractmethod
    def submit(
        self,
        graph: ResourceGraph,
        parameters: dict[str, Any],
        deployment_name: str,
    ) -> BackendResult:
        """
        Provision every node of the graph in one blocking operation.

        Args:
            graph: Validated, acyclic resource graph
            parameters: Deployment parameters (location etc.)
            deployment_name: Name of the deployment operation

        Returns:
            BackendResult; failures are reported, not raised, where the
            backend can describe them
        """
        pass


def _synthetic_guid(*parts: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, "/".join(("provchestra-sim",) + parts)))


class SimulatedBackend(ProvisioningBackend):
    """
    Deterministic in-memory backend.

    Literal outputs pass through; backend expressions are replaced with
    plausible values derived from the resource name, so repeated
    submissions of the same graph produce identical outputs.

    Args:
        fail_nodes: node ids whose creation fails
        failure_message: Diagnostic message attached to failing nodes
    """

    def __init__(self, fail_nodes: Optional[set[str]] = None, failure_message: str = "Simulated failure"):
        self.fail_nodes = set(fail_nodes or ())
        self.failure_message = failure_message
        self.submissions: list[dict[str, Any]] = []

    def submit(
        self,
        graph: ResourceGraph,
        parameters: dict[str, Any],
        deployment_name: str,
    ) -> BackendResult:
        order = graph.topological_order()
        run_id = f"sim-{deployment_name}-{len(self.submissions) + 1}"
        self.submissions.append({"deployment_name": deployment_name, "order": order})
        logger.info(f"Simulating deployment {deployment_name} ({len(order)} resources)")

        node_status: dict[str, str] = {}
        diagnostics: list[dict[str, Any]] = []
        for node_id in order:
            if any(node_status.get(dep) != SUCCEEDED for dep in graph.edges(node_id)):
                node_status[node_id] = NOT_STARTED
            elif node_id in self.fail_nodes:
                node_status[node_id] = FAILED
                diagnostics.append({
                    "resource": node_id,
                    "code": "ResourceDeploymentFailure",
                    "message": self.failure_message,
                })
            else:
                node_status[node_id] = SUCCEEDED

        if diagnostics:
            return BackendResult(run_id, False, {}, node_status, diagnostics)

        outputs: dict[str, Any] = {}
        for node_id in order:
            node = graph[node_id]
            for output_name, value in node.outputs.items():
                outputs[output_name] = self._evaluate(node, output_name, value)
        return BackendResult(run_id, True, outputs, node_status, [])

    def _evaluate(self, node: ResourceNode, output_name: str, value: Any) -> Any:
        if not (isinstance(value, str) and value.startswith("[")):
            return value
        if value.endswith(".fullyQualifiedDomainName]"):
            return f"{node.name}.database.windows.net"
        if value.endswith(".endpoint]"):
            return f"https://{node.name}.openai.azure.com/"
        if value.endswith(".clientId]") or value.endswith(".principalId]"):
            return _synthetic_guid(node.name, output_name)
        return f"sim://{node.name}/{output_name}"


class AzureCliBackend(ProvisioningBackend):
    """
    Provision through `az deployment group create`.

    Args:
        cli: AzureCli wrapper
        resource_group: Target resource group
    """

    def __init__(self, cli: AzureCli, resource_group: str):
        self.cli = cli
        self.resource_group = resource_group

    def build_template(self, graph: ResourceGraph, parameters: dict[str, Any]) -> dict[str, Any]:
        """Serialize the graph into a deployment template."""
        resources = []
        outputs: dict[str, Any] = {}
        for node_id in graph.topological_order():
            node = graph[node_id]
            resources.append(self._resource_entry(graph, node, parameters))
            for output_name, value in node.outputs.items():
                outputs[output_name] = {"type": _output_type(value), "value": value}

        return {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#",
            "contentVersion": "1.0.0.0",
            "resources": resources,
            "outputs": outputs,
        }

    def _resource_entry(
        self,
        graph: ResourceGraph,
        node: ResourceNode,
        parameters: dict[str, Any],
    ) -> dict[str, Any]:
        properties = dict(node.properties)
        entry: dict[str, Any] = {
            "type": node.kind,
            "apiVersion": API_VERSIONS.get(node.kind, "2023-01-01"),
            "name": _full_name(graph, node),
        }
        if node.kind not in _NO_LOCATION:
            entry["location"] = parameters.get("location", "[resourceGroup().location]")
        for key in _TOP_LEVEL_KEYS:
            if key in properties:
                entry[key] = properties.pop(key)
        entry["properties"] = properties

        depends_on = [_arm_resource_id(graph, graph[dep]) for dep in sorted(graph.edges(node.node_id))]
        if depends_on:
            entry["dependsOn"] = depends_on
        return entry

    def submit(
        self,
        graph: ResourceGraph,
        parameters: dict[str, Any],
        deployment_name: str,
    ) -> BackendResult:
        template = self.build_template(graph, parameters)
        logger.info(
            f"Submitting deployment {deployment_name} to {self.resource_group} "
            f"({len(template['resources'])} resources)"
        )

        with tempfile.TemporaryDirectory(prefix="provchestra-") as tmp:
            template_path = Path(tmp) / "template.json"
            with open(template_path, "w") as f:
                json.dump(template, f, indent=2)

            try:
                result = self.cli.run([
                    "deployment", "group", "create",
                    "--resource-group", self.resource_group,
                    "--name", deployment_name,
                    "--template-file", str(template_path),
                    "--mode", "Incremental",
                ])
            except AzureCliError as e:
                logger.error(f"Deployment {deployment_name} failed: exit {e.returncode}")
                try:
                    node_status, diagnostics = self.collect_diagnostics(graph, deployment_name)
                except AzureCliError as lookup_error:
                    # Deployment was never created
                    logger.warning(f"No operations for {deployment_name}: exit {lookup_error.returncode}")
                    node_status, diagnostics = {node_id: NOT_STARTED for node_id in graph}, []
                if not diagnostics:
                    diagnostics = [{"code": "DeploymentFailed", "message": e.stderr.strip()}]
                return BackendResult(deployment_name, False, {}, node_status, diagnostics)

        properties = (result or {}).get("properties", {}) or {}
        state = properties.get("provisioningState", SUCCEEDED)
        run_id = (result or {}).get("id", deployment_name)
        if state != SUCCEEDED:
            node_status, diagnostics = self.collect_diagnostics(graph, deployment_name)
            return BackendResult(run_id, False, {}, node_status, diagnostics)

        outputs = _unwrap_outputs(properties.get("outputs", {}) or {})
        node_status = {node_id: SUCCEEDED for node_id in graph}
        return BackendResult(run_id, True, outputs, node_status, [])

    def collect_diagnostics(
        self,
        graph: ResourceGraph,
        deployment_name: str,
    ) -> tuple[dict[str, str], list[dict[str, Any]]]:
        """Read per-resource operation states for a failed deployment."""
        operations = self.cli.run([
            "deployment", "operation", "group", "list",
            "--resource-group", self.resource_group,
            "--name", deployment_name,
        ]) or []

        by_name = {_full_name(graph, graph[nid]): nid for nid in graph}
        node_status = {node_id: NOT_STARTED for node_id in graph}
        diagnostics: list[dict[str, Any]] = []
        for operation in operations:
            props = operation.get("properties", {}) or {}
            target = props.get("targetResource", {}) or {}
            node_id = by_name.get(target.get("resourceName", ""))
            state = props.get("provisioningState", "")
            if node_id is not None:
                node_status[node_id] = state
            if state == FAILED:
                status_message = props.get("statusMessage", {}) or {}
                error = status_message.get("error", status_message) if isinstance(status_message, dict) else {}
                diagnostics.append({
                    "resource": node_id or target.get("resourceName"),
                    "code": error.get("code", "Unknown"),
                    "message": error.get("message", str(status_message)),
                })
        return node_status, diagnostics


def _full_name(graph: ResourceGraph, node: ResourceNode) -> str:
    if node.parent and node.parent in graph:
        return f"{_full_name(graph, graph[node.parent])}/{node.name}"
    return node.name


def _arm_resource_id(graph: ResourceGraph, node: ResourceNode) -> str:
    segments = ", ".join(f"'{part}'" for part in _full_name(graph, node).split("/"))
    return f"[resourceId('{node.kind}', {segments})]"


def _output_type(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, (dict, list)):
        return "object"
    return "string"


def _unwrap_outputs(outputs: dict[str, Any]) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for key, value in outputs.items():
        if isinstance(value, dict) and "value" in value:
            resolved[key] = value["value"]
        else:
            resolved[key] = value
    return resolved
