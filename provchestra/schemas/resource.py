"""
Resource graph schemas - the declarative description handed to Phase 1.

A ResourceNode describes one platform resource and the edges it needs.
A ResourceGraph is the validated set of nodes for one deployment run,
with the bookkeeping needed to explain which optional modules were left out.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from provchestra.errors import ConfigurationError, CyclicDependencyError


@dataclass(frozen=True)
class ResourceNode:
    """
    A single resource definition.

    Attributes:
        node_id: Stable identifier of the node within the graph
        kind: Platform resource type (e.g. "Microsoft.Sql/servers")
        name: Platform resource name (validated against naming rules)
        properties: Configuration payload for the backend
        depends_on: Hard dependencies; must exist in the graph
        optional_depends_on: Soft dependencies; dropped when their module is excluded
        module: Optional module this node belongs to (None for core nodes)
        parent: Node id of the parent resource for child resource types
        outputs: Output name -> literal value or backend expression
    """
    node_id: str
    kind: str
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    optional_depends_on: frozenset[str] = frozenset()
    module: Optional[str] = None
    parent: Optional[str] = None
    outputs: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.node_id:
            raise ConfigurationError("ResourceNode requires a node_id")
        if self.node_id in self.depends_on or self.node_id in self.optional_depends_on:
            raise CyclicDependencyError([self.node_id, self.node_id])
        # Accept any iterable for the dependency sets
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        object.__setattr__(self, "optional_depends_on", frozenset(self.optional_depends_on))

    @property
    def is_optional(self) -> bool:
        return self.module is not None

    @property
    def all_dependencies(self) -> frozenset[str]:
        return self.depends_on | self.optional_depends_on

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "node_id": self.node_id,
            "kind": self.kind,
            "name": self.name,
            "properties": self.properties,
            "depends_on": sorted(self.depends_on),
        }
        if self.optional_depends_on:
            result["optional_depends_on"] = sorted(self.optional_depends_on)
        if self.module is not None:
            result["module"] = self.module
        if self.parent is not None:
            result["parent"] = self.parent
        if self.outputs:
            result["outputs"] = self.outputs
        return result


class ResourceGraph:
    """
    Mapping of node id to ResourceNode for one deployment.

    Invariant: every hard dependency exists in the mapping and every soft
    dependency either exists or is listed in absent_dependencies. The edges
    form a DAG; validate() and topological_order() enforce both.
    """

    def __init__(
        self,
        nodes: dict[str, ResourceNode],
        included_modules: Optional[set[str]] = None,
        excluded_modules: Optional[set[str]] = None,
        absent_dependencies: Optional[dict[str, frozenset[str]]] = None,
    ):
        self._nodes = dict(nodes)
        self.included_modules = frozenset(included_modules or ())
        self.excluded_modules = frozenset(excluded_modules or ())
        self.absent_dependencies = dict(absent_dependencies or {})

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __getitem__(self, node_id: str) -> ResourceNode:
        return self._nodes[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> dict[str, ResourceNode]:
        return dict(self._nodes)

    def edges(self, node_id: str) -> frozenset[str]:
        """Dependencies of a node that are present in this graph."""
        node = self._nodes[node_id]
        return frozenset(d for d in node.all_dependencies if d in self._nodes)

    def dependents(self, node_id: str) -> set[str]:
        """Nodes that depend (hard or soft) on node_id."""
        return {nid for nid in self._nodes if node_id in self.edges(nid)}

    def validate(self) -> None:
        """
        Validate referential integrity and acyclicity.

        Raises:
            ConfigurationError: If a hard dependency or an unrecorded soft
                dependency is missing
            CyclicDependencyError: If the edges contain a cycle
        """
        for node in self._nodes.values():
            missing_hard = sorted(d for d in node.depends_on if d not in self._nodes)
            if missing_hard:
                raise ConfigurationError(
                    f"Resource '{node.node_id}' depends on undefined resource(s): {missing_hard}"
                )
            recorded = self.absent_dependencies.get(node.node_id, frozenset())
            missing_soft = sorted(
                d for d in node.optional_depends_on
                if d not in self._nodes and d not in recorded
            )
            if missing_soft:
                raise ConfigurationError(
                    f"Resource '{node.node_id}' has optional dependencies that are neither "
                    f"present nor recorded as absent: {missing_soft}"
                )
        self.topological_order()

    def topological_order(self) -> list[str]:
        """
        Return node ids with dependencies first.

        Ties are broken by node id so the order is deterministic.

        Raises:
            CyclicDependencyError: If a cycle is found, naming its members
        """
        visited: set[str] = set()
        visiting: list[str] = []
        order: list[str] = []

        def visit(node_id: str) -> None:
            if node_id in visited:
                return
            if node_id in visiting:
                start = visiting.index(node_id)
                raise CyclicDependencyError(visiting[start:] + [node_id])
            visiting.append(node_id)
            for dep in sorted(self.edges(node_id)):
                visit(dep)
            visiting.pop()
            visited.add(node_id)
            order.append(node_id)

        for node_id in sorted(self._nodes):
            visit(node_id)
        return order

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "nodes": [self._nodes[nid].to_dict() for nid in sorted(self._nodes)],
            "included_modules": sorted(self.included_modules),
            "excluded_modules": sorted(self.excluded_modules),
            "absent_dependencies": {
                nid: sorted(deps) for nid, deps in sorted(self.absent_dependencies.items())
            },
        }

    def __repr__(self) -> str:
        return (
            f"ResourceGraph(nodes={len(self._nodes)}, "
            f"included_modules={sorted(self.included_modules)})"
        )
