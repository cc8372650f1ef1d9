"""
DeploymentOutputs - the named values produced by Phase 1.

Lifecycle:
1. Created empty before Phase 1 runs
2. Populated atomically from the backend result on Phase 1 success
3. Immutable thereafter; consumed read-only by Phase 2 and reporting

Some keys are only present when their optional module was included.
Consumers must branch on presence (see OutputResolver).
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Iterator, Optional


class DeploymentOutputs(Mapping):
    """Read-only mapping of output name to value."""

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        included_modules: Optional[set[str]] = None,
    ):
        # Copy first so later mutation of the source cannot leak in
        self._values = MappingProxyType(dict(values or {}))
        self._included_modules = frozenset(included_modules or ())

    @classmethod
    def empty(cls) -> "DeploymentOutputs":
        return cls()

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def included_modules(self) -> frozenset[str]:
        return self._included_modules

    @property
    def is_empty(self) -> bool:
        return not self._values

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "values": dict(self._values),
            "included_modules": sorted(self._included_modules),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentOutputs":
        """Deserialize from dictionary."""
        return cls(
            values=data.get("values", {}),
            included_modules=set(data.get("included_modules", [])),
        )

    def __repr__(self) -> str:
        return f"DeploymentOutputs(keys={sorted(self._values)})"
