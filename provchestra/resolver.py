"""
Output Resolver - presence-aware access to DeploymentOutputs.

Steps never index the outputs mapping directly. Required values go through
get(), which raises MissingOutputError; values contributed by optional modules
go through get_optional(), which makes presence explicit instead of handing
back None or an empty string.
"""

from dataclasses import dataclass
from typing import Any, Iterable

from provchestra.errors import MissingOutputError
from provchestra.schemas import DeploymentOutputs


@dataclass(frozen=True)
class OptionalOutput:
    """An output value that may be absent."""
    key: str
    present: bool
    value: Any = None

    def __bool__(self) -> bool:
        return self.present

    def or_default(self, default: Any) -> Any:
        return self.value if self.present else default


class OutputResolver:
    """Read-only view over one run's DeploymentOutputs."""

    def __init__(self, outputs: DeploymentOutputs):
        self._outputs = outputs

    @property
    def outputs(self) -> DeploymentOutputs:
        return self._outputs

    def get(self, key: str) -> Any:
        """
        Get a required output.

        Raises:
            MissingOutputError: If the key is absent
        """
        if key not in self._outputs:
            raise MissingOutputError(key, list(self._outputs))
        return self._outputs[key]

    def get_optional(self, key: str) -> OptionalOutput:
        if key in self._outputs:
            return OptionalOutput(key, True, self._outputs[key])
        return OptionalOutput(key, False)

    def has(self, key: str) -> bool:
        return key in self._outputs

    def missing(self, keys: Iterable[str]) -> list[str]:
        """Return the keys that are not present, in the given order."""
        return [k for k in keys if k not in self._outputs]

    def has_module(self, module: str) -> bool:
        return module in self._outputs.included_modules
