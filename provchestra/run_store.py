"""
RunStore - Persist deployment run reports.

The orchestrator saves a RunReport when a run starts, after Phase 1, and
after every configuration step, so an interrupted run always leaves a
record that `provchestra resume` can continue from.

Storage backends:
- In-memory (for testing and dry runs)
- File-based: one JSON document per run
"""

import json
import random
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from provchestra.schemas import RunReport
from provchestra.utils import ensure_directory_permissions


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    # Timestamp component (48 bits = 10 chars in base32)
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    # Random component (80 bits = 16 chars in base32)
    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


class RunStore(ABC):
    """
    Abstract base class for run report storage.

    Reports never contain credential tokens; implementations store exactly
    what RunReport.to_dict() returns.
    """

    def create_run(
        self,
        deployment_name: str,
        parameters: dict[str, Any],
        resumed_from: Optional[str] = None,
    ) -> RunReport:
        """
        Create and persist a new RUNNING report with a fresh ULID.

        Args:
            deployment_name: Name of the deployment
            parameters: Non-secret parameters of the run
            resumed_from: run_id this run continues, if any
        """
        report = RunReport(
            run_id=generate_ulid(),
            deployment_name=deployment_name,
            parameters=dict(parameters),
            resumed_from=resumed_from,
        )
        self.save(report)
        return report

    @abstractmethod
    def save(self, report: RunReport) -> None:
        """Create or replace the stored report."""
        pass

    @abstractmethod
    def get(self, run_id: str) -> Optional[RunReport]:
        """
        Retrieve a report by run id.

        Returns:
            The RunReport if found, None otherwise
        """
        pass

    @abstractmethod
    def list_runs(self) -> list[RunReport]:
        """All stored reports, oldest first."""
        pass

    def latest(self, deployment_name: Optional[str] = None) -> Optional[RunReport]:
        """Most recent report, optionally for one deployment."""
        runs = [
            r for r in self.list_runs()
            if deployment_name is None or r.deployment_name == deployment_name
        ]
        return runs[-1] if runs else None


class InMemoryRunStore(RunStore):
    """
    In-memory implementation of RunStore.

    Reports are stored serialized so that callers cannot mutate stored state.
    """

    def __init__(self):
        self._runs: dict[str, dict[str, Any]] = {}

    def save(self, report: RunReport) -> None:
        self._runs[report.run_id] = json.loads(json.dumps(report.to_dict()))

    def get(self, run_id: str) -> Optional[RunReport]:
        data = self._runs.get(run_id)
        return RunReport.from_dict(data) if data is not None else None

    def list_runs(self) -> list[RunReport]:
        # Insertion order is creation order
        return [RunReport.from_dict(data) for data in self._runs.values()]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._runs.clear()


class FileRunStore(RunStore):
    """
    File-based implementation of RunStore.

    Layout:
        store_dir/
            runs/
                {run_id}.json
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._runs_dir = self._store_dir / "runs"
        ensure_directory_permissions(self._runs_dir)

    def _path(self, run_id: str) -> Path:
        return self._runs_dir / f"{run_id}.json"

    def save(self, report: RunReport) -> None:
        path = self._path(report.run_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
        # Replace atomically so a crash never leaves a truncated report
        tmp_path.replace(path)

    def get(self, run_id: str) -> Optional[RunReport]:
        path = self._path(run_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return RunReport.from_dict(data)

    def list_runs(self) -> list[RunReport]:
        # ULIDs sort by creation time
        return [self.get(path.stem) for path in sorted(self._runs_dir.glob("*.json"))]
