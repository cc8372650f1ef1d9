"""Tests for RunStore implementations."""

import json

import pytest

from provchestra.run_store import FileRunStore, InMemoryRunStore, generate_ulid
from provchestra.schemas import RunStatus, StepResult, StepStatus


class TestGenerateUlid:
    """Tests for ULID generation."""

    def test_format(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert not set(ulid) & set("ILOU")

    def test_unique(self):
        assert len({generate_ulid() for _ in range(100)}) == 100


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunStore()
    return FileRunStore(tmp_path / "store")


class TestRunStore:
    """Tests shared by both run store backends."""

    def test_create_run(self, store):
        report = store.create_run("demo", {"baseName": "demo"})
        stored = store.get(report.run_id)
        assert stored.status == RunStatus.RUNNING
        assert stored.parameters == {"baseName": "demo"}

    def test_save_replaces(self, store, full_outputs):
        report = store.create_run("demo", {})
        report.outputs = full_outputs
        report.step_results.append(StepResult("grant-firewall-access", StepStatus.SUCCEEDED, 1))
        report.finish(RunStatus.SUCCEEDED)
        store.save(report)

        stored = store.get(report.run_id)
        assert stored.success
        assert stored.outputs["sqlServerName"] == "demo-sql"
        assert stored.step_results[0].step_name == "grant-firewall-access"
        assert len(store.list_runs()) == 1

    def test_get_unknown(self, store):
        assert store.get("01UNKNOWN") is None

    def test_latest_filters_by_deployment(self, store):
        other = store.create_run("other", {})
        assert store.latest("other").run_id == other.run_id
        assert store.latest("missing") is None

    def test_resumed_from(self, store):
        first = store.create_run("demo", {})
        second = store.create_run("demo", {}, resumed_from=first.run_id)
        assert store.get(second.run_id).resumed_from == first.run_id


class TestInMemoryRunStore:
    """Tests specific to InMemoryRunStore."""

    def test_stored_copy_not_shared(self):
        store = InMemoryRunStore()
        report = store.create_run("demo", {"a": 1})
        report.parameters["a"] = 2
        assert store.get(report.run_id).parameters == {"a": 1}

    def test_list_in_creation_order(self):
        store = InMemoryRunStore()
        ids = [store.create_run("demo", {}).run_id for _ in range(3)]
        assert [r.run_id for r in store.list_runs()] == ids
        assert store.latest().run_id == ids[-1]

    def test_clear(self):
        store = InMemoryRunStore()
        store.create_run("demo", {})
        store.clear()
        assert store.list_runs() == []


class TestFileRunStore:
    """Tests specific to FileRunStore."""

    def test_layout(self, tmp_path):
        store = FileRunStore(tmp_path / "store")
        report = store.create_run("demo", {})
        path = tmp_path / "store" / "runs" / f"{report.run_id}.json"
        assert path.exists()
        assert json.loads(path.read_text())["deployment_name"] == "demo"
        assert not list((tmp_path / "store" / "runs").glob("*.tmp"))

    def test_reopen(self, tmp_path):
        report = FileRunStore(tmp_path / "store").create_run("demo", {})
        assert FileRunStore(tmp_path / "store").get(report.run_id) is not None
