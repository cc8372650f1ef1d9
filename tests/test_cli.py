import json

import pytest
import yaml
from click.testing import CliRunner

from provchestra.cli import main
from provchestra.run_store import FileRunStore
from provchestra.schemas import RunStatus


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, make_config_dict):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(make_config_dict()))
    return path


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "cli-store"


def test_init_command_creates_files(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("PROVCHESTRA_HOME", str(home))

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "Initialized provchestra config" in result.output

    cfg = yaml.safe_load((home / "config.yaml").read_text())
    assert cfg["parameters"]["baseName"] == "demo"
    assert (home / "runs").is_dir()


def test_init_does_not_overwrite_without_force(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("PROVCHESTRA_HOME", str(home))
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (home / "config.yaml").read_text() == "existing: true"


def test_init_force_overwrites(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("PROVCHESTRA_HOME", str(home))
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init", "--force"])
    assert result.exit_code == 0
    assert "parameters" in yaml.safe_load((home / "config.yaml").read_text())


def test_validate(runner, config_file):
    result = runner.invoke(main, ["validate", str(config_file)])
    assert result.exit_code == 0
    assert "is valid" in result.output
    assert "Excluded modules: search" in result.output


def test_validate_rejects_bad_config(runner, tmp_path, make_config_dict):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(make_config_dict(baseName="Not_Valid")))

    result = runner.invoke(main, ["validate", str(path)])
    assert result.exit_code == 1
    assert "baseName" in result.output


def test_deploy_dry_run(runner, config_file, store_dir):
    result = runner.invoke(main, ["deploy", str(config_file), "--dry-run", "--store", str(store_dir)])
    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output

    reports = FileRunStore(store_dir).list_runs()
    assert len(reports) == 1
    assert reports[0].status == RunStatus.SUCCEEDED


def test_deploy_invalid_config(runner, tmp_path, make_config_dict, store_dir):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(make_config_dict(adminObjectId="nope")))

    result = runner.invoke(main, ["deploy", str(path), "--dry-run", "--store", str(store_dir)])
    assert result.exit_code == 1
    assert FileRunStore(store_dir).list_runs() == []


def test_deploy_requires_connection_factory(runner, config_file, store_dir):
    result = runner.invoke(main, ["deploy", str(config_file), "--store", str(store_dir)])
    assert result.exit_code == 1
    assert "connection_factory" in result.output


def test_show_and_runs(runner, config_file, store_dir):
    runner.invoke(main, ["deploy", str(config_file), "--dry-run", "--store", str(store_dir)])
    run_id = FileRunStore(store_dir).list_runs()[0].run_id

    result = runner.invoke(main, ["show", run_id, "--store", str(store_dir)])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["run_id"] == run_id
    assert data["status"] == "SUCCEEDED"
    assert len(data["step_results"]) == 8

    result = runner.invoke(main, ["runs", "--store", str(store_dir)])
    assert result.exit_code == 0
    assert "SUCCEEDED" in result.output


def test_show_unknown_run(runner, store_dir):
    result = runner.invoke(main, ["show", "01UNKNOWN", "--store", str(store_dir)])
    assert result.exit_code == 1
    assert "Unknown run" in result.output


def test_runs_empty(runner, store_dir):
    result = runner.invoke(main, ["runs", "--store", str(store_dir)])
    assert result.exit_code == 0
    assert "No runs found." in result.output


def test_resume_failed_run(runner, config_file, store_dir):
    store = FileRunStore(store_dir)
    failed = store.create_run("demo-deployment", {})
    failed.finish(RunStatus.PHASE1_FAILED, error={"component": "phase1", "message": "quota"})
    store.save(failed)

    result = runner.invoke(
        main,
        ["resume", failed.run_id, "--config", str(config_file), "--dry-run", "--store", str(store_dir)],
    )
    assert result.exit_code == 0, result.output

    resumed = [r for r in store.list_runs() if r.resumed_from == failed.run_id]
    assert len(resumed) == 1
    assert resumed[0].status == RunStatus.SUCCEEDED


def test_resume_succeeded_run(runner, config_file, store_dir):
    runner.invoke(main, ["deploy", str(config_file), "--dry-run", "--store", str(store_dir)])
    run_id = FileRunStore(store_dir).list_runs()[0].run_id

    result = runner.invoke(
        main,
        ["resume", run_id, "--config", str(config_file), "--dry-run", "--store", str(store_dir)],
    )
    assert result.exit_code == 1
    assert "already succeeded" in result.output
