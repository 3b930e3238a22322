"""
Tests for CLI commands — run, doctor, manifest, runs, upgrade, global options.
"""

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from provisioner.adapters.mock import MockCommandRunner
from provisioner.core.models.upgrade import UpgradeStage, UpgradeState
from provisioner.core.persistence import lock as lock_module
from provisioner.core.services.upgrade.preflight import PreflightCheck
from provisioner.main import cli

MANIFEST = textwrap.dedent("""\
    version: 1
    name: CLI test environment
    id: clienv
    defaults:
      user: dev
      workspace_root: /data/projects
    modules:
      - id: core.a
        description: First module
        phase: 1
        install: ["install core.a"]
        verify: ["verify core.a"]
      - id: core.b
        description: Second module
        phase: 2
        dependencies: [core.a]
        install: ["install core.b"]
        verify: ["verify core.b"]
      - id: tools.c
        description: Optional extra
        phase: 5
        optional: true
        tags: [extras]
        install: ["install tools.c"]
        verify: ["verify tools.c"]
""")

CYCLIC = textwrap.dedent("""\
    version: 1
    name: Broken
    id: broken
    defaults:
      user: dev
      workspace_root: /data/projects
    modules:
      - id: core.a
        description: a
        phase: 1
        dependencies: [core.b]
        install: ["true"]
        verify: ["true"]
      - id: core.b
        description: b
        phase: 1
        dependencies: [core.a]
        install: ["true"]
        verify: ["true"]
""")


@pytest.fixture(autouse=True)
def runtime_env(tmp_path: Path, monkeypatch):
    """Keep every state path under tmp_path and logging quiet."""
    monkeypatch.setenv("PROVISIONER_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("PROVISIONER_LOCK_FILE", str(tmp_path / "run" / "upgrade.lock"))
    monkeypatch.setenv("PROVISIONER_UPGRADE_LOG", str(tmp_path / "log" / "upgrade_resume.log"))
    monkeypatch.setenv("PROVISIONER_RUN_DIR", str(tmp_path / "runs"))
    monkeypatch.setenv("PROVISIONER_LOG_LEVEL", "CRITICAL")
    monkeypatch.delenv("PROVISIONER_LOG_FILE", raising=False)


@pytest.fixture
def manifest_file(tmp_path: Path) -> Path:
    path = tmp_path / "provision.manifest.yaml"
    path.write_text(MANIFEST)
    return path


@pytest.fixture
def mock_runner(monkeypatch) -> MockCommandRunner:
    runner = MockCommandRunner()
    monkeypatch.setattr(
        "provisioner.core.use_cases.provision.make_runner",
        lambda manifest, settings: runner,
    )
    return runner


@pytest.fixture
def host_backend(monkeypatch, fake_backend):
    """Route the upgrade gate to the in-memory backend with passing preflight."""
    monkeypatch.setattr(
        "provisioner.core.use_cases.upgrade.make_backend",
        lambda manifest_path: fake_backend,
    )
    monkeypatch.setattr(
        "provisioner.core.use_cases.upgrade.default_checks",
        lambda min_free_mb, network_url: [lambda: PreflightCheck("always", True, "ok")],
    )
    return fake_backend


def invoke(*args: str):
    return CliRunner().invoke(cli, list(args))


class TestCLIGlobal:
    def test_help(self):
        result = invoke("--help")
        assert result.exit_code == 0
        assert "Provisioner" in result.output
        for command in ("run", "doctor", "manifest", "runs", "upgrade"):
            assert command in result.output

    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_invalid_env_setting(self, manifest_file, monkeypatch):
        monkeypatch.setenv("PROVISIONER_COMMAND_TIMEOUT", "soon")
        result = invoke("--manifest", str(manifest_file), "run", "--print-plan")
        assert result.exit_code == 2
        assert "PROVISIONER_" in result.output


class TestRunPlanning:
    def test_print_plan(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--print-plan")
        assert result.exit_code == 0
        assert "Plan for clienv" in result.output
        assert "core.b" in result.output
        assert "[optional]" in result.output

    def test_print_plan_json(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--print-plan", "--only", "core.b", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [e["module_id"] for e in data["entries"]] == ["core.a", "core.b"]
        assert data["entries"][0]["reason"] == "dependency-closure"
        assert data["entries"][1]["reason"] == "explicit"

    def test_list_modules(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--list-modules")
        assert result.exit_code == 0
        assert "3 module(s)" in result.output
        assert "tools.c" in result.output

    def test_list_modules_json(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--list-modules", "--json")
        data = json.loads(result.output)
        assert [m["id"] for m in data] == ["core.a", "core.b", "tools.c"]
        assert data[2]["optional"] is True

    def test_invalid_manifest_exits_2(self, tmp_path: Path, mock_runner):
        path = tmp_path / "cyclic.yaml"
        path.write_text(CYCLIC)
        result = invoke("--manifest", str(path), "run", "--skip-os-upgrade")
        assert result.exit_code == 2
        assert "validation failed" in result.output
        assert mock_runner.commands == []

    def test_invalid_manifest_json(self, tmp_path: Path):
        path = tmp_path / "cyclic.yaml"
        path.write_text(CYCLIC)
        result = invoke("--manifest", str(path), "run", "--print-plan", "--json")
        assert result.exit_code == 2
        data = json.loads(result.output)
        assert data["error"] == "ManifestValidationError"
        assert data["exit_code"] == 2

    def test_unknown_selector(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--print-plan", "--only", "ghost")
        assert result.exit_code == 2
        assert "ghost" in result.output

    def test_unsatisfiable_skip(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "run", "--print-plan", "--skip", "core.a")
        assert result.exit_code == 2
        assert "--skip core.a" in result.output

    def test_missing_manifest(self, tmp_path: Path, monkeypatch):
        empty = tmp_path / "empty"
        empty.mkdir()
        monkeypatch.chdir(empty)
        result = invoke("run", "--print-plan")
        assert result.exit_code == 2
        assert "No provision.manifest.yaml" in result.output


class TestRunExecution:
    def test_success(self, manifest_file, mock_runner):
        result = invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")
        assert result.exit_code == 0
        assert mock_runner.commands[:2] == ["install core.a", "verify core.a"]
        assert "success" in result.output

    def test_success_json(self, manifest_file, mock_runner):
        result = invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["exit_code"] == 0
        assert data["upgrade"] is None
        assert data["report"]["status"] == "success"

    def test_required_failure_exits_1(self, manifest_file, mock_runner):
        mock_runner.set_failure("verify core.a", stderr="core.a: missing")
        result = invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")
        assert result.exit_code == 1
        assert "core.a: missing" in result.output
        assert "install core.b" not in mock_runner.commands

    def test_optional_failure_exits_0(self, manifest_file, mock_runner):
        mock_runner.set_failure("install tools.c")
        result = invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")
        assert result.exit_code == 0
        assert "Optional modules with problems: tools.c" in result.output

    def test_interrupt_exits_130(self, manifest_file, mock_runner):
        mock_runner.set_interrupt("install core.b")
        result = invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")
        assert result.exit_code == 130

    def test_timeout_override(self, manifest_file, mock_runner):
        invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade", "--timeout", "7")
        assert {c.timeout for c in mock_runner.call_log} == {7}

    def test_history_recorded(self, manifest_file, mock_runner):
        invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")

        last = invoke("runs", "last", "--json")
        assert last.exit_code == 0
        assert json.loads(last.output)["manifest_id"] == "clienv"

        history = invoke("runs", "history", "--json")
        entries = json.loads(history.output)
        assert len(entries) == 1
        assert entries[0]["status"] == "success"


class TestRunUpgradeGate:
    def test_hop_defers_installation(self, manifest_file, mock_runner, host_backend):
        result = invoke("--manifest", str(manifest_file), "run")
        assert result.exit_code == 0
        assert "Upgraded to 24.04" in result.output
        assert host_backend.upgrades == ["24.04"]
        assert mock_runner.commands == []

    def test_ready_system_installs(self, manifest_file, mock_runner, host_backend):
        host_backend.version = "25.10"
        result = invoke("--manifest", str(manifest_file), "run")
        assert result.exit_code == 0
        assert "install core.a" in mock_runner.commands

    def test_preflight_failure_exits_1(self, manifest_file, mock_runner, host_backend, monkeypatch):
        monkeypatch.setattr(
            "provisioner.core.use_cases.upgrade.default_checks",
            lambda min_free_mb, network_url: [lambda: PreflightCheck("disk", False, "10 MB free")],
        )
        result = invoke("--manifest", str(manifest_file), "run")
        assert result.exit_code == 1
        assert "disk: 10 MB free" in result.output
        assert host_backend.calls == []
        assert mock_runner.commands == []

    def test_lock_conflict_exits_3(self, manifest_file, mock_runner, host_backend, upgrade_lock, monkeypatch):
        upgrade_lock.path.parent.mkdir(parents=True)
        upgrade_lock.path.write_text("999999\n")
        monkeypatch.setattr(lock_module, "pid_alive", lambda pid: True)

        result = invoke("--manifest", str(manifest_file), "run")

        assert result.exit_code == 3
        assert "999999" in result.output
        assert host_backend.calls == []

    def test_non_ubuntu_installs(self, manifest_file, mock_runner, host_backend):
        host_backend.version = None
        result = invoke("--manifest", str(manifest_file), "run", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["upgrade"]["message"] == "Not an Ubuntu system; skipping OS upgrade"
        assert data["report"]["status"] == "success"
        assert "install core.a" in mock_runner.commands

    @pytest.mark.parametrize("version", [None, "25.10"])
    def test_unwritable_lock_ignored_when_no_upgrade_needed(
        self, manifest_file, mock_runner, host_backend, monkeypatch, version,
    ):
        def denied(src, dst):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(lock_module.os, "link", denied)
        host_backend.version = version

        result = invoke("--manifest", str(manifest_file), "run", "--only", "core.a")

        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert result.exit_code == 0
        assert mock_runner.commands == ["install core.a", "verify core.a"]

    def test_unwritable_lock_when_upgrade_needed(self, manifest_file, mock_runner, host_backend, monkeypatch):
        def denied(src, dst):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(lock_module.os, "link", denied)

        result = invoke("--manifest", str(manifest_file), "run")

        assert isinstance(result.exception, SystemExit)
        assert result.exit_code == 1
        assert "Cannot create upgrade lock" in result.output
        assert "Permission denied" in result.output
        assert host_backend.calls == []
        assert mock_runner.commands == []


class TestDoctor:
    def test_all_present(self, manifest_file, mock_runner):
        result = invoke("--manifest", str(manifest_file), "doctor")
        assert result.exit_code == 0
        assert mock_runner.commands == ["verify core.a", "verify core.b", "verify tools.c"]

    def test_missing_required(self, manifest_file, mock_runner):
        mock_runner.set_failure("verify core.a")
        result = invoke("--manifest", str(manifest_file), "doctor", "--json")
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["mode"] == "doctor"
        assert "verify core.b" in mock_runner.commands

    def test_doctor_does_not_record_history(self, manifest_file, mock_runner):
        invoke("--manifest", str(manifest_file), "doctor")
        assert invoke("runs", "last").exit_code == 1


class TestManifestCommands:
    def test_check_valid(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "manifest", "check")
        assert result.exit_code == 0
        assert "3 module(s), valid" in result.output

    def test_check_reports_every_issue(self, tmp_path: Path):
        path = tmp_path / "cyclic.yaml"
        path.write_text(CYCLIC.replace("dependencies: [core.a]", "dependencies: [core.a, core.zz]"))
        result = invoke("--manifest", str(path), "manifest", "check", "--json")
        assert result.exit_code == 2
        kinds = {i["kind"] for i in json.loads(result.output)["issues"]}
        assert kinds == {"dependency-cycle", "missing-dependency"}

    def test_check_schema_error(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text(MANIFEST.replace("phase: 5", "phase: 42"))
        result = invoke("--manifest", str(path), "manifest", "check")
        assert result.exit_code == 2
        assert "tools.c" in result.output

    def test_shipped_manifest_is_valid(self, project_root: Path):
        result = invoke("--manifest", str(project_root / "provision.manifest.yaml"), "manifest", "check")
        assert result.exit_code == 0, result.output

    def test_show(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "manifest", "show", "core.b")
        assert result.exit_code == 0
        assert "id: core.b" in result.output
        assert "core.a" in result.output

    def test_show_unknown(self, manifest_file):
        result = invoke("--manifest", str(manifest_file), "manifest", "show", "ghost")
        assert result.exit_code == 2


class TestRunsCommands:
    def test_no_runs(self):
        assert invoke("runs", "last").exit_code == 1
        history = invoke("runs", "history")
        assert history.exit_code == 0
        assert "No runs recorded yet." in history.output

    def test_last_shows_failure(self, manifest_file, mock_runner):
        mock_runner.set_failure("install core.b", exit_code=4)
        invoke("--manifest", str(manifest_file), "run", "--skip-os-upgrade")

        result = invoke("runs", "last")
        assert result.exit_code == 0
        assert "$ install core.b  → exit 4" in result.output

        history = invoke("runs", "history")
        assert "(failed: core.b)" in history.output


class TestUpgradeCommands:
    def test_status_none(self):
        result = invoke("upgrade", "status")
        assert result.exit_code == 0
        assert "No upgrade in progress." in result.output

    def test_status_in_progress(self, upgrade_store):
        upgrade_store.save(UpgradeState(
            current_stage=UpgradeStage.AWAITING_REBOOT,
            original_version="22.04",
            current_version="24.04",
            target_version="25.10",
            completed_hops=["24.04"],
            needs_reboot=True,
        ))
        result = invoke("upgrade", "status", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["current_stage"] == "awaiting_reboot"
        assert data["completed_hops"] == ["24.04"]

    def test_status_corrupt(self, upgrade_store):
        upgrade_store.path.parent.mkdir(parents=True)
        upgrade_store.path.write_text("nope")
        result = invoke("upgrade", "status")
        assert result.exit_code == 1
        assert str(upgrade_store.path) in result.output

    def test_path(self, host_backend):
        result = invoke("upgrade", "path")
        assert result.exit_code == 0
        assert "24.04 → 25.04 → 25.10" in result.output

    def test_start_and_resume(self, host_backend, upgrade_store, tmp_path: Path):
        start = invoke("upgrade", "start", "--target-version", "24.04")
        assert start.exit_code == 0
        assert upgrade_store.load().current_stage == UpgradeStage.AWAITING_REBOOT

        host_backend.reboot()
        resume = invoke("upgrade", "resume")
        assert resume.exit_code == 0
        assert "Upgrade complete" in resume.output
        assert host_backend.calls[-2:] == ["cleanup", "continue"]
        assert not upgrade_store.exists()
        assert (tmp_path / "log" / "upgrade_resume.log").exists()

    def test_resume_nothing(self, host_backend):
        result = invoke("upgrade", "resume")
        assert result.exit_code == 0
        assert "No upgrade in progress" in result.output
        assert host_backend.calls == []

    def test_resume_stale(self, host_backend, upgrade_store):
        upgrade_store.save(UpgradeState(
            current_stage=UpgradeStage.AWAITING_REBOOT,
            original_version="22.04",
            current_version="24.04",
            target_version="25.10",
            completed_hops=["24.04"],
        ))
        result = invoke("upgrade", "resume", "--json")
        assert result.exit_code == 1
        assert host_backend.upgrades == []
