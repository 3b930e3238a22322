"""
Tests for domain models — manifest schema, checksums, plan and report.
"""

import json

import pytest
from pydantic import ValidationError

from provisioner.core.models import (
    ChecksumRegistry,
    ExecutionPlan,
    InclusionReason,
    InstallerChecksum,
    Module,
    ModuleResult,
    ModuleStatus,
    PlanEntry,
    RunAs,
    RunReport,
    RunStatus,
    UpgradeStage,
    UpgradeState,
)

DIGEST = "a" * 64


def _module(**overrides):
    data = {
        "id": "lang.bun",
        "description": "Bun runtime",
        "install": ["curl -fsSL https://bun.sh/install | bash"],
        "verify": ["bun --version"],
    }
    data.update(overrides)
    return Module.model_validate(data)


class TestModule:
    """Module schema tests."""

    def test_minimal_module_defaults(self):
        m = _module()
        assert m.phase == 1
        assert m.run_as == RunAs.TARGET_USER
        assert m.optional is False
        assert m.enabled_by_default is True
        assert m.generated is True
        assert m.dependencies == []

    def test_category_derived_from_id(self):
        assert _module().effective_category == "lang"
        assert _module(category="runtimes").effective_category == "runtimes"

    def test_function_name(self):
        assert _module().function_name == "install_lang_bun"

    @pytest.mark.parametrize("bad_id", ["Lang.Bun", "lang-bun", "1lang", "lang.", ".bun", ""])
    def test_invalid_id_rejected(self, bad_id):
        with pytest.raises(ValidationError):
            _module(id=bad_id)

    def test_verify_required(self):
        with pytest.raises(ValidationError):
            Module.model_validate({"id": "x", "description": "x", "install": ["true"]})
        with pytest.raises(ValidationError):
            _module(verify=[])

    def test_blank_command_rejected(self):
        with pytest.raises(ValidationError, match="blank"):
            _module(install=["   "])

    def test_install_source_required(self):
        with pytest.raises(ValidationError, match="verified_installer or install"):
            _module(install=[])

    def test_verified_installer_is_an_install_source(self):
        m = _module(install=[], verified_installer={"tool": "bun", "runner": "bash"})
        assert m.verified_installer.tool == "bun"
        assert m.verified_installer.args == []

    def test_not_generated_needs_no_install(self):
        m = _module(install=[], generated=False)
        assert m.install == []

    def test_runner_allowlist(self):
        with pytest.raises(ValidationError):
            _module(install=[], verified_installer={"tool": "bun", "runner": "zsh"})

    @pytest.mark.parametrize("phase", [0, 11])
    def test_phase_range(self, phase):
        with pytest.raises(ValidationError):
            _module(phase=phase)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            _module(priority=3)

    def test_run_as_values(self):
        assert _module(run_as="target_user_noshell").run_as is RunAs.TARGET_USER_NO_SHELL
        with pytest.raises(ValidationError):
            _module(run_as="nobody")


class TestManifest:
    """Manifest-level helpers."""

    def test_module_index_keeps_first_declaration(self, make_manifest, spec):
        manifest = make_manifest([
            spec("a", description="first"),
            spec("b"),
            spec("a", description="second"),
        ])
        assert manifest.module_index()["a"].description == "first"
        assert manifest.get_module("a").description == "first"
        assert manifest.declaration_order() == {"a": 0, "b": 1}

    def test_categories_and_tags_in_declaration_order(self, make_manifest, spec):
        manifest = make_manifest([
            spec("lang.bun", tags=["runtime"]),
            spec("agents.claude", tags=["agents", "critical"]),
            spec("lang.uv", tags=["runtime"]),
        ])
        assert manifest.categories() == ["lang", "agents"]
        assert manifest.tags() == ["runtime", "agents", "critical"]
        assert manifest.module_ids == ["lang.bun", "agents.claude", "lang.uv"]

    def test_get_unknown_module(self, make_manifest, spec):
        assert make_manifest([spec("a")]).get_module("zzz") is None


class TestChecksums:
    """Checksum registry model."""

    def test_digest_normalized(self):
        entry = InstallerChecksum(url="https://bun.sh/install", sha256="SHA256:" + "AB" * 32)
        assert entry.sha256 == "ab" * 32

    def test_sha256_prefix_stripped(self):
        entry = InstallerChecksum(url="https://bun.sh/install", sha256="sha256:" + DIGEST)
        assert entry.sha256 == DIGEST

    def test_short_digest_rejected(self):
        with pytest.raises(ValidationError):
            InstallerChecksum(url="https://bun.sh/install", sha256="abc123")

    def test_http_rejected(self):
        with pytest.raises(ValidationError, match="https"):
            InstallerChecksum(url="http://bun.sh/install", sha256=DIGEST)

    def test_registry_lookup(self):
        registry = ChecksumRegistry(installers={"bun": {"url": "https://bun.sh/install", "sha256": DIGEST}})
        assert "bun" in registry
        assert "uv" not in registry
        assert registry.get("bun").url == "https://bun.sh/install"
        assert registry.get("uv") is None


class TestExecutionPlan:
    """Plan serialization."""

    def test_json_is_stable(self):
        plan = ExecutionPlan(
            manifest_id="testenv",
            manifest_version=1,
            entries=[PlanEntry(module_id="a", phase=1, reason=InclusionReason.DEFAULT)],
        )
        assert plan.to_json() == plan.to_json()
        data = json.loads(plan.to_json())
        assert data["entries"][0]["reason"] == "default"
        assert plan.reason_for("a") == InclusionReason.DEFAULT
        assert plan.reason_for("b") is None

    def test_empty_plan_is_truthy(self):
        plan = ExecutionPlan(manifest_id="testenv", manifest_version=1)
        assert plan
        assert plan.module_ids == []


class TestRunReport:
    """Run report counters."""

    def test_counts_and_summary(self):
        report = RunReport(
            run_id="run-1",
            modules=[
                ModuleResult(module_id="a", status=ModuleStatus.SUCCESS),
                ModuleResult(module_id="b", status=ModuleStatus.SKIPPED),
                ModuleResult(module_id="c", status=ModuleStatus.WARNING, optional=True),
                ModuleResult(module_id="d", status=ModuleStatus.FAILED),
                ModuleResult(module_id="e", status=ModuleStatus.NOT_ATTEMPTED),
            ],
        )
        assert report.succeeded == 1
        assert report.skipped == 1
        assert report.warnings == 1
        assert report.failed == 1
        assert report.ids_with_status(ModuleStatus.NOT_ATTEMPTED) == ["e"]
        assert report.summary() == {
            "success": 1, "skipped": 1, "failed": 1, "warning": 1, "not-attempted": 1,
        }
        assert report.to_dict()["summary"]["failed"] == 1

    def test_status_defaults(self):
        report = RunReport()
        assert report.status == RunStatus.RUNNING
        assert report.all_ok is False
        assert ModuleStatus.PENDING.is_terminal is False
        assert ModuleStatus.NOT_ATTEMPTED.is_terminal is True


class TestUpgradeState:
    """Persisted upgrade state."""

    def test_defaults(self):
        state = UpgradeState(target_version="25.10")
        assert state.current_stage == UpgradeStage.NOT_STARTED
        assert state.completed_hops == []
        assert state.in_progress is False

    def test_unknown_fields_ignored(self):
        state = UpgradeState.model_validate(
            {"target_version": "25.10", "current_stage": "awaiting_reboot", "future_field": 1}
        )
        assert state.current_stage == UpgradeStage.AWAITING_REBOOT
        assert state.in_progress is True

    def test_target_required(self):
        with pytest.raises(ValidationError):
            UpgradeState.model_validate({"current_stage": "upgrading"})
