"""
Tests for configuration — manifest/checksum loading and runtime settings.
"""

import textwrap
from pathlib import Path

import pytest

from provisioner.core.config.loader import (
    dump_model,
    find_manifest_file,
    load_checksums,
    load_manifest,
)
from provisioner.core.config.settings import RuntimeSettings
from provisioner.core.errors import ConfigError, ManifestSchemaError

DIGEST = "0123456789abcdef" * 4

MANIFEST_YAML = textwrap.dedent("""\
    version: 1
    name: Test environment
    id: testenv
    defaults:
      user: dev
      workspace_root: /data/projects
    modules:
      - id: core.apt
        description: Base packages
        run_as: root
        install:
          - apt-get install -y curl
        verify:
          - curl --version
      - id: lang.bun
        description: Bun runtime
        phase: 6
        dependencies: [core.apt]
        verified_installer:
          tool: bun
          runner: bash
        verify:
          - bun --version
""")


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestFindManifest:
    """Upward manifest discovery."""

    def test_found_in_parent(self, tmp_path: Path):
        manifest = _write(tmp_path / "provision.manifest.yaml", MANIFEST_YAML)
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_manifest_file(nested) == manifest.resolve()

    def test_found_in_start_dir(self, tmp_path: Path):
        manifest = _write(tmp_path / "provision.manifest.yaml", MANIFEST_YAML)
        assert find_manifest_file(tmp_path) == manifest.resolve()


class TestLoadManifest:
    """Loading and schema errors."""

    def test_load_valid(self, tmp_path: Path):
        path = _write(tmp_path / "provision.manifest.yaml", MANIFEST_YAML)
        manifest = load_manifest(path)
        assert manifest.id == "testenv"
        assert manifest.module_ids == ["core.apt", "lang.bun"]
        assert manifest.get_module("lang.bun").phase == 6
        assert manifest.defaults.mode == "vibe"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_manifest(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = _write(tmp_path / "m.yaml", "modules: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_manifest(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = _write(tmp_path / "m.yaml", "- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_manifest(path)

    def test_schema_error_names_module_and_field(self, tmp_path: Path):
        content = MANIFEST_YAML.replace("phase: 6", "phase: 99")
        path = _write(tmp_path / "m.yaml", content)
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_manifest(path)
        issues = exc_info.value.issues
        assert len(issues) == 1
        assert issues[0].module_id == "lang.bun"
        assert issues[0].field == "phase"
        assert "lang.bun" in str(exc_info.value)

    def test_every_schema_issue_reported(self, tmp_path: Path):
        content = MANIFEST_YAML.replace("phase: 6", "phase: 0").replace(
            "run_as: root", "run_as: admin"
        )
        path = _write(tmp_path / "m.yaml", content)
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_manifest(path)
        located = {(i.module_id, i.field) for i in exc_info.value.issues}
        assert ("core.apt", "run_as") in located
        assert ("lang.bun", "phase") in located

    def test_model_level_error_located_by_module(self, tmp_path: Path):
        content = MANIFEST_YAML.replace(
            "    verified_installer:\n      tool: bun\n      runner: bash\n", ""
        )
        path = _write(tmp_path / "m.yaml", content)
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_manifest(path)
        issue = exc_info.value.issues[0]
        assert issue.module_id == "lang.bun"
        assert issue.field == "(module)"
        assert "verified_installer" in issue.message

    def test_top_level_error(self, tmp_path: Path):
        path = _write(tmp_path / "m.yaml", MANIFEST_YAML.replace("id: testenv", "id: Test-Env"))
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_manifest(path)
        issue = exc_info.value.issues[0]
        assert issue.module_id is None
        assert issue.field == "id"

    def test_to_dict(self, tmp_path: Path):
        path = _write(tmp_path / "m.yaml", MANIFEST_YAML.replace("phase: 6", "phase: 99"))
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_manifest(path)
        data = exc_info.value.to_dict()
        assert data["error"] == "ManifestSchemaError"
        assert data["issues"][0]["module"] == "lang.bun"


class TestLoadChecksums:
    """Checksum registry loading."""

    def test_sibling_file_used(self, tmp_path: Path):
        manifest = _write(tmp_path / "provision.manifest.yaml", MANIFEST_YAML)
        _write(
            tmp_path / "checksums.yaml",
            f'installers:\n  bun:\n    url: "https://bun.sh/install"\n    sha256: "{DIGEST}"\n',
        )
        registry = load_checksums(manifest_path=manifest)
        assert registry.get("bun").sha256 == DIGEST

    def test_no_sibling_gives_empty_registry(self, tmp_path: Path):
        manifest = _write(tmp_path / "provision.manifest.yaml", MANIFEST_YAML)
        registry = load_checksums(manifest_path=manifest)
        assert "bun" not in registry

    def test_explicit_path_must_exist(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_checksums(tmp_path / "missing.yaml")

    def test_bad_digest_located(self, tmp_path: Path):
        path = _write(
            tmp_path / "checksums.yaml",
            'installers:\n  bun:\n    url: "https://bun.sh/install"\n    sha256: "deadbeef"\n',
        )
        with pytest.raises(ManifestSchemaError) as exc_info:
            load_checksums(path)
        issue = exc_info.value.issues[0]
        assert issue.module_id == "bun"
        assert issue.field == "sha256"

    def test_repository_files_load(self, project_root: Path):
        manifest_path = project_root / "provision.manifest.yaml"
        manifest = load_manifest(manifest_path)
        registry = load_checksums(manifest_path=manifest_path)
        for module in manifest.modules:
            if module.verified_installer is not None:
                assert module.verified_installer.tool in registry


class TestDumpModel:
    def test_module_round_trips_to_yaml(self, tmp_path: Path):
        manifest = load_manifest(_write(tmp_path / "m.yaml", MANIFEST_YAML))
        text = dump_model(manifest.get_module("lang.bun"))
        assert "id: lang.bun" in text
        assert "tool: bun" in text


class TestRuntimeSettings:
    """Environment-driven settings."""

    def test_defaults(self):
        settings = RuntimeSettings.from_env({})
        assert settings.command_timeout == 900
        assert settings.target_version == "25.10"
        assert settings.upgrade_state_path.name == "upgrade_state.json"

    def test_env_overrides(self, tmp_path: Path):
        settings = RuntimeSettings.from_env({
            "PROVISIONER_COMMAND_TIMEOUT": "60",
            "PROVISIONER_STATE_DIR": str(tmp_path),
            "PROVISIONER_TARGET_USER": "alice",
        })
        assert settings.command_timeout == 60
        assert settings.upgrade_state_path == tmp_path / "upgrade_state.json"
        assert settings.target_user == "alice"

    def test_empty_value_ignored(self):
        settings = RuntimeSettings.from_env({"PROVISIONER_COMMAND_TIMEOUT": ""})
        assert settings.command_timeout == 900

    def test_invalid_value(self):
        with pytest.raises(ConfigError, match="PROVISIONER_"):
            RuntimeSettings.from_env({"PROVISIONER_COMMAND_TIMEOUT": "soon"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("PROVISIONER_MIN_DISK_MB", "1234")
        assert RuntimeSettings.from_env().min_disk_mb == 1234
