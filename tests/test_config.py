"""Tests for configuration management."""

import os

import pytest
import yaml

from deployctl.config import (
    DeployCtlConfig,
    PipelineConfig,
    GlobalConfig,
    ConfigLoader,
    deep_merge,
    get_default_config,
)
from deployctl.core.exceptions import ConfigError
from deployctl.core.output import OutputFormat


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_default_values(self):
        config = PipelineConfig()
        assert config.default_stage_timeout == 300.0
        assert config.probe_timeout == 10.0
        assert config.output_limit == 4096
        assert config.halt_policy == "per-host"
        assert config.max_concurrent is None
        assert "BatchMode=yes" in config.ssh_options

    def test_invalid_halt_policy(self):
        with pytest.raises(ValueError):
            PipelineConfig(halt_policy="best-effort")

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            PipelineConfig(default_stage_timeout=0)

    def test_invalid_output_limit(self):
        with pytest.raises(ValueError):
            PipelineConfig(output_limit=-1)

    def test_get_state_dir_from_config(self, tmp_path):
        config = PipelineConfig(state_dir=str(tmp_path))
        assert config.get_state_dir() == tmp_path

    def test_get_state_dir_from_env(self, tmp_path):
        os.environ["DEPLOYCTL_STATE_DIR"] = str(tmp_path / "env")
        config = PipelineConfig(state_dir=str(tmp_path / "config"))
        assert config.get_state_dir() == tmp_path / "env"

    def test_get_halt_policy_from_env(self):
        os.environ["DEPLOYCTL_HALT_POLICY"] = "all-or-nothing"
        config = PipelineConfig()
        assert config.get_halt_policy() == "all-or-nothing"

    def test_get_halt_policy_invalid_env(self):
        os.environ["DEPLOYCTL_HALT_POLICY"] = "sometimes"
        with pytest.raises(ConfigError):
            PipelineConfig().get_halt_policy()


class TestGlobalConfig:
    """Tests for GlobalConfig."""

    def test_default_values(self):
        config = GlobalConfig()
        assert config.output_format == OutputFormat.TABLE
        assert config.color == "auto"
        assert config.confirm_destructive is True

    def test_invalid_color(self):
        with pytest.raises(ValueError):
            GlobalConfig(color="sometimes")


class TestDeployCtlConfig:
    """Tests for DeployCtlConfig."""

    def test_default_config(self):
        config = get_default_config()
        assert config.version == "1"
        assert isinstance(config.pipeline, PipelineConfig)

    def test_global_alias(self):
        config = DeployCtlConfig(**{"global": {"output_format": "json"}})
        assert config.global_settings.output_format == OutputFormat.JSON


class TestConfigLoader:
    """Tests for ConfigLoader."""

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.chdir(tmp_path)

    def test_load_explicit_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.dump({"pipeline": {"halt_policy": "all-or-nothing", "max_concurrent": 5}}))

        config = ConfigLoader().load(path)

        assert config.pipeline.halt_policy == "all-or-nothing"
        assert config.pipeline.max_concurrent == 5

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigLoader().load(tmp_path / "missing.yaml")

    def test_project_config_merged_under_explicit(self, tmp_path):
        (tmp_path / "deployctl.yaml").write_text(yaml.dump({
            "pipeline": {"default_stage_timeout": 60, "probe_timeout": 3},
        }))
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text(yaml.dump({"pipeline": {"default_stage_timeout": 90}}))

        config = ConfigLoader().load(explicit)

        assert config.pipeline.default_stage_timeout == 90
        assert config.pipeline.probe_timeout == 3

    def test_user_config(self, tmp_path):
        user_dir = tmp_path / "home" / ".deployctl"
        user_dir.mkdir(parents=True)
        (user_dir / "config.yaml").write_text(yaml.dump({"global": {"confirm_destructive": False}}))

        config = ConfigLoader().load()

        assert config.global_settings.confirm_destructive is False

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("pipeline: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            ConfigLoader().load(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"pipeline": {"halt_policy": "best-effort"}}))

        with pytest.raises(ConfigError, match="Invalid configuration"):
            ConfigLoader().load(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            ConfigLoader().load(path)


def test_deep_merge():
    merged = deep_merge({"pipeline": {"a": 1, "b": 2}, "version": "1"}, {"pipeline": {"b": 3}})
    assert merged == {"pipeline": {"a": 1, "b": 3}, "version": "1"}
