"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from delegator.config import (
    DEFAULT_CONFIG_TOML,
    RuntimeConfig,
    config_from_mapping,
    load_config,
    write_default_config,
)
from delegator.errors import ValidationError
from delegator.telemetry import Severity


class TestDefaults:
    """Test built-in defaults."""

    def test_dataclass_defaults(self) -> None:
        """Test defaults without any file or environment."""
        config = RuntimeConfig()

        assert config.agent_id == "local-agent"
        assert config.max_concurrent_tasks == 5
        assert config.default_timeout_ms == 300_000
        assert config.telemetry.buffer_size == 100
        assert config.resource_limits.memory_mb == 4096

    def test_paths_follow_data_dir(self, tmp_path: Path) -> None:
        """Test derived file locations."""
        config = RuntimeConfig(data_dir=tmp_path)

        assert config.config_path == tmp_path / "config.toml"
        assert config.telemetry_db_path == tmp_path / "telemetry.db"

    def test_invalid_values(self) -> None:
        """Test validation of agent settings."""
        with pytest.raises(ValidationError):
            RuntimeConfig(agent_id="")
        with pytest.raises(ValidationError):
            RuntimeConfig(max_concurrent_tasks=0)

    def test_history_size_reaches_assessment(self) -> None:
        """Test that the confidence history size configures the assessor policy."""
        assert RuntimeConfig(confidence_history_size=7).assessment.history_size == 7

    def test_assessment_history_size_kept_without_override(self) -> None:
        """Test that an unset confidence history size leaves the policy alone."""
        config = config_from_mapping({"assessment": {"history_size": 12}})

        assert config.confidence_history_size is None
        assert config.assessment.history_size == 12
        assert RuntimeConfig().assessment.history_size == 50

    def test_agent_history_size_overrides_assessment(self) -> None:
        """Test that an explicit [agent] value takes precedence."""
        config = config_from_mapping(
            {"agent": {"confidence_history_size": 3}, "assessment": {"history_size": 12}}
        )

        assert config.assessment.history_size == 3
        with pytest.raises(ValidationError):
            RuntimeConfig(confidence_history_size=0)


class TestLoadConfig:
    """Test file and environment loading."""

    def test_missing_default_file(self, tmp_path: Path) -> None:
        """A missing default file falls back to defaults."""
        config = load_config(env={"DELEGATOR_DATA_DIR": str(tmp_path)})

        assert config.agent_id == "local-agent"
        assert config.data_dir == tmp_path

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """An explicit path must exist."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml", env={})

    def test_toml_file(self, tmp_path: Path) -> None:
        """Test values read from TOML tables."""
        path = tmp_path / "agent.toml"
        path.write_text(
            '[agent]\nagent_id = "coder"\nmax_concurrent_tasks = 2\n'
            "[limits]\nmemory_mb = 512\n"
            "[telemetry]\nmin_severity = \"warning\"\nflush_interval_ms = 0\n"
        )
        config = load_config(path, env={})

        assert config.agent_id == "coder"
        assert config.max_concurrent_tasks == 2
        assert config.resource_limits.memory_mb == 512
        assert config.resource_limits.cpu_percent == 400
        assert config.telemetry.min_severity == Severity.WARNING
        assert config.telemetry.flush_interval_ms == 0

    def test_environment_overrides_file(self, tmp_path: Path) -> None:
        """Test DELEGATOR_* precedence over the file."""
        path = tmp_path / "agent.toml"
        path.write_text('[agent]\nagent_id = "coder"\n')
        config = load_config(
            path,
            env={
                "DELEGATOR_AGENT_ID": "reviewer",
                "DELEGATOR_MAX_CONCURRENT_TASKS": "9",
                "DELEGATOR_TELEMETRY_ENABLED": "false",
                "DELEGATOR_MEMORY_MB": "256",
            },
        )

        assert config.agent_id == "reviewer"
        assert config.max_concurrent_tasks == 9
        assert config.telemetry.enabled is False
        assert config.resource_limits.memory_mb == 256.0

    def test_bad_environment_value(self) -> None:
        """Test a non-numeric override."""
        with pytest.raises(ValidationError, match="DELEGATOR_MAX_CONCURRENT_TASKS"):
            load_config(
                env={
                    "DELEGATOR_MAX_CONCURRENT_TASKS": "many",
                    "DELEGATOR_DATA_DIR": "/nonexistent",
                }
            )

    def test_invalid_toml(self, tmp_path: Path) -> None:
        """Test a file that is not TOML."""
        path = tmp_path / "agent.toml"
        path.write_text("[agent\n")
        with pytest.raises(ValidationError, match="Invalid TOML"):
            load_config(path, env={})

    def test_unknown_keys(self) -> None:
        """Test that typos are reported rather than ignored."""
        with pytest.raises(ValidationError, match=r"\[agent\]: agent_idd"):
            config_from_mapping({"agent": {"agent_idd": "x"}})
        with pytest.raises(ValidationError, match=r"\[telemetry\]: buffer"):
            config_from_mapping({"telemetry": {"buffer": 1}})

    def test_invalid_section_value(self) -> None:
        """Test that section validation errors surface as ValidationError."""
        with pytest.raises(ValidationError, match="Invalid configuration"):
            config_from_mapping({"telemetry": {"sampling_rate": 2.0}})


class TestWriteDefaultConfig:
    """Test the starter config file."""

    def test_written_file_loads(self, tmp_path: Path) -> None:
        """Test that the starter file round-trips through the loader."""
        path = write_default_config(tmp_path / "data")

        assert path.read_text() == DEFAULT_CONFIG_TOML
        config = load_config(path, env={})
        assert config.agent_name == "Local Agent"
        assert config.assessment.window == 10

    def test_keeps_existing_file(self, tmp_path: Path) -> None:
        """Test that an edited file is not overwritten by default."""
        path = write_default_config(tmp_path)
        path.write_text('[agent]\nagent_id = "mine"\n')

        write_default_config(tmp_path)
        assert load_config(path, env={}).agent_id == "mine"

        write_default_config(tmp_path, overwrite=True)
        assert load_config(path, env={}).agent_id == "local-agent"
