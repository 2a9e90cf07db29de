"""
Unit Tests for Governance Configuration
"""

from pathlib import Path

import pytest

from governance.config import GovernanceConfig, get_config, load_config, reset_config
from governance.errors import ValidationError


@pytest.fixture
def config_file(tmp_path):
    def _write(text):
        path = tmp_path / "governance.yaml"
        path.write_text(text)
        return path
    return _write


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        config = load_config()
        assert config == GovernanceConfig()
        assert config.fallback_gates == ["has_artifacts:minCount=1", "acceptance_met"]
        assert config.recall_default_limit == 10
        assert config.recency_window_days == 30

    def test_yaml_values(self, config_file):
        path = config_file(
            "data_dir: /tmp/gov\n"
            "log_level: debug\n"
            "recall:\n"
            "  default_limit: 5\n"
            "  recency_window_days: 14\n"
            "gates:\n"
            "  fallback: [has_tests]\n"
        )
        config = load_config(path)
        assert config.data_dir == Path("/tmp/gov")
        assert config.log_level == "DEBUG"
        assert config.recall_default_limit == 5
        assert config.recency_window_days == 14
        assert config.fallback_gates == ["has_tests"]

    def test_env_overrides_yaml(self, config_file, monkeypatch, tmp_path):
        path = config_file("data_dir: /tmp/from-yaml\nlog_level: INFO\n")
        monkeypatch.setenv("GOVERNANCE_CONFIG", str(path))
        monkeypatch.setenv("GOVERNANCE_DATA_DIR", str(tmp_path / "from-env"))
        monkeypatch.setenv("GOVERNANCE_LOG_LEVEL", "warning")

        config = load_config()
        assert config.data_dir == tmp_path / "from-env"
        assert config.log_level == "WARNING"

    def test_invalid_limit(self, config_file):
        with pytest.raises(ValidationError):
            load_config(config_file("recall:\n  default_limit: 0\n"))

    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("GOVERNANCE_LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError):
            load_config()

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_config(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, config_file):
        with pytest.raises(ValidationError):
            load_config(config_file("- just\n- a list\n"))

    def test_singleton(self):
        assert get_config() is get_config()

    def test_fallback_gates_drive_evaluator(self, config_file, monkeypatch, coordinator, task, user_id):
        monkeypatch.setenv("GOVERNANCE_CONFIG", str(config_file("gates:\n  fallback: [has_docs]\n")))
        reset_config()
        results = coordinator.gate_evaluator.evaluate_gates(user_id, task.id)
        assert [r.gate.type for r in results] == ["has_docs"]
