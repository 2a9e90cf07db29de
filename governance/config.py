"""
Governance Configuration

Settings are resolved in three layers, later layers winning:
1. Built-in defaults
2. Optional YAML file (GOVERNANCE_CONFIG or an explicit path)
3. Environment variables (GOVERNANCE_DATA_DIR, GOVERNANCE_LOG_LEVEL)

Example YAML:

    data_dir: /var/lib/governance
    log_level: INFO
    recall:
      default_limit: 10
      recency_window_days: 30
    gates:
      fallback:
        - has_artifacts:minCount=1
        - acceptance_met
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from .errors import ValidationError

logger = logging.getLogger("governance_config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_DATA_DIR = Path("data/governance")
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_RECALL_LIMIT = 10
DEFAULT_RECENCY_WINDOW_DAYS = 30
DEFAULT_FALLBACK_GATES = ("has_artifacts:minCount=1", "acceptance_met")

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class GovernanceConfig:
    """Resolved engine configuration."""
    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = DEFAULT_LOG_LEVEL
    recall_default_limit: int = DEFAULT_RECALL_LIMIT
    recency_window_days: int = DEFAULT_RECENCY_WINDOW_DAYS
    fallback_gates: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_GATES))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "recall_default_limit": self.recall_default_limit,
            "recency_window_days": self.recency_window_days,
            "fallback_gates": list(self.fallback_gates),
        }


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", name)
    return value


def _apply_yaml(config: GovernanceConfig, data: Dict[str, Any]) -> None:
    if "data_dir" in data:
        config.data_dir = Path(str(data["data_dir"])).expanduser()
    if "log_level" in data:
        config.log_level = str(data["log_level"]).upper()

    recall = data.get("recall") or {}
    if not isinstance(recall, dict):
        raise ValidationError("recall must be a mapping", "recall")
    if "default_limit" in recall:
        config.recall_default_limit = _positive_int(recall["default_limit"], "recall.default_limit")
    if "recency_window_days" in recall:
        config.recency_window_days = _positive_int(
            recall["recency_window_days"], "recall.recency_window_days"
        )

    gates = data.get("gates") or {}
    if not isinstance(gates, dict):
        raise ValidationError("gates must be a mapping", "gates")
    if "fallback" in gates:
        fallback = gates["fallback"]
        if not isinstance(fallback, list) or not all(isinstance(g, str) for g in fallback):
            raise ValidationError("gates.fallback must be a list of gate strings", "gates.fallback")
        config.fallback_gates = list(fallback)


def load_config(config_path: Optional[Path] = None) -> GovernanceConfig:
    """
    Load configuration from defaults, YAML and environment.

    Args:
        config_path: YAML file to read (falls back to GOVERNANCE_CONFIG)

    Raises:
        ValidationError: if the file is unreadable or holds invalid values
    """
    config = GovernanceConfig()

    path = config_path or (Path(os.environ["GOVERNANCE_CONFIG"]) if os.getenv("GOVERNANCE_CONFIG") else None)
    if path is not None:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot read governance config {path}: {e}", "config")
        if not isinstance(data, dict):
            raise ValidationError(f"Governance config {path} must be a mapping", "config")
        _apply_yaml(config, data)
        logger.info(f"Loaded governance config from {path}")

    env_data_dir = os.getenv("GOVERNANCE_DATA_DIR")
    if env_data_dir:
        config.data_dir = Path(env_data_dir).expanduser()
    env_log_level = os.getenv("GOVERNANCE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()

    if config.log_level not in VALID_LOG_LEVELS:
        raise ValidationError(
            f"log_level must be one of: {', '.join(VALID_LOG_LEVELS)}", "log_level"
        )

    return config


# Singleton instance
_config: Optional[GovernanceConfig] = None


def get_config() -> GovernanceConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
