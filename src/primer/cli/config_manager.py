"""Configuration manager for primer CLI settings."""

import os
import json
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from primer.core.config import PipelineConfig, load_pipeline_config
from primer.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Settings that only affect the CLI, not the pipeline
CLI_DEFAULTS = {
    "log_level": "INFO",
    "json_logs": False,
}

# Never written to the settings file
SECRET_KEYS = {"openai_api_key"}


def default_settings() -> Dict[str, Any]:
    settings = dict(CLI_DEFAULTS)
    defaults = PipelineConfig().to_dict()
    for key in SECRET_KEYS:
        defaults.pop(key, None)
    settings.update(defaults)
    return settings


def parse_value(raw: str, current: Any) -> Any:
    """Convert a command-line string to the type of the current setting."""
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Expected a boolean, got {raw!r}")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


class PrimerConfigManager:
    """Manage persisted CLI settings that override pipeline defaults."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "primer_cli.json"
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file."""
        config = default_settings()

        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    config.update(json.load(f))
                logger.info("Configuration loaded from file")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load config file: {e}, using defaults")
        else:
            logger.debug("No config file found, using defaults")

        return config

    def _save_config(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            json.dump(self.config, f, indent=2)
        logger.info("Configuration saved to file")

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    def set(self, key: str, value: Any, persist: bool = True) -> Any:
        """
        Set a configuration value.

        Args:
            key: Setting name
            value: New value; strings are converted to the setting's type
            persist: Write the settings file

        Returns:
            The stored value
        """
        defaults = default_settings()
        if key in SECRET_KEYS:
            raise KeyError(f"{key} is read from the environment (OPENAI_API_KEY), not stored")
        if key not in defaults:
            raise KeyError(f"Unknown setting: {key}")

        if isinstance(value, str):
            value = parse_value(value, defaults[key])

        previous = self.config.get(key)
        self.config[key] = value
        try:
            self.pipeline_config()
        except ConfigurationError:
            self.config[key] = previous
            raise

        if persist:
            self._save_config()

        logger.info(f"Set {key} = {value}")
        return value

    def reset(self, key: Optional[str] = None, persist: bool = True) -> None:
        """Reset one setting, or all of them, to the default."""
        defaults = default_settings()
        if key is None:
            self.config = defaults
        elif key in defaults:
            self.config[key] = defaults[key]
            logger.info(f"Reset {key} to default")
        else:
            raise KeyError(f"Unknown setting: {key}")

        if persist:
            self._save_config()

    def get_all(self) -> Dict[str, Any]:
        return self.config.copy()

    def pipeline_overrides(self) -> Dict[str, Any]:
        """Stored settings that differ from the pipeline defaults."""
        pipeline_keys = {f.name for f in fields(PipelineConfig)}
        defaults = default_settings()
        return {
            key: value
            for key, value in self.config.items()
            if key in pipeline_keys and value != defaults.get(key)
        }

    def pipeline_config(self) -> PipelineConfig:
        return load_pipeline_config(self.pipeline_overrides())

    def validate(self) -> Dict[str, Any]:
        """Validate current configuration."""
        validation = {
            "valid": True,
            "issues": [],
            "warnings": [],
        }

        try:
            config = self.pipeline_config()
        except ConfigurationError as e:
            validation["valid"] = False
            validation["issues"].append(str(e))
            return validation

        if config.embedding_provider == "openai" and not config.openai_api_key:
            validation["warnings"].append("OPENAI_API_KEY not set (required for OpenAI embeddings)")

        if config.index_path and not Path(config.index_path).exists():
            validation["warnings"].append(f"Index directory does not exist yet: {config.index_path}")

        return validation


def get_config_manager() -> PrimerConfigManager:
    """Get the configuration manager for the current settings directory."""
    config_dir = os.getenv("PRIMER_CONFIG_DIR", "./config")
    return PrimerConfigManager(config_dir)
