"""
Configuration loader for the click-stream ETL.
Loads config from a JSON file and validates it up front so a bad value fails
the run before any batch is staged.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict


class ConfigLoader:
    """Singleton configuration loader with validation."""

    _instance = None
    _config: Dict[str, Any] = {}
    _loaded = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        """Load configuration from JSON file on first instantiation."""
        if not self._loaded:
            config_path = os.getenv("CLICKSTREAM_CONFIG", "config.json")
            self._load_config(config_path)
            self._validate()
            self._loaded = True

    def _load_config(self, config_path: str):
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set CLICKSTREAM_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        """Validate required sections and value ranges."""
        required_sections = [
            "database_path",
            "paths",
            "source",
            "staging",
            "fraud",
        ]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        partition_id = self.get("staging.partition_id", 1)
        if isinstance(partition_id, bool) or not isinstance(partition_id, int) or partition_id <= 0:
            raise ValueError(
                f"staging.partition_id must be a positive integer, got {partition_id}"
            )

        window_days = self.get("fraud.window_days", 1)
        if isinstance(window_days, bool) or not isinstance(window_days, (int, float)) or window_days <= 0:
            raise ValueError(
                f"fraud.window_days must be positive number, got {window_days}"
            )

        click_code = self.get("fraud.click_event_type", 2)
        terminal_code = self.get("fraud.terminal_event_type", 9)
        for key, code in (
            ("fraud.click_event_type", click_code),
            ("fraud.terminal_event_type", terminal_code),
        ):
            if isinstance(code, bool) or not isinstance(code, int):
                raise ValueError(f"{key} must be an integer event code, got {code}")
        if click_code == terminal_code:
            raise ValueError(
                f"fraud.click_event_type and fraud.terminal_event_type must differ, both are {click_code}"
            )

        timeout = self.get("fraud.query_timeout_seconds")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise ValueError(
                f"fraud.query_timeout_seconds must be positive number or null, got {timeout}"
            )

    def get(self, key_path: str, default: Any = None) -> Any:
        """Look up 'fraud.window_days' style dotted paths; default when any part is absent."""
        node = self._config
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def get_env_value(self, config_key: str, required: bool = True) -> str:
        """
        Read the environment variable whose name is stored at config_key,
        e.g. source.s3.bucket_env -> $CLICKSTREAM_BUCKET.
        """
        env_var_name = self.get(config_key)
        if not env_var_name:
            raise ValueError(f"Config key '{config_key}' not found")

        value = os.getenv(env_var_name)
        if required and not value:
            raise ValueError(
                f"{env_var_name} (named by {config_key}) is not set in the environment or .env"
            )
        return value

    def get_path(self, path_key: str, create: bool = False) -> Path:
        """Absolute path for a paths.* entry; relative entries hang off the working directory."""
        raw = self.get(path_key)
        if not raw:
            raise ValueError(f"Path key '{path_key}' not found in config")

        path = Path(raw)
        if not path.is_absolute():
            path = Path.cwd() / path
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path


_loader = None


def load_config() -> ConfigLoader:
    global _loader
    if _loader is None:
        _loader = ConfigLoader()
    return _loader
