"""Configuration for notebook-transfer, stored in YAML files."""

from pathlib import Path
from typing import Any

import structlog
import yaml

from notebook_transfer.conflicts import ConflictResolution

logger = structlog.get_logger()

CONFIG_DIR_NAME = ".notebook-transfer"

DEFAULTS: dict[str, Any] = {
    "store.path": "notebook-data",
    "user.id": "local",
    "import.preserve_ids": True,
    "import.create_backup": False,
}

KNOWN_KEYS = (
    "store.path",
    "user.id",
    "backup.path",
    "import.error_threshold",
    "import.preserve_ids",
    "import.default_resolution",
    "import.create_backup",
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def global_config_dir() -> Path:
    return Path.home() / CONFIG_DIR_NAME


class Config:
    """Configuration manager using YAML file storage.

    Local config lives in .notebook-transfer/config.yaml under the current
    directory and global config in ~/.notebook-transfer/config.yaml. Reads
    look in local config first, then global config, then the built-in
    defaults.
    """

    def __init__(self, use_global: bool = False, config_dir: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            use_global: If True, use global config only. If False, use local config with global fallback.
            config_dir: Custom directory to store config file (overrides use_global)
        """
        if config_dir is not None:
            self.config_dir = Path(config_dir)
            self.is_global = use_global
        elif use_global:
            self.config_dir = global_config_dir()
            self.is_global = True
        else:
            self.config_dir = Path.cwd() / CONFIG_DIR_NAME
            self.is_global = False

        self.config_file = self.config_dir / "config.yaml"
        self._config: dict[str, Any] = self._read(self.config_file)

        self._global_config: dict[str, Any] = {}
        if not self.is_global:
            global_file = global_config_dir() / "config.yaml"
            if global_file.exists() and global_file != self.config_file:
                try:
                    self._global_config = self._read(global_file)
                except ValueError as e:
                    logger.warning("Failed to load global config", error=str(e))

        logger.debug("Config initialized", config_file=str(self.config_file), is_global=self.is_global)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.exists():
            logger.debug("Config file does not exist, initializing empty config", path=str(path))
            return {}
        try:
            with open(path, "r") as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load config", path=str(path), error=str(e))
            raise ValueError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return config

    def _save(self) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
            logger.debug("Config saved successfully", config_file=str(self.config_file))
        except OSError as e:
            logger.error("Failed to save config", error=str(e))
            raise ValueError(f"Failed to save config to {self.config_file}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Configuration key
            default: Returned when neither the files nor the built-in defaults set the key

        Returns:
            Configuration value or default
        """
        if key in self._config:
            logger.debug("Getting config value from local", key=key)
            return self._config[key]
        if not self.is_global and key in self._global_config:
            logger.debug("Getting config value from global", key=key)
            return self._global_config[key]
        if default is None and key in DEFAULTS:
            return DEFAULTS[key]
        return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"Config value {key}={value!r} is not a boolean. Use true or false")

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Config value {key}={value!r} is not an integer") from e

    def get_resolution(self, key: str = "import.default_resolution") -> ConflictResolution | None:
        value = self.get(key)
        if value is None:
            return None
        try:
            return ConflictResolution(str(value))
        except ValueError as e:
            choices = ", ".join(r.value for r in ConflictResolution)
            raise ValueError(f"Config value {key}={value!r} is not one of: {choices}") from e

    def set(self, key: str, value: Any) -> None:
        logger.debug("Setting config value", key=key)
        self._config[key] = value
        self._save()

    def unset(self, key: str) -> None:
        logger.debug("Unsetting config value", key=key)
        if key in self._config:
            del self._config[key]
            self._save()

    def list(self) -> dict[str, Any]:
        """List all configuration settings.

        For local config, merges global config with local config (local takes precedence).
        Built-in defaults are not included.
        """
        if self.is_global:
            return self._config.copy()
        merged = self._global_config.copy()
        merged.update(self._config)
        logger.debug("Listing merged config values", count=len(merged))
        return merged


def get_config(use_global: bool = False) -> Config:
    """Get a configuration instance.

    Args:
        use_global: If True, return global config. If False, return local config with global fallback.
    """
    return Config(use_global=use_global)
