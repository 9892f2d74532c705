"""Configuration file management for provider overrides and run settings."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

from ..schemas.provider import ProviderConfig

logger = logging.getLogger(__name__)

# Base keys that may appear in the persisted config.
CONFIG_BASE_KEYS: set[str] = {
    "providers",  # Provider id -> ProviderConfig fields
    "yolo",  # Drop tool restrictions for every provider
    "default_provider",
}

DEFAULT_CONFIG_PATH = Path.home() / ".reviewpipe" / "config.json"


def env_flag(name: str) -> bool:
    """True when an environment variable is set to ``true`` (any case) or ``1``."""
    return os.environ.get(name, "").strip().lower() in ("true", "1")


class ConfigManager:
    """Reads and writes the JSON config file."""

    def __init__(self, config_path: Path | None = None):
        # Allow override via environment variable (for testing)
        env_config = os.environ.get("REVIEWPIPE_CONFIG")
        if env_config:
            self.config_path = Path(env_config)
        else:
            self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    def load_config(self) -> dict[str, Any]:
        """Load configuration from file.

        Returns:
            Configuration dictionary, or empty dict if the file is missing or unreadable
        """
        if not self.config_path.exists():
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load config file %s: %s", self.config_path, e)
            return {}
        if not isinstance(config, dict):
            logger.warning("Ignoring config file %s: top level is not an object", self.config_path)
            return {}
        return config

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to file atomically.

        Args:
            config: Configuration dictionary to save

        Raises:
            ValueError: If the config contains unknown keys
        """
        validate_config_keys(config)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.config_path.parent, prefix=".reviewpipe_config_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.config_path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def is_yolo(self) -> bool:
        """Whether tool restrictions are disabled, by config or ``REVIEWPIPE_YOLO``."""
        return bool(self.load_config().get("yolo")) or env_flag("REVIEWPIPE_YOLO")

    def get_default_provider(self) -> str | None:
        value = self.load_config().get("default_provider")
        return value if isinstance(value, str) and value else None

    def get_provider_config(self, provider_id: str, *, yolo: bool | None = None) -> ProviderConfig:
        """Build the validated ProviderConfig for one provider.

        Args:
            provider_id: Provider identifier (e.g. ``claude``)
            yolo: Force yolo on or off; None reads it from config and environment

        Raises:
            ValueError: If the config has unknown keys or malformed provider entries
        """
        config = self.load_config()
        validate_config_keys(config)
        providers = config.get("providers") or {}
        if not isinstance(providers, dict):
            raise ValueError("Config key 'providers' must be an object")
        raw = providers.get(provider_id) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config for provider {provider_id!r} must be an object")

        data = dict(raw)
        if yolo is not None:
            data["yolo"] = yolo
        elif bool(config.get("yolo")) or env_flag("REVIEWPIPE_YOLO"):
            data["yolo"] = True
        return ProviderConfig.model_validate(data)

    def set_provider_config(self, provider_id: str, provider_config: ProviderConfig) -> None:
        config = self.load_config()
        providers = config.setdefault("providers", {})
        providers[provider_id] = provider_config.model_dump(exclude_unset=True, by_alias=True)
        self.save_config(config)


def validate_config_keys(config: dict[str, Any], *, allow: Iterable[str] | None = None) -> None:
    """Ensure the config file only contains known keys.

    Raises:
        ValueError: If unknown keys are present.
    """
    if not isinstance(config, dict):
        raise ValueError("Config must be a dict")
    allowed_keys = set(CONFIG_BASE_KEYS)
    if allow:
        allowed_keys.update(allow)

    unknown = set(config.keys()) - allowed_keys
    if unknown:
        pretty = ", ".join(sorted(unknown))
        raise ValueError(f"Unknown config keys found: {pretty}")
