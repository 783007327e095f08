"""
Application Settings Persistence
================================

This module manages the serialization and deserialization of the Stockmeta
user settings. It ensures that preferences such as the storage location,
request timeout, and pacing delays are preserved between runs.

Key Responsibilities:
---------------------
- File-System Persistence: Stores settings in a hidden JSON file in the
  user's home directory (`~/.stockmeta_config.json`).
- State Synchronization: Maps JSON keys to the attributes of the `Settings`
  dataclass, ignoring unknown keys and coercing values to the field type.
- Security Logging: Interfaces with the logger to record save/load events
  while automatically redacting sensitive fields.

The API key is not a setting; it lives in the key-value store managed by
`CredentialStore`.
"""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

from stockmeta.core import config
from stockmeta.utils.logger import log_config

CONFIG_PATH = Path.home() / ".stockmeta_config.json"


@dataclass
class Settings:
    """
    User-adjustable runtime settings.

    Attributes:
        storage_path: JSON file backing the key-value store
        storage_capacity_bytes: Capacity limit of the key-value store
        request_timeout: Hard timeout for a generation call, in seconds
        success_delay: Pacing wait after a successful row
        failure_delay: Pacing wait after a failed row
        progress_reset_delay: How long final batch counters stay visible
    """
    storage_path: str = str(config.APP_DATA_DIR / config.STORAGE_FILENAME)
    storage_capacity_bytes: int = config.STORAGE_CAPACITY_BYTES
    request_timeout: float = float(config.REQUEST_TIMEOUT_SECONDS)
    success_delay: float = config.PACING_SUCCESS_DELAY_SECONDS
    failure_delay: float = config.PACING_FAILURE_DELAY_SECONDS
    progress_reset_delay: float = config.PROGRESS_RESET_DELAY_SECONDS

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    def update(self, key: str, value: Any):
        """
        Set one setting, converting ``value`` to the field's type.

        Raises:
            KeyError: If ``key`` is not a setting.
            ValueError: If the value cannot be converted or is negative.
        """
        if key not in self.field_names():
            raise KeyError(f"Unknown setting: {key}")

        converted = type(getattr(self, key))(value)
        if isinstance(converted, (int, float)) and converted < 0:
            raise ValueError(f"{key} must not be negative")
        setattr(self, key, converted)


def save_config(settings: Settings, path: Optional[Path] = None) -> bool:
    """
    Persist the settings to the configuration file.

    Args:
        settings: The settings to be saved.
        path: Override for the configuration file location.

    Returns:
        bool: True when the file was written.
    """
    logger = logging.getLogger(__name__)
    target = Path(path) if path else CONFIG_PATH

    try:
        data = asdict(settings)

        # Log the configuration being saved (with sensitive data masked)
        log_config("Saving Configuration", data, logger)

        with open(target, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

        logger.info(f"Configuration saved successfully to {target}")
        return True

    except OSError as e:
        logger.error(f"Failed to save configuration: {e}", exc_info=True)
        return False


def load_config(path: Optional[Path] = None) -> Settings:
    """
    Load settings from the hidden JSON file.

    Missing files yield defaults. Unknown keys are ignored and values that
    cannot be converted keep their default, so a hand-edited file never
    stops the application from starting.
    """
    logger = logging.getLogger(__name__)
    target = Path(path) if path else CONFIG_PATH
    settings = Settings()

    if not target.exists():
        logger.info(f"No existing configuration file found at {target}")
        return settings

    try:
        logger.info(f"Loading configuration from {target}")

        with open(target, "r", encoding="utf-8") as f:
            data = json.load(f)

        # Log the loaded configuration (with sensitive data masked)
        log_config("Loaded Configuration", data, logger)

        if not isinstance(data, dict):
            logger.error(f"Configuration file {target} does not hold an object")
            return settings

        for key, value in data.items():
            try:
                settings.update(key, value)
            except KeyError:
                logger.debug(f"Ignoring unknown setting: {key}")
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid value for {key}: {e}")

        logger.info("Configuration loaded and applied successfully")

    except json.JSONDecodeError as e:
        logger.error(f"Configuration file is corrupted: {e}", exc_info=True)
    except OSError as e:
        logger.error(f"Failed to load configuration: {e}", exc_info=True)

    return settings
