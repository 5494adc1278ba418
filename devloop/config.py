import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import devloop.settings as default_settings

log = logging.getLogger(__name__)

POSITIVE_SETTINGS = {"POLL_INTERVAL_SECONDS"}
NON_NEGATIVE_SETTINGS = {"GRACE_PERIOD_SECONDS", "LOG_HISTORY_COUNT"}
COMMAND_SETTINGS = {"WATCH_COMMAND", "RUN_COMMAND"}


class MergedSettings:
    """
    A singleton class that merges default settings with JSON/env overrides.

    This class provides a unified, attribute-based access point for all
    configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment and `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from `overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param overrides_path: Alternative overrides file, defaults to `OVERRIDES_JSON_PATH`.
        """
        self._load_defaults()
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._load_overrides()

    def _load_defaults(self) -> None:
        """
        Loads all uppercase attributes from the settings.py module as defaults.
        """
        for key in dir(default_settings):
            if key.isupper():
                value = getattr(default_settings, key)
                # Lists and sets are copied so overrides never leak into the module.
                if isinstance(value, (list, set, dict)):
                    value = type(value)(value)
                setattr(self, key, value)

    def _coerce(self, key: str, value: Any) -> Any:
        """
        Coerces a raw override value to the type of the current value and checks its range.

        :raises ValueError: If the value cannot be converted or is out of range.
        """
        new_value = self._convert(key, value)
        if key in POSITIVE_SETTINGS and new_value <= 0:
            raise ValueError(f"{key} must be greater than 0, got {new_value}")
        if key in NON_NEGATIVE_SETTINGS and new_value < 0:
            raise ValueError(f"{key} must not be negative, got {new_value}")
        if key in COMMAND_SETTINGS and not str(new_value).strip():
            raise ValueError(f"{key} must not be empty")
        return new_value

    def _convert(self, key: str, value: Any) -> Any:
        original_value = getattr(self, key, None)
        if isinstance(original_value, bool):
            if isinstance(value, bool):
                return value
            return str(value).lower() in ('true', '1', 't', 'yes', 'y')
        if isinstance(original_value, Path):
            return Path(value)
        if isinstance(original_value, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return list(value)
        if original_value is not None:
            return type(original_value)(value)
        return value

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the `overrides.json` file.

        It will only apply overrides for keys that are explicitly listed in
        the `MODIFIABLE_SETTINGS` set in `settings.py`.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(
                f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )
            return

        log.info(f"Loading configuration overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(
                    f"Attempted to override non-modifiable setting '{key}'. Ignoring."
                )
                continue
            try:
                setattr(self, key, self._coerce(key, value))
                log.debug(f"Overridden setting: {key} = {value}")
            except (ValueError, TypeError) as e:
                log.error(f"Ignoring override for '{key}': {e}")

    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Updates a modifiable setting and persists it to the overrides file.

        :param key: The setting name, e.g. 'POLL_INTERVAL_SECONDS'.
        :param value: The new value, usually a string from the command line.
        :return: A (success, message) tuple.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            message = f"Setting '{key}' is not modifiable."
            log.warning(f"Rejected config update: {message}")
            return False, message

        try:
            new_value = self._coerce(key, value)
        except (ValueError, TypeError) as e:
            message = f"Could not convert value '{value}' for key '{key}'. Error: {e}"
            log.error(f"Config update failed: {message}")
            return False, message

        setattr(self, key, new_value)
        self.save_overrides({k: getattr(self, k) for k in self.MODIFIABLE_SETTINGS})
        message = f"Setting '{key}' updated to '{new_value}'. Restart the watcher to apply it."
        log.info(message)
        return True, message

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Saves the provided dictionary of settings to the overrides JSON file.

        Only keys present in `MODIFIABLE_SETTINGS` are persisted, and only
        when they differ from the defaults in `settings.py`.

        :param overrides_to_save: A dictionary of settings to persist.
        """
        filtered_overrides = {
            key: str(value) if isinstance(value, Path) else value
            for key, value in overrides_to_save.items()
            if key in self.MODIFIABLE_SETTINGS and value != getattr(default_settings, key, None)
        }

        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(filtered_overrides, f, indent=4)
            log.info(
                f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}"
            )
        except IOError as e:
            log.error(
                f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return getattr(self, item, default)

# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
