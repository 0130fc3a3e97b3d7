"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sfloader.exceptions import ConfigurationError
from sfloader.models.config import Budget, LoaderConfig

log = logging.getLogger(__name__)

_LIST_KEYS = {"mirrors", "essential_soundfonts", "critical_assets"}
_BUDGET_PREFIX = "budget_"


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> LoaderConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        A missing file is not an error: the defaults are used.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated LoaderConfig object.

        Raises:
            ConfigurationError: If the config file is invalid or validation fails.
        """
        config_from_file: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(
                    f"Error parsing configuration file: {e}"
                ) from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            config_from_file = self._get_config_as_dict()

        budget_options = dict(config_from_file.pop("budget", {}))
        if cli_options:
            for key, value in cli_options.items():
                if key.startswith(_BUDGET_PREFIX):
                    budget_options[key[len(_BUDGET_PREFIX) :]] = value
                else:
                    config_from_file[key] = value

        try:
            return LoaderConfig(
                **config_from_file,
                budget=Budget(**budget_options),
                config_path=str(self.config_file_path.parent),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any] | None = None) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: A dictionary of settings overriding the defaults.
        """
        settings = settings or {}
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}
        defaults = self._default_values()

        for key in sorted(LoaderConfig.get_ini_keys()):
            value = settings.get(key, defaults.get(key))
            if value is not None:
                config["DEFAULT"][key] = self._to_ini(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    @staticmethod
    def _default_values() -> dict[str, Any]:
        defaults = LoaderConfig.model_construct()
        values = {
            key: getattr(defaults, key)
            for key in LoaderConfig.model_fields
            if key not in ("config_path", "budget")
        }
        budget = Budget()
        values.update(
            {f"{_BUDGET_PREFIX}{key}": getattr(budget, key) for key in Budget.model_fields}
        )
        return values

    @staticmethod
    def _to_ini(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, list):
            return ",".join(map(str, value))
        return str(value)

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        result: dict[str, Any] = {}
        budget: dict[str, Any] = {}

        for key, raw in section.items():
            if key not in LoaderConfig.get_ini_keys():
                log.debug(f"Ignoring unknown configuration key '{key}'.")
                continue
            if key in _LIST_KEYS:
                result[key] = [item.strip() for item in raw.split(",") if item.strip()]
            elif key.startswith(_BUDGET_PREFIX):
                budget[key[len(_BUDGET_PREFIX) :]] = raw
            else:
                result[key] = raw

        result["budget"] = budget
        return result

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = self._default_values()
        needs_saving = False
        config_section = self._parser["DEFAULT"]

        for key in sorted(LoaderConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = self._to_ini(defaults[key])
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
