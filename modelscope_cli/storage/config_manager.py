"""
Reads and writes the INI settings file and turns it into a validated DownloadConfig.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from modelscope_cli.exceptions import ConfigurationError
from modelscope_cli.models.config import DownloadConfig

log = logging.getLogger(__name__)

TOKEN_ENV_VAR = "MODELSCOPE_API_TOKEN"
SECTION = "DEFAULT"


def _default_settings() -> dict[str, str]:
    """Every INI key with its default value, as the strings written to disk."""
    defaults = DownloadConfig.model_construct()
    return {key: str(getattr(defaults, key)) for key in sorted(DownloadConfig.get_ini_keys())}


def _int_keys() -> set[str]:
    return {
        key
        for key, info in DownloadConfig.model_fields.items()
        if info.annotation is int
    }


class ConfigManager:
    """Owns one ``config.ini``: loading with overrides, first-time creation and key migration."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = Path(config_file_path)
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> DownloadConfig:
        """
        Builds the effective configuration.

        Precedence, lowest first: built-in defaults, the INI file, the
        ``MODELSCOPE_API_TOKEN`` environment variable, then ``cli_options``
        entries that are not None. The file may be missing.

        Raises:
            ConfigurationError: The file cannot be parsed or the merged values
            fail validation.
        """
        settings: dict[str, Any] = {}
        if self.config_file_path.is_file():
            self._read()
            if self._migrate_if_needed():
                log.info(
                    f"[yellow]Added missing default settings to {self.config_file_path}"
                    "[/yellow]"
                )
            settings = self._get_config_as_dict()

        if token := os.environ.get(TOKEN_ENV_VAR):
            settings["api_token"] = token

        for key, value in (cli_options or {}).items():
            if value is not None:
                settings[key] = value

        try:
            return DownloadConfig(
                **settings, config_path=str(self.config_file_path.parent)
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Writes a fresh file holding every known key; keys absent from
        ``settings`` get their defaults.
        """
        values = _default_settings()
        values.update(
            {
                key: str(value)
                for key, value in settings.items()
                if key in values and value is not None
            }
        )
        parser = configparser.ConfigParser(interpolation=None)
        parser[SECTION] = values
        self._write(parser)

    def get_config_as_dict(self) -> dict[str, Any]:
        """Raw file values with defaults filled in, without validation."""
        if not self._parser.defaults() and self.config_file_path.is_file():
            self._read()
        return self._get_config_as_dict()

    def _read(self) -> None:
        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(
                f"Cannot parse configuration file '{self.config_file_path}': {e}"
            ) from e

    def _write(self, parser: configparser.ConfigParser) -> None:
        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as f:
                parser.write(f)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot write configuration file '{self.config_file_path}': {e}"
            ) from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        section = self._parser[SECTION]
        int_keys = _int_keys()
        values: dict[str, Any] = {}
        for key, default in _default_settings().items():
            if key in int_keys:
                try:
                    values[key] = section.getint(key, int(default))
                except ValueError as e:
                    raise ConfigurationError(f"Setting '{key}' must be a number: {e}") from e
            else:
                values[key] = section.get(key, default)
        return values

    def _migrate_if_needed(self) -> bool:
        """Writes defaults for keys the file does not have yet. True if anything was added."""
        section = self._parser[SECTION]
        missing = {
            key: value for key, value in _default_settings().items() if key not in section
        }
        if not missing:
            return False

        for key, value in missing.items():
            log.debug(f"Config migration: '{key}' = '{value}'")
            section[key] = value
        try:
            self._write(self._parser)
        except ConfigurationError as e:
            log.error(f"Could not save migrated configuration: {e}")
            return False
        return True
