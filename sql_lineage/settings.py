# -*- coding: utf-8 -*-
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from rich.logging import RichHandler

from sql_lineage import config
from sql_lineage.errors import ConfigError

# Settings that may be overridden from a YAML file or keyword arguments,
# mapped to the attribute name used by the rest of the package
_SETTINGS = {
    'SQL_MODELS_DIR': 'sql_models_dir',
    'SQL_SOURCE_MODELS': 'source_models_file',
    'STATE_FILE': 'state_file',
    'SQL_DIALECT': 'sql_dialect',
    'SQL_FILE_EXTENSION': 'sql_file_extension',
    'NORMALIZE_NAMES': 'normalize_names',
    'DEFAULT_LINEAGE_DEPTH': 'default_depth',
    'IMPACT_MAX_DEPTH': 'impact_max_depth',
    'MAX_COLUMN_PATHS': 'max_column_paths',
    'REBUILD_DEBOUNCE_SECONDS': 'debounce_seconds',
    'SEVERITY_BANDS': 'severity_bands',
    'LOG_LEVEL': 'log_level',
    'LOG_FORMAT': 'log_format',
}
_PATH_SETTINGS = {'SQL_MODELS_DIR', 'SQL_SOURCE_MODELS', 'STATE_FILE'}


class ConfigManager:
    """
    Manages application configuration and sets up logging.
    Defaults come from the config module; an optional YAML settings file and
    keyword overrides (using the config module's names) are applied on top.
    Ensures that all required configuration parameters are present.
    """
    def __init__(self, settings_file: Optional[Path] = None, configure_logging: bool = True, **overrides: Any):
        self._validate_config()
        values = {name: getattr(config, name, None) for name in _SETTINGS}
        if settings_file is not None:
            values.update(self._load_settings_file(Path(settings_file)))
        for name, value in overrides.items():
            if name not in _SETTINGS:
                raise ConfigError(f"Unknown setting: {name}")
            values[name] = value

        for name, attr in _SETTINGS.items():
            value = values[name]
            if name in _PATH_SETTINGS and value is not None:
                value = Path(value)
            setattr(self, attr, value)

        self.sql_file_extension = self.sql_file_extension or '.sql'
        self.normalize_names = bool(self.normalize_names)
        self._validate_values()

        if configure_logging:
            self.setup_logging()

    def _validate_config(self):
        """Checks for the presence of required attributes in the config module."""
        required = ['SQL_MODELS_DIR', 'STATE_FILE', 'SQL_FILE_EXTENSION', 'DEFAULT_LINEAGE_DEPTH']
        missing = [cfg for cfg in required if not hasattr(config, cfg)]
        if missing:
            raise ConfigError(f"Error: Missing required parameters in config.py: {', '.join(missing)}")

    def _validate_values(self):
        if not isinstance(self.default_depth, int) or not 1 <= self.default_depth <= 20:
            raise ConfigError(f"DEFAULT_LINEAGE_DEPTH must be an integer in [1, 20], got {self.default_depth!r}")
        if not isinstance(self.impact_max_depth, int) or not 1 <= self.impact_max_depth <= 20:
            raise ConfigError(f"IMPACT_MAX_DEPTH must be an integer in [1, 20], got {self.impact_max_depth!r}")
        if not isinstance(self.max_column_paths, int) or self.max_column_paths < 1:
            raise ConfigError(f"MAX_COLUMN_PATHS must be a positive integer, got {self.max_column_paths!r}")
        if self.debounce_seconds is None or self.debounce_seconds < 0:
            raise ConfigError(f"REBUILD_DEBOUNCE_SECONDS must be >= 0, got {self.debounce_seconds!r}")
        bands = self.severity_bands or {}
        missing = {'medium', 'high', 'critical'} - set(bands)
        if missing:
            raise ConfigError(f"SEVERITY_BANDS is missing bands: {', '.join(sorted(missing))}")
        if not bands['medium'] <= bands['high'] <= bands['critical']:
            raise ConfigError(f"SEVERITY_BANDS must be ascending, got {bands}")

    @staticmethod
    def _load_settings_file(settings_file: Path) -> Dict[str, Any]:
        """Reads overrides from a YAML mapping of config names to values."""
        if not settings_file.is_file():
            raise ConfigError(f"Settings file not found: {settings_file}")
        try:
            with settings_file.open('r', encoding='utf-8') as file:
                data = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse settings file {settings_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {settings_file} must contain a mapping")
        unknown = [key for key in data if key.upper() not in _SETTINGS]
        if unknown:
            raise ConfigError(f"Unknown settings in {settings_file}: {', '.join(map(str, unknown))}")
        return {key.upper(): value for key, value in data.items()}

    def setup_logging(self):
        """Configures the application's logger."""
        logging.basicConfig(
            level=self.log_level or 'INFO',
            format=self.log_format or '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            encoding='utf-8',
            handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_path=False)]
        )
        logging.getLogger('sql_lineage').debug(f"Logging configured at level {self.log_level or 'INFO'}")
