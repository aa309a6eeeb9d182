# leakscope/utils/config.py - Configuration management
"""
Configuration management for the profiling engine.
Loads and validates configuration from YAML files.
"""

import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from leakscope.errors import ConfigError


class Config:
    """
    Configuration manager for the engine.

    Loads configuration from YAML files and provides access to settings.
    Each component receives its own section as a plain dictionary.
    """

    DEFAULT_CONFIG = {
        'store': {
            'live_window': 60,
            'bucket_width_schedule': [
                {'age': 0, 'width': 10},
                {'age': 600, 'width': 60},
                {'age': 21600, 'width': 600},
            ],
            'retention_horizon': 604800,
            'max_buckets': 100000,
            'max_tag_sets_per_target': 64,
            'shards': 16,
            'float_epsilon': 1e-9,
        },
        'scorer': {
            'min_buckets': 6,
            'max_buckets': 60,
            'slope_thresholds': {
                'default': 0.0,
                'inuse-space': 4096,
                'alloc-space': 4096,
            },
            'confidence_floor': 0.8,
            'interval': 60,
        },
        'compaction': {
            'interval': 30,
        },
        'query': {
            'default_deadline': 0,
        },
        'output': {
            'format': 'stdout',
            'prometheus_port': 9090,
        },
    }

    SECTIONS = ('store', 'scorer', 'compaction', 'query', 'output')

    OUTPUT_FORMATS = ('stdout', 'json')

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to YAML configuration file
        """
        self.logger = logging.getLogger(__name__)
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)

        if config_file:
            self.load_from_file(config_file)

    def load_from_file(self, config_file: str):
        """
        Load configuration from YAML file.

        Args:
            config_file: Path to YAML file

        Raises:
            ConfigError: if the file is not a mapping of known sections
        """
        config_path = Path(config_file)

        if not config_path.exists():
            self.logger.warning(f"Config file not found: {config_file}, using defaults")
            return

        try:
            with open(config_path, 'r') as f:
                loaded_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to load config: {e}")
            raise ConfigError(f"invalid YAML in {config_file}: {e}") from e

        if not isinstance(loaded_config, dict):
            raise ConfigError(f"{config_file} must contain a mapping")
        unknown = set(loaded_config) - set(self.SECTIONS)
        if unknown:
            raise ConfigError(f"unknown config sections: {', '.join(sorted(unknown))}")

        # Merge with defaults
        self._merge_config(self.config, loaded_config)
        self.logger.info(f"Loaded configuration from {config_file}")

    def _merge_config(self, base: Dict, override: Dict):
        """
        Recursively merge configuration dictionaries.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary
        """
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., 'store.live_window')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """
        Set configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., 'scorer.min_buckets')
            value: Value to set
        """
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def section(self, name: str) -> Dict:
        """
        Copy of one configuration section.

        Args:
            name: Section name (e.g., 'store')

        Returns:
            Section dictionary
        """
        if name not in self.SECTIONS:
            raise ConfigError(f"unknown config section: {name}")
        return copy.deepcopy(self.config.get(name, {}))

    def validate(self):
        """
        Check the compaction, query and output sections.

        The store and scorer sections are checked by the components that
        receive them.

        Raises:
            ConfigError: on an unknown option or an out-of-range value
        """
        for name in self.SECTIONS:
            section = self.config.get(name)
            if not isinstance(section, dict):
                raise ConfigError(f"config section {name} must be a mapping")
            if name in ('store', 'scorer'):
                continue
            unknown = set(section) - set(self.DEFAULT_CONFIG[name])
            if unknown:
                raise ConfigError(f"unknown {name} options: {', '.join(sorted(unknown))}")

        interval = self.get('compaction.interval')
        if not _is_number(interval) or interval <= 0:
            raise ConfigError(f"compaction.interval must be a positive number, got {interval!r}")

        deadline = self.get('query.default_deadline')
        if not _is_number(deadline) or deadline < 0:
            raise ConfigError(f"query.default_deadline must be a number >= 0, got {deadline!r}")

        output_format = self.get('output.format')
        if output_format not in self.OUTPUT_FORMATS:
            raise ConfigError(
                f"output.format must be one of {', '.join(self.OUTPUT_FORMATS)}, got {output_format!r}"
            )

        port = self.get('output.prometheus_port')
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(f"output.prometheus_port must be a port number, got {port!r}")

    def to_dict(self) -> Dict:
        """
        Get full configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.config)

    def save_to_file(self, config_file: str):
        """
        Save current configuration to YAML file.

        Args:
            config_file: Path to output YAML file
        """
        config_path = Path(config_file)

        try:
            with open(config_path, 'w') as f:
                yaml.dump(self.config, f, default_flow_style=False)

            self.logger.info(f"Saved configuration to {config_file}")

        except Exception as e:
            self.logger.error(f"Failed to save config: {e}")
            raise


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
