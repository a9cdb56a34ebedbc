'''Global configuration system supporting JSON5 files and command-line overrides'''

import json5
import argparse
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Config:
    '''Global configuration singleton'''

    _instance = None
    _initialized = False

    # Default configuration values
    _defaults = {
        'mode'                          : 'pseudo',
        'version'                       : 'auto',
        'deobfuscate'                   : False,
        'optimize'                      : False,
        'indent'                        : '  ',
        'deobfuscate_max_iterations'    : 16,
        'optimize_max_iterations'       : 8,
        'structure_max_steps'           : 4096,
        'log_level'                     : 'WARNING',
    }

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._config = self._defaults.copy()
            self._cli_overrides = {}
            self._initialized = True

    def load_file(self, filepath: str | Path) -> bool:
        '''Load configuration from JSON5 file'''
        filepath = Path(filepath)
        if not filepath.exists():
            return False

        try:
            with open(filepath, 'r', encoding = 'utf-8') as f:
                data = json5.loads(f.read())

        except (OSError, ValueError) as e:
            logger.warning('failed to load config from %s: %s', filepath, e)
            return False

        if not isinstance(data, dict):
            logger.warning('ignoring config %s: top level is not an object', filepath)
            return False

        self._config.update(data)
        return True

    def load_defaults(self):
        '''Load default configuration files'''
        # Project config shipped next to the package
        project_config = Path(__file__).parent.parent / 'config.json5'
        self.load_file(project_config)

    def reset(self):
        '''Drop file and command-line overrides'''
        self._config = self._defaults.copy()
        self._cli_overrides = {}

    def parse_args(self, args: list[str] = None):
        '''Parse command-line arguments and override config'''
        parser = argparse.ArgumentParser(
            description = 'deqjs configuration',
            add_help = False
        )

        parser.add_argument(
            '--config',
            type = str,
            help = 'Path to config file'
        )

        parser.add_argument('--mode', type = str)
        parser.add_argument('--version', type = str, choices = ['auto', 'current', 'legacy'])
        parser.add_argument('--deobfuscate', action = 'store_true', default = None)
        parser.add_argument('--optimize', action = 'store_true', default = None)
        parser.add_argument('--log-level', type = str, dest = 'log_level')

        # Parse known args, ignore unknown
        parsed, _ = parser.parse_known_args(args)

        # Load config file if specified
        if parsed.config:
            self.load_file(parsed.config)

        # Apply command-line overrides
        for key in ('mode', 'version', 'deobfuscate', 'optimize', 'log_level'):
            value = getattr(parsed, key)
            if value is not None:
                self._cli_overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        '''Get configuration value'''
        # CLI overrides have highest priority
        if key in self._cli_overrides:
            return self._cli_overrides[key]

        # Then config file values
        if key in self._config:
            return self._config[key]

        # Finally default value
        return default

    def set(self, key: str, value: Any):
        '''Set configuration value at runtime'''
        self._config[key] = value

    @property
    def mode(self) -> str:
        return str(self.get('mode'))

    @property
    def version(self) -> str:
        return str(self.get('version'))

    @property
    def deobfuscate(self) -> bool:
        return bool(self.get('deobfuscate'))

    @property
    def optimize(self) -> bool:
        return bool(self.get('optimize'))

    @property
    def indent(self) -> str:
        return str(self.get('indent'))


# Global config instance
_config = Config()


def get_config() -> Config:
    '''Get global config instance'''
    return _config


def default_indent() -> str:
    '''Get default indent'''
    return _config.indent


def default_deobfuscate_max_iterations() -> int:
    return int(_config.get('deobfuscate_max_iterations'))


def default_optimize_max_iterations() -> int:
    return int(_config.get('optimize_max_iterations'))


def default_structure_max_steps() -> int:
    '''Upper bound on structuring steps per function'''
    return int(_config.get('structure_max_steps'))


def init_config(args: list[str] = None):
    '''Initialize configuration system'''
    _config.load_defaults()
    if args is not None:
        _config.parse_args(args)


# Auto-load defaults on import
_config.load_defaults()
