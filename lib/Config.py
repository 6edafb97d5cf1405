"""
Configuration Loader Module

This module loads the JSON configuration document shipped under
the project's etc/ directory and applies an optional environment
specific override on top of it.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import os
import copy
import json

## import private pkgs
from Errors import ConfigurationError

## environment variable selecting the override document
ENV_VARIABLE = 'JOBSD_ENV'

class Config(object):
    """
    Configuration document holder.

    The loaded document is exposed as a plain nested dict through
    the `config` attribute, mirroring how the rest of the code base
    reads its settings.
    """

    def __init__(self, workpath: str, env: str = None) -> None:
        """
        Load the configuration.

        Args:
            workpath (str): Project root directory containing etc/
            env (str): Optional environment name, falls back to JOBSD_ENV

        Returns:
            None
        """

        self.workpath = workpath
        self.env = env or os.environ.get(ENV_VARIABLE) or None
        self.path = os.path.join(self.workpath, 'etc', 'config.json')

        ## base document
        self.config = self.load(self.path)

        ## environment override
        if self.env:
            override = os.path.join(self.workpath, 'etc', 'config.%s.json' % (self.env))
            self.config = self.merge(self.config, self.load(override))

        self.config['env'] = self.env

    @staticmethod
    def load(path: str) -> dict:
        """
        Read one JSON document.

        Args:
            path (str): Document path

        Returns:
            dict: Parsed document

        Raises:
            ConfigurationError: File is missing, unreadable or not a JSON object
        """

        try:
            with open(path, 'r') as fh:
                document = json.load(fh)

        except FileNotFoundError:
            raise ConfigurationError("Can't find configuration file %s" % (path))

        except (OSError, ValueError) as e:
            raise ConfigurationError("Can't read configuration file %s: %s" % (path, e))

        if not isinstance(document, dict):
            raise ConfigurationError('Configuration file %s must hold a JSON object' % (path))

        return document

    @staticmethod
    def merge(base: dict, override: dict) -> dict:
        """
        Deep merge two documents, values of `override` win.

        Args:
            base (dict): Base document
            override (dict): Override document

        Returns:
            dict: New merged document
        """

        merged = copy.deepcopy(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = Config.merge(merged[key], value)

            else:
                merged[key] = copy.deepcopy(value)

        return merged

    @staticmethod
    def section(config: dict, name: str) -> dict:
        """
        Return the broker/store settings of one named configuration.

        Args:
            config (dict): Loaded configuration document
            name (str): Configuration name

        Returns:
            dict: Settings of that configuration

        Raises:
            ConfigurationError: Unknown configuration name
        """

        configs = config.get('configs') or {}
        if name not in configs:
            raise ConfigurationError('Unknown configuration "%s"' % (name))

        return configs[name]
