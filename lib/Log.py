"""
Logging Module

This module builds the application logger. Every record is tagged
with the role of the emitting process (Daemon, Worker, Scheduler or
Client) so that interleaved output of forked processes stays
readable.

Transports:
- Rotating log file under the configured log directory
- Console output when running verbose
- System log otherwise, when enabled
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import os
import logging
from logging.handlers import RotatingFileHandler, SysLogHandler

## record layout shared by every transport
LOG_FORMAT = '%(asctime)s %(levelname)s [%(role)s] %(process)d %(module)s.%(funcName)s %(message)s'

class RoleFilter(logging.Filter):
    """
    Inject the acting process role into every log record.
    """

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record):
        record.role = self.role
        return True

class Log(object):
    """
    Application logger factory.

    Attributes:
        logger (logging.Logger): Configured application logger
    """

    def __init__(self, config: dict, role: str = 'Daemon', verbose: bool = False) -> None:
        """
        Initialize the logger.

        Args:
            config (dict): Configuration document, reads `name` and `log`
            role (str): Initial role tag
            verbose (bool): Also print records to the console

        Returns:
            None
        """

        self.config = config
        self.log_config = config.get('log') or {}
        self.verbose = verbose
        self.role_filter = RoleFilter(role)

        ## one logger per program name
        self.logger = logging.getLogger(config.get('name', 'JobsDaemon'))
        self.logger.setLevel(logging.DEBUG if verbose else self.log_config.get('level', 'INFO'))
        self.logger.propagate = False

        ## drop handlers left over by a previous instance
        self.close()

        formatter = logging.Formatter(LOG_FORMAT)
        for handler in self._handlers():
            handler.setFormatter(formatter)
            handler.addFilter(self.role_filter)
            self.logger.addHandler(handler)

    def _handlers(self) -> list:
        """
        Build the transports selected by the configuration.

        Returns:
            list: Logging handlers
        """

        handlers = []

        ## log file
        path = self.log_config.get('path')
        if path:
            if not os.path.isabs(path):
                path = os.path.join(self.config.get('workpath', os.getcwd()), path)

            os.makedirs(path, exist_ok = True)
            filename = os.path.join(path, self.log_config.get('file', '%s.log' % (self.logger.name)))
            handlers.append(RotatingFileHandler(
                filename,
                maxBytes = self.log_config.get('max_bytes', 10 * 1024 * 1024),
                backupCount = self.log_config.get('backup_count', 5),
            ))

        ## console or syslog
        if self.verbose:
            handlers.append(logging.StreamHandler())

        elif self.log_config.get('syslog') and os.path.exists('/dev/log'):
            handlers.append(SysLogHandler(address = '/dev/log', facility = SysLogHandler.LOG_USER))

        if not handlers:
            handlers.append(logging.NullHandler())

        return handlers

    def set_role(self, role: str) -> None:
        """
        Change the role tag, used by a process right after fork.

        Args:
            role (str): New role tag

        Returns:
            None
        """

        self.role_filter.role = role

    def close(self) -> None:
        """
        Flush and detach every handler of the logger.

        Returns:
            None
        """

        for handler in list(self.logger.handlers):
            handler.flush()
            handler.close()
            self.logger.removeHandler(handler)
