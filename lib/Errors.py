"""
Error Definition Module

This module defines the exception hierarchy shared by the daemon,
its workers, the delayed job scheduler and the submission client.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

class JobsDaemonError(Exception):
    """
    Base class for every error raised by JobsDaemon.
    """

class ConfigurationError(JobsDaemonError):
    """
    Missing prerequisites, invalid paths or invalid configuration.
    """

class AlreadyRunningError(JobsDaemonError):
    """
    A live daemon is already recorded at the PID location.
    """

class NotRunningError(JobsDaemonError):
    """
    No live daemon is recorded at the PID location.
    """

class MalformedPayloadError(JobsDaemonError):
    """
    A job payload is empty or does not decode into a job envelope.

    Attributes:
        job_id (str): Id read from the payload, None if it has none
    """

    def __init__(self, message: str, job_id: str = None) -> None:
        super().__init__(message)
        self.job_id = job_id

class DispatchError(JobsDaemonError):
    """
    A task could not be resolved or failed while executing.
    """

class TransportError(JobsDaemonError):
    """
    The broker could not be reached or answered unexpectedly.
    """

class RestartLimitExceededError(JobsDaemonError):
    """
    The worker pool reached its total spawn limit.
    """

class InvalidArgumentError(JobsDaemonError):
    """
    An operation was called with an invalid argument.
    """
