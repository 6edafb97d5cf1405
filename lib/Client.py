"""
Job Submission Client Module

This module is the entry point for callers submitting jobs. Jobs
with a scheduled time go to the delayed job store, every other job
goes straight to the broker.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
from datetime import datetime, timedelta

## import private pkgs
from Config import Config
from Broker import RedisBroker
from DelayedStore import DelayedStore, build_url
from Worker import function_name
from Job import JobEnvelope, Priority, utc_now
from Errors import TransportError, ConfigurationError

def build_broker(logger: object, config: dict, config_name: str) -> RedisBroker:
    """
    Build the broker client of a named configuration.

    Args:
        logger (object): Application logger
        config (dict): Configuration document
        config_name (str): Configuration name

    Returns:
        RedisBroker: Unconnected broker client
    """

    section = Config.section(config, config_name).get('redis') or {}
    if not section.get('servers'):
        raise ConfigurationError('No redis servers configured for "%s"' % (config_name))

    return RedisBroker(
        logger,
        section['servers'],
        function_name(config.get('name', 'JobsDaemon')),
        socket_timeout = section.get('socket_timeout', 10),
        result_ttl = section.get('result_ttl', 3600),
    )

def build_store(logger: object, config: dict, config_name: str) -> DelayedStore:
    """
    Build the delayed job store of a named configuration.

    Args:
        logger (object): Application logger
        config (dict): Configuration document
        config_name (str): Configuration name

    Returns:
        DelayedStore: Store with its table created
    """

    section = Config.section(config, config_name)
    if not section.get('db'):
        raise ConfigurationError('No database configured for "%s"' % (config_name))

    try:
        url = build_url(section['db'])

    except KeyError as e:
        raise ConfigurationError('Database setting %s missing for "%s"' % (e, config_name))

    store = DelayedStore(logger, url, section.get('table', 'jd_delayed_jobs'))
    store.init()
    return store

class Client(object):
    """
    Submit jobs under one named configuration.
    """

    def __init__(self, logger: object, config: dict, config_name: str = 'default', broker: object = None, store: object = None) -> None:
        """
        Args:
            logger (object): Application logger
            config (dict): Configuration document
            config_name (str): Configuration name
            broker (RedisBroker): Broker client, built from the configuration by default
            store (DelayedStore): Delayed store, built on first use by default

        Returns:
            None
        """

        self.logger = logger
        self.config = config
        self.config_name = config_name
        self.broker = broker or build_broker(logger, config, config_name)
        self._store = store

    @property
    def store(self) -> DelayedStore:
        if self._store is None:
            self._store = build_store(self.logger, self.config, self.config_name)

        return self._store

    def submit(self, task: str, args: list = None, background: bool = True, priority: Priority = Priority.NORMAL, scheduled_at: datetime = None, timeout: float = 30):
        """
        Submit a job.

        Args:
            task (str): Task identifier
            args (list): Positional task arguments
            background (bool): Return the job id instead of waiting for the result
            priority (Priority): Broker priority
            scheduled_at (datetime): Run at this time through the delayed store
            timeout (float): Seconds to wait for the result of a foreground job

        Returns:
            object: Job id for scheduled and background jobs, otherwise the result

        Raises:
            TransportError: Broker unreachable or no result in time
        """

        envelope = JobEnvelope(
            task = task,
            config = self.config_name,
            args = list(args or []),
            priority = Priority(priority),
            due_at = scheduled_at,
        )

        if envelope.due_at is not None:
            return self.store.schedule(envelope)

        self.broker.submit(envelope)
        if background:
            return envelope.id

        found, result = self.broker.wait_result(envelope.id, timeout)
        if not found:
            raise TransportError('No result for job %s within %ss' % (envelope.id, timeout))

        return result

    def ping(self, delay: float = 0, timeout: float = 10) -> bool:
        """
        Check that at least one worker answers.

        Args:
            delay (float): Submit through the delayed store, due in `delay` seconds
            timeout (float): Seconds to wait beyond the delay

        Returns:
            bool: True if a worker answered
        """

        scheduled_at = utc_now() + timedelta(seconds = delay) if delay and delay > 0 else None
        job_id = self.submit('ping', priority = Priority.HIGH, scheduled_at = scheduled_at)
        self.logger.info({'status': 'ping submitted', 'id': job_id, 'delay': delay})

        found, result = self.broker.wait_result(job_id, (delay or 0) + timeout)
        self.logger.info({'status': 'ping answered' if found else 'ping timed out', 'id': job_id, 'result': result})
        return found and result == 'pong'

    def cancel(self, job_id: str) -> bool:
        return self.store.remove(job_id)
