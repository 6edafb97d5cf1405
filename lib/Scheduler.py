"""
Delayed Job Scheduler Service

This module implements the long-running process promoting due jobs
from the delayed job store into the broker queue. Polling is driven
by an APScheduler interval job running on a single thread; every
tick drains all jobs that are due.

Responsibilities:
- Initialize and configure APScheduler
- Claim due jobs and resubmit them for immediate dispatch
- Manage scheduler lifecycle and graceful shutdown
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import time
import signal
import logging
from datetime import datetime, timezone

## import 3rd pkgs
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

## import private pkgs
from Signals import ProcessFlags, Role, Intent, SignalRegistry
from Errors import InvalidArgumentError, TransportError

SCHEDULER_SIGNALS = {
    signal.SIGTERM: Intent.STOP,
    signal.SIGINT: Intent.STOP,
}

class APSchedulerForwardHandler(logging.Handler):
    """
    Route APScheduler's own records into the daemon log.

    Errors and warnings keep their level; everything below, such as
    the per-tick "Running job" chatter, is demoted to debug so a poll
    every few seconds does not flood the log. Records that fail to
    format go through `handleError` like any other handler.
    """

    def __init__(self, my_logger):
        """
        Args:
            my_logger (object): Logger receiving `{'apscheduler': ...}` messages
        """

        super().__init__()

        ## application logger used for forwarding
        self.my_logger = my_logger

    def emit(self, record):
        try:
            msg = self.format(record)

            ## map APScheduler log levels to application logger
            if record.levelno >= logging.ERROR:
                self.my_logger.error({'apscheduler': msg})

            elif record.levelno >= logging.WARNING:
                self.my_logger.warning({'apscheduler': msg})

            else:
                self.my_logger.debug({'apscheduler': msg})

        except Exception:
            self.handleError(record)

class DelayedJobScheduler(object):
    """
    Promote due jobs from the delayed store into the broker.
    """

    def __init__(self, logger: object, store: object, broker: object, config_name: str, flags: ProcessFlags = None, clock = time.time, log: object = None) -> None:
        """
        Initialize the scheduler service.

        Args:
            logger (object): Application logger
            store (DelayedStore): Delayed job store
            broker (RedisBroker): Broker client
            config_name (str): Configuration served by this scheduler
            flags (ProcessFlags): Flags of this process
            clock (callable): Returns the current time in epoch seconds
            log (Log): Log object, used to retag the process

        Returns:
            None
        """

        self.logger = logger
        self.store = store
        self.broker = broker
        self.config_name = config_name
        self.flags = flags or ProcessFlags(role = Role.SCHEDULER)
        self.clock = clock
        self.log = log

        ## internal runtime state
        self._scheduler = None
        self.promoted = 0

    def _setup_apscheduler_logging(self) -> None:
        """
        Redirect APScheduler internal logs into the application logger.

        Returns:
            None
        """

        aps_logger = logging.getLogger('apscheduler')
        aps_logger.setLevel(logging.INFO)

        handler = APSchedulerForwardHandler(self.logger)
        handler.setFormatter(logging.Formatter('%(levelname)s %(name)s %(message)s'))

        ## disable log propagation to avoid duplicate logs
        aps_logger.handlers = [handler]
        aps_logger.propagate = False

    def poll(self) -> int:
        """
        Promote every job that is due.

        Returns:
            int: Number of promoted jobs
        """

        count = 0
        while self.flags.running:
            try:
                with self.store.claim(self.clock()) as envelope:
                    if envelope is None:
                        break

                    self.broker.submit(envelope.promoted())

            except TransportError as e:
                ## the claim was rolled back, the job stays in the store
                self.logger.error({'status': 'promotion failed', 'error': str(e)})
                break

            count += 1
            self.logger.info({'status': 'job promoted', 'id': envelope.id, 'task': envelope.task, 'config': self.config_name})

        self.promoted += count
        return count

    def start(self, interval: float) -> None:
        """
        Start polling in the background.

        Args:
            interval (float): Poll interval in seconds

        Returns:
            None

        Raises:
            InvalidArgumentError: interval is not positive
        """

        if not interval or interval <= 0:
            raise InvalidArgumentError('Poll interval must be positive, got %s' % (interval))

        self._setup_apscheduler_logging()
        self._scheduler = BackgroundScheduler(
            executors = {
                ## promotion is sequential
                'default': ThreadPoolExecutor(max_workers = 1),
            },
            job_defaults = {
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None,
            },
            timezone = timezone.utc,
        )
        self._scheduler.add_job(
            self.poll,
            trigger = 'interval',
            seconds = interval,
            id = 'promote:%s' % (self.config_name),
            next_run_time = datetime.now(timezone.utc),
        )
        self._scheduler.start()
        self.logger.info({'status': 'scheduler started', 'config': self.config_name, 'interval': interval})

    def stop(self) -> None:
        """
        Stop polling, waiting for a running poll to finish.

        Returns:
            None
        """

        try:
            if self._scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait = True)

        finally:
            self._scheduler = None

        self.logger.info({'status': 'scheduler stopped', 'promoted': self.promoted})

    def serve_forever(self, interval: float) -> None:
        """
        Run the scheduler until a termination signal arrives.

        Args:
            interval (float): Poll interval in seconds

        Returns:
            None

        Raises:
            InvalidArgumentError: interval is not positive
        """

        self.flags.reset(Role.SCHEDULER)
        if self.log is not None:
            self.log.set_role(Role.SCHEDULER.value)

        registry = SignalRegistry(self.flags, SCHEDULER_SIGNALS)
        registry.install()

        try:
            self.start(interval)
            while self.flags.running:
                time.sleep(0.5)

        finally:
            self.stop()
            registry.restore()
            self.flags.stopped = True
