"""
Worker Module

This module implements the worker loop: connect to the broker,
register the daemon's function, then pull, execute and report jobs
until told to stop.

Task failures are contained in the job callback and never end the
worker. A worker that cannot register at all notifies its supervisor
with the abort signal and exits non-zero.
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import os
import time
import socket

## import private pkgs
from Job import JobEnvelope
from Broker import ReturnCode
from Signals import ABORT_SIGNAL
from Errors import MalformedPayloadError, TransportError

def function_name(name: str) -> str:
    """
    Function name every daemon instance named `name` registers.

    Args:
        name (str): Daemon name

    Returns:
        str: Function name
    """

    return '%s::run' % (name)

class Worker(object):
    """
    Single job executing process.
    """

    def __init__(self, logger: object, broker: object, dispatcher: object, flags: object, atomic: bool = False, blocking: bool = False, parent_pid: int = None, poll_interval: float = 0.05, block_timeout: int = 1, reconnect_interval: float = 5, sleep = time.sleep) -> None:
        """
        Initialize the worker.

        Args:
            logger (object): Application logger
            broker (RedisBroker): Broker client, connected by `run`
            dispatcher (Dispatcher): Task dispatcher
            flags (ProcessFlags): Flags of this process
            atomic (bool): Exit after exactly one job
            blocking (bool): Block on the broker instead of polling
            parent_pid (int): Supervisor to notify on startup failure
            poll_interval (float): Pause between empty polls
            block_timeout (int): Blocking wait per fetch, bounds stop latency
            reconnect_interval (float): Back off after losing the broker
            sleep (callable): Sleep function

        Returns:
            None
        """

        self.logger = logger
        self.broker = broker
        self.dispatcher = dispatcher
        self.flags = flags
        self.atomic = atomic
        self.blocking = blocking
        self.parent_pid = parent_pid
        self.poll_interval = poll_interval
        self.block_timeout = block_timeout
        self.reconnect_interval = reconnect_interval
        self.sleep = sleep

        self.worker_id = '%s:%d' % (socket.gethostname(), os.getpid())
        self.processed = 0

    def run(self) -> int:
        """
        Run the worker until stopped.

        Returns:
            int: Process exit code
        """

        self.logger.info({'status': 'starting worker', 'function': self.broker.function, 'blocking': self.blocking, 'atomic': self.atomic})

        try:
            self.broker.connect()
            self.broker.register(self.worker_id)

        except TransportError as e:
            self.logger.error({'status': 'worker could not register', 'error': str(e)})
            self.abort()
            return 1

        try:
            self.loop()

        finally:
            self.broker.unregister(self.worker_id)
            self.broker.close()

        self.logger.info({'status': 'worker finished', 'processed': self.processed})
        return 0

    def abort(self) -> None:
        if self.parent_pid:
            self.logger.warning({'status': 'notifying supervisor', 'pid': self.parent_pid})
            try:
                os.kill(self.parent_pid, ABORT_SIGNAL)

            except OSError as e:
                self.logger.error({'status': 'could not notify supervisor', 'error': str(e)})

    def loop(self) -> None:
        """
        Pull and execute jobs while running.

        Returns:
            None
        """

        while self.flags.running:
            fetched = self.broker.fetch(block = self.blocking, timeout = self.block_timeout)

            if fetched.code is ReturnCode.SUCCESS:
                self.logger.debug({'status': 'got new job'})
                self.work(fetched.payload)
                self.processed += 1
                if self.atomic:
                    self.flags.running = False

            elif fetched.code in (ReturnCode.NO_JOBS, ReturnCode.IO_WAIT):
                if not self.blocking:
                    self.sleep(self.poll_interval)

            elif fetched.code is ReturnCode.NO_ACTIVE_ENDPOINTS:
                self.logger.warning({'status': 'got disconnected, so waiting for server...'})
                self._backoff()
                self._reconnect()

            else:
                self.logger.error({'status': 'broker returned %s, leaving' % (fetched.code.value)})
                break

    def _backoff(self) -> None:
        ## sleep in slices so a stop request is honoured promptly
        remaining = self.reconnect_interval
        while self.flags.running and remaining > 0:
            step = min(0.5, remaining)
            self.sleep(step)
            remaining -= step

    def _reconnect(self) -> None:
        if not self.flags.running:
            return

        try:
            self.broker.connect()
            self.broker.register(self.worker_id)

        except TransportError as e:
            self.logger.warning({'status': 'broker still unavailable', 'error': str(e)})

    def work(self, payload):
        """
        Handle one job payload.

        Args:
            payload (bytes): Encoded job envelope

        Returns:
            object: Task result, None when the payload or the task failed
        """

        self.logger.debug({'status': 'handling job'})

        try:
            envelope = JobEnvelope.decode(payload)

        except MalformedPayloadError as e:
            self.logger.error({'status': 'ERROR', 'id': e.job_id, 'error': str(e)})
            if e.job_id is not None:
                self._publish(e.job_id, None)

            return None

        result = None
        try:
            result = self.dispatcher.execute(envelope.config, envelope.task, envelope.args)
            self.logger.info({'status': 'job done', 'id': envelope.id, 'task': envelope.task})

        except Exception as e:
            self.logger.error({'status': 'ERROR', 'id': envelope.id, 'task': envelope.task, 'error': str(e)})

        self._publish(envelope.id, result)
        return result

    def _publish(self, job_id: str, result) -> None:
        try:
            self.broker.complete(job_id, result)

        except TransportError as e:
            self.logger.warning({'status': 'could not publish result', 'id': job_id, 'error': str(e)})
