"""
Broker Client Module

This module implements the client side of the job broker on top of
Redis lists. Jobs are pushed on one list per priority and popped by
workers in high, normal, low order; results are pushed on a per-job
list that expires after a configurable time.

Keys, for a function name F:
- F:high, F:normal, F:low    pending jobs
- F:result:<job id>          result of one job
- F:workers                  registered worker ids
"""

## version related
__author__ = "Kyle"
__version__ = "0.0.1"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import json
from enum import Enum
from typing import NamedTuple

## import 3rd pkgs
import redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

## import private pkgs
from Job import JobEnvelope, Priority
from Errors import TransportError

## pop order
PRIORITY_ORDER = (Priority.HIGH, Priority.NORMAL, Priority.LOW)

class ReturnCode(Enum):
    SUCCESS = 'success'
    NO_JOBS = 'no_jobs'
    IO_WAIT = 'io_wait'
    NO_ACTIVE_ENDPOINTS = 'no_active_endpoints'
    ERROR = 'error'

class FetchResult(NamedTuple):
    code: ReturnCode
    payload: bytes = None

class RedisBroker(object):
    """
    Redis backed broker client.
    """

    def __init__(self, logger: object, servers: list, function: str, socket_timeout: float = 10, result_ttl: int = 3600, client_factory = None) -> None:
        """
        Initialize the broker client. No connection is made yet.

        Args:
            logger (object): Application logger
            servers (list): Redis URLs, tried in order
            function (str): Registered function name, prefixes every key
            socket_timeout (float): Socket timeout in seconds
            result_ttl (int): Seconds a job result is kept
            client_factory (callable): Builds a client from a URL, defaults to redis.Redis.from_url

        Returns:
            None
        """

        if not servers:
            raise TransportError('No broker servers configured')

        self.logger = logger
        self.servers = list(servers)
        self.function = function
        self.socket_timeout = socket_timeout
        self.result_ttl = result_ttl
        self.client_factory = client_factory or redis.Redis.from_url

        ## runtime state
        self.client = None
        self.server = None
        self._next_server = 0

    def queue_key(self, priority: Priority) -> str:
        return '%s:%s' % (self.function, priority.value)

    def result_key(self, job_id: str) -> str:
        return '%s:result:%s' % (self.function, job_id)

    @property
    def workers_key(self) -> str:
        return '%s:workers' % (self.function)

    def connect(self) -> None:
        """
        Connect to the first server answering a PING.

        Servers are tried in order starting after the one used by
        the previous connection, so reconnecting rotates through
        the list.

        Returns:
            None

        Raises:
            TransportError: No server answered
        """

        self.close()
        errors = []
        for offset in range(len(self.servers)):
            index = (self._next_server + offset) % len(self.servers)
            server = self.servers[index]
            try:
                client = self.client_factory(server, socket_timeout = self.socket_timeout)
                client.ping()

            except RedisError as e:
                self.logger.warning({'status': 'broker server unavailable', 'server': server, 'error': str(e)})
                errors.append('%s: %s' % (server, e))
                continue

            self.client = client
            self.server = server
            self._next_server = (index + 1) % len(self.servers)
            self.logger.info({'status': 'broker connected', 'server': server})
            return

        raise TransportError('No broker server available (%s)' % ('; '.join(errors)))

    def close(self) -> None:
        if self.client is not None:
            try:
                self.client.close()

            except RedisError as e:
                self.logger.debug({'status': 'broker close failed', 'error': str(e)})

        self.client = None
        self.server = None

    def _require(self) -> None:
        if self.client is None:
            self.connect()

    def register(self, worker_id: str) -> None:
        """
        Register a worker under the function name.

        Args:
            worker_id (str): Worker identifier

        Returns:
            None

        Raises:
            TransportError: Broker unreachable
        """

        self._require()
        try:
            self.client.sadd(self.workers_key, worker_id)

        except RedisError as e:
            raise TransportError('Could not register %s: %s' % (self.function, e))

        self.logger.info({'status': 'registered function', 'function': self.function, 'worker': worker_id})

    def unregister(self, worker_id: str) -> None:
        if self.client is None:
            return

        try:
            self.client.srem(self.workers_key, worker_id)

        except RedisError as e:
            self.logger.warning({'status': 'unregister failed', 'function': self.function, 'error': str(e)})

    def workers(self) -> set:
        self._require()
        try:
            return {w.decode() if isinstance(w, bytes) else w for w in self.client.smembers(self.workers_key)}

        except RedisError as e:
            raise TransportError(str(e))

    def submit(self, envelope: JobEnvelope) -> str:
        """
        Push a job for immediate dispatch.

        Args:
            envelope (JobEnvelope): Job to submit, due_at must be unset

        Returns:
            str: Job id

        Raises:
            TransportError: Broker unreachable
        """

        self._require()
        try:
            self.client.lpush(self.queue_key(envelope.priority), envelope.encode())

        except RedisError as e:
            raise TransportError('Could not submit job %s: %s' % (envelope.id, e))

        self.logger.debug({'status': 'job submitted', 'id': envelope.id, 'task': envelope.task})
        return envelope.id

    def fetch(self, block: bool = False, timeout: int = 1) -> FetchResult:
        """
        Pop the next job.

        Args:
            block (bool): Wait up to `timeout` seconds for a job
            timeout (int): Blocking wait in seconds

        Returns:
            FetchResult: Return code and payload
        """

        keys = [self.queue_key(p) for p in PRIORITY_ORDER]
        try:
            self._require()
            if block:
                item = self.client.brpop(keys, timeout = timeout)
                if item:
                    return FetchResult(ReturnCode.SUCCESS, item[1])

            else:
                for key in keys:
                    payload = self.client.rpop(key)
                    if payload is not None:
                        return FetchResult(ReturnCode.SUCCESS, payload)

        except RedisTimeoutError:
            return FetchResult(ReturnCode.IO_WAIT)

        except (RedisConnectionError, TransportError) as e:
            self.logger.warning({'status': 'broker connection lost', 'error': str(e)})
            self.close()
            return FetchResult(ReturnCode.NO_ACTIVE_ENDPOINTS)

        except RedisError as e:
            self.logger.error({'status': 'broker error', 'error': str(e)})
            return FetchResult(ReturnCode.ERROR)

        return FetchResult(ReturnCode.NO_JOBS)

    def complete(self, job_id: str, result) -> None:
        """
        Publish the result of a job.

        Args:
            job_id (str): Job id
            result (object): JSON serializable result, others are stringified

        Returns:
            None

        Raises:
            TransportError: Broker unreachable
        """

        key = self.result_key(job_id)
        self._require()
        try:
            pipe = self.client.pipeline()
            pipe.lpush(key, json.dumps({'result': result}, default = str))
            pipe.expire(key, self.result_ttl)
            pipe.execute()

        except RedisError as e:
            raise TransportError('Could not publish result of %s: %s' % (job_id, e))

    def wait_result(self, job_id: str, timeout: int) -> tuple:
        """
        Wait for the result of a job.

        Args:
            job_id (str): Job id
            timeout (int): Seconds to wait

        Returns:
            tuple: (True, result) or (False, None) on timeout

        Raises:
            TransportError: Broker unreachable
        """

        self._require()
        try:
            item = self.client.blpop([self.result_key(job_id)], timeout = max(1, int(timeout)))

        except RedisError as e:
            raise TransportError('Could not wait for result of %s: %s' % (job_id, e))

        if not item:
            return False, None

        return True, json.loads(item[1])['result']
