from __future__ import annotations

import json
import os
import signal

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from conftest import FUNCTION, messages
from Dispatcher import Dispatcher
from Job import JobEnvelope
from Worker import Worker, function_name


def _worker(logger, broker, config, flags, **kwargs) -> Worker:
    kwargs.setdefault("sleep", lambda seconds: setattr(flags, "running", False))
    return Worker(logger, broker, Dispatcher(logger, config), flags, **kwargs)


def _queue(redis_server, *payloads) -> None:
    for payload in payloads:
        redis_server.lpush(f"{FUNCTION}:normal", payload)


def _result(redis_server, job_id):
    items = redis_server.lists.get(f"{FUNCTION}:result:{job_id}")
    return json.loads(items[0])["result"] if items else "missing"


def test_function_name_is_derived_from_daemon_name() -> None:
    assert function_name("JobsDaemon") == FUNCTION


def test_worker_runs_jobs_until_stopped(logger, broker, redis_server, config, flags) -> None:
    first = JobEnvelope(task="echo", args=[1])
    second = JobEnvelope(task="add", args=[2, 3])
    _queue(redis_server, first.encode(), second.encode())

    code = _worker(logger, broker, config, flags).run()

    assert code == 0
    assert _result(redis_server, first.id) == [1]
    assert _result(redis_server, second.id) == 5
    assert redis_server.sets[f"{FUNCTION}:workers"] == set()


def test_malformed_payloads_do_not_stop_the_worker(logger, broker, redis_server, config, flags, caplog) -> None:
    job = JobEnvelope(task="ping")
    _queue(redis_server, b"", b"{not json", job.encode())
    worker = _worker(logger, broker, config, flags)

    assert worker.run() == 0

    assert worker.processed == 3
    assert _result(redis_server, job.id) == "pong"
    errors = [m for m in messages(caplog, "error") if m]
    assert any("No workload" in m for m in errors)
    assert any("Invalid workload" in m for m in errors)


def test_work_returns_none_for_malformed_payload(logger, broker, config, flags) -> None:
    assert _worker(logger, broker, config, flags).work(b"") is None


def test_malformed_payload_with_id_is_answered_with_none(logger, broker, redis_server, config, flags) -> None:
    payload = json.dumps({"id": "abc123", "config": "default", "args": []})
    _queue(redis_server, payload)

    assert _worker(logger, broker, config, flags).run() == 0

    assert _result(redis_server, "abc123") is None
    assert broker.wait_result("abc123", 1) == (True, None)


def test_task_failures_are_contained(logger, broker, redis_server, config, flags) -> None:
    failing = JobEnvelope(task="operator:truediv", args=[1, 0])
    unknown = JobEnvelope(task="no_such_module:run")
    good = JobEnvelope(task="ping")
    _queue(redis_server, failing.encode(), unknown.encode(), good.encode())

    worker = _worker(logger, broker, config, flags)

    assert worker.run() == 0
    assert _result(redis_server, failing.id) is None
    assert _result(redis_server, unknown.id) is None
    assert _result(redis_server, good.id) == "pong"


def test_atomic_worker_exits_after_exactly_one_job(logger, broker, redis_server, config, flags) -> None:
    first, second = JobEnvelope(task="ping"), JobEnvelope(task="ping")
    _queue(redis_server, first.encode(), second.encode())
    sleeps = []

    worker = _worker(logger, broker, config, flags, atomic=True, sleep=sleeps.append)

    assert worker.run() == 0
    assert worker.processed == 1
    assert flags.running is False
    assert _result(redis_server, first.id) == "pong"
    assert len(redis_server.queued()) == 1


def test_registration_failure_aborts_to_supervisor(logger, broker, redis_server, config, flags, monkeypatch) -> None:
    redis_server.down = True
    sent = []
    monkeypatch.setattr(os, "kill", lambda pid, signum: sent.append((pid, signum)))

    code = _worker(logger, broker, config, flags, parent_pid=4242).run()

    assert code == 1
    assert sent == [(4242, signal.SIGUSR1)]


def test_foreground_worker_registration_failure_signals_nobody(logger, broker, redis_server, config, flags, monkeypatch) -> None:
    redis_server.down = True
    sent = []
    monkeypatch.setattr(os, "kill", lambda pid, signum: sent.append((pid, signum)))

    assert _worker(logger, broker, config, flags).run() == 1
    assert sent == []


def test_lost_broker_is_retried_after_backoff(logger, broker, redis_server, config, flags) -> None:
    job = JobEnvelope(task="ping")
    _queue(redis_server, job.encode())
    redis_server.failures["brpop"] = [RedisConnectionError("gone")]
    sleeps = []

    worker = _worker(logger, broker, config, flags, atomic=True, blocking=True, reconnect_interval=5, sleep=sleeps.append)

    assert worker.run() == 0
    assert sum(sleeps) == 5
    assert _result(redis_server, job.id) == "pong"


def test_blocking_worker_keeps_waiting_on_io_timeouts(logger, broker, redis_server, config, flags) -> None:
    job = JobEnvelope(task="ping")
    _queue(redis_server, job.encode())
    redis_server.failures["brpop"] = [RedisTimeoutError("slow"), RedisTimeoutError("slow")]

    worker = _worker(logger, broker, config, flags, atomic=True, blocking=True, sleep=lambda s: None)

    assert worker.run() == 0
    assert worker.processed == 1


def test_unexpected_broker_error_ends_the_loop(logger, broker, redis_server, config, flags) -> None:
    _queue(redis_server, JobEnvelope(task="ping").encode())
    redis_server.failures["rpop"] = [ResponseError("WRONGTYPE")]

    worker = _worker(logger, broker, config, flags, sleep=lambda s: None)

    assert worker.run() == 0
    assert worker.processed == 0
    assert len(redis_server.queued()) == 1
