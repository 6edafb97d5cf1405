from __future__ import annotations

import logging
import os
import signal
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from Errors import InvalidArgumentError
from Job import JobEnvelope, Priority
from Scheduler import APSchedulerForwardHandler, DelayedJobScheduler
from Signals import ProcessFlags, Role, State

BASE = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now.timestamp()


@pytest.fixture()
def clock():
    return Clock(BASE)


@pytest.fixture()
def scheduler(logger, store, broker, clock):
    return DelayedJobScheduler(logger, store, broker, "default", clock=clock)


def _queued_envelopes(redis_server):
    return [JobEnvelope.decode(payload) for payload in reversed(redis_server.queued())]


def test_job_is_promoted_once_when_due(scheduler, store, redis_server, clock, caplog) -> None:
    job = JobEnvelope(task="echo", due_at=BASE + timedelta(seconds=2))
    store.schedule(job)

    clock.now = BASE + timedelta(seconds=1)
    assert scheduler.poll() == 0
    assert store.get(job.id) == job
    assert redis_server.queued() == []

    clock.now = BASE + timedelta(seconds=2)
    assert scheduler.poll() == 1
    assert store.get(job.id) is None
    [promoted] = _queued_envelopes(redis_server)
    assert promoted.id == job.id
    assert promoted.due_at is None

    clock.now = BASE + timedelta(seconds=3)
    assert scheduler.poll() == 0
    promotions = [r.msg["id"] for r in caplog.records if isinstance(r.msg, dict) and r.msg.get("status") == "job promoted"]
    assert promotions == [job.id]


def test_equally_due_jobs_are_promoted_in_scheduling_order(scheduler, store, redis_server, clock) -> None:
    jobs = [JobEnvelope(task=f"job-{i}", due_at=BASE) for i in range(4)]
    for job in jobs:
        store.schedule(job)

    assert scheduler.poll() == 4
    assert [e.id for e in _queued_envelopes(redis_server)] == [j.id for j in jobs]
    assert scheduler.promoted == 4


def test_promotion_keeps_priority_queue(scheduler, store, redis_server) -> None:
    store.schedule(JobEnvelope(task="echo", due_at=BASE, priority=Priority.HIGH))
    scheduler.poll()

    assert len(redis_server.queued("high")) == 1


def test_broker_failure_leaves_job_in_store(scheduler, store, broker, redis_server) -> None:
    job = JobEnvelope(task="echo", due_at=BASE)
    store.schedule(job)
    broker.connect()
    redis_server.failures["lpush"] = [RedisConnectionError("gone")]

    assert scheduler.poll() == 0
    assert store.get(job.id) == job

    assert scheduler.poll() == 1
    assert store.get(job.id) is None


@pytest.mark.parametrize("interval", [0, -1, None])
def test_poll_interval_must_be_positive(scheduler, interval) -> None:
    with pytest.raises(InvalidArgumentError):
        scheduler.start(interval)


def test_background_polling_promotes_due_jobs(logger, store, broker, redis_server) -> None:
    job = JobEnvelope(task="echo", due_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    store.schedule(job)
    scheduler = DelayedJobScheduler(logger, store, broker, "default")

    scheduler.start(0.1)
    try:
        deadline = time.monotonic() + 5
        while scheduler.promoted == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        scheduler.stop()

    assert scheduler.promoted == 1
    assert [e.id for e in _queued_envelopes(redis_server)] == [job.id]


class RoleRecorder:
    def __init__(self) -> None:
        self.roles = []

    def set_role(self, role: str) -> None:
        self.roles.append(role)


def test_serve_forever_promotes_until_terminated(logger, store, broker, redis_server) -> None:
    job = JobEnvelope(task="echo", due_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    store.schedule(job)
    log = RoleRecorder()
    flags = ProcessFlags(role=Role.DAEMON)
    scheduler = DelayedJobScheduler(logger, store, broker, "default", flags=flags, log=log)
    previous = signal.getsignal(signal.SIGTERM)

    def terminate_once_promoted():
        deadline = time.monotonic() + 5
        while scheduler.promoted == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
        os.kill(os.getpid(), signal.SIGTERM)

    threading.Thread(target=terminate_once_promoted, daemon=True).start()
    scheduler.serve_forever(0.1)

    assert flags.state is State.STOPPED
    assert flags.role is Role.SCHEDULER
    assert log.roles == [Role.SCHEDULER.value]
    assert scheduler.promoted == 1
    assert scheduler._scheduler is None
    assert signal.getsignal(signal.SIGTERM) == previous


def test_serve_forever_rejects_invalid_interval(logger, store, broker) -> None:
    flags = ProcessFlags(role=Role.SCHEDULER)
    scheduler = DelayedJobScheduler(logger, store, broker, "default", flags=flags)
    previous = signal.getsignal(signal.SIGTERM)

    with pytest.raises(InvalidArgumentError):
        scheduler.serve_forever(0)

    assert flags.state is State.STOPPED
    assert signal.getsignal(signal.SIGTERM) == previous


def test_apscheduler_records_are_forwarded_with_demoted_info(logger, caplog) -> None:
    aps = logging.getLogger("apscheduler.test")
    aps.setLevel(logging.DEBUG)
    aps.propagate = False
    handler = APSchedulerForwardHandler(logger)
    aps.addHandler(handler)
    try:
        with caplog.at_level(logging.DEBUG, logger=logger.name):
            aps.warning("missed run")
            aps.info("Running job")
    finally:
        aps.removeHandler(handler)

    levels = [(r.levelno, r.msg["apscheduler"]) for r in caplog.records if isinstance(r.msg, dict) and "apscheduler" in r.msg]
    assert levels == [(logging.WARNING, "missed run"), (logging.DEBUG, "Running job")]
