from __future__ import annotations

import json
from datetime import timedelta

import pytest

from Client import Client, build_broker, build_store
from conftest import FUNCTION, FakeRedis
from Dispatcher import Dispatcher
from Errors import ConfigurationError, TransportError
from Job import JobEnvelope, Priority, utc_now
from Signals import ProcessFlags, Role
from Worker import Worker


class AnsweringRedis(FakeRedis):
    """Answers every high priority job right away, like an idle worker would."""

    def lpush(self, key, *values):
        size = super().lpush(key, *values)
        if key == f"{FUNCTION}:high":
            envelope = JobEnvelope.decode(self.rpop(key))
            super().lpush(f"{FUNCTION}:result:{envelope.id}", json.dumps({"result": "pong"}))
        return size


@pytest.fixture()
def client(logger, config, broker, store):
    return Client(logger, config, "default", broker=broker, store=store)


def test_scheduled_job_goes_to_the_delayed_store(client, store, redis_server) -> None:
    due = utc_now() + timedelta(minutes=5)

    job_id = client.submit("echo", [1], scheduled_at=due)

    assert store.get(job_id).due_at == due
    assert redis_server.lists == {}


def test_background_job_goes_to_the_broker(client, store, redis_server) -> None:
    job_id = client.submit("echo", [1], priority=Priority.LOW)

    [payload] = redis_server.queued("low")
    assert JobEnvelope.decode(payload).id == job_id
    assert store.pending() == 0


def test_foreground_job_returns_the_worker_result(logger, client, broker, config) -> None:
    job_id = client.submit("add", [2, 3])
    flags = ProcessFlags(role=Role.WORKER)
    Worker(logger, broker, Dispatcher(logger, config), flags, atomic=True).run()

    assert broker.wait_result(job_id, 1) == (True, 5)


def test_foreground_job_without_result_times_out(client) -> None:
    with pytest.raises(TransportError):
        client.submit("echo", background=False, timeout=1)


def test_ping_is_answered(logger, config, store) -> None:
    server = AnsweringRedis()
    client = Client(logger, config, "default", broker=build_broker(logger, config, "default"), store=store)
    client.broker.client_factory = lambda url, **kwargs: server

    assert client.ping() is True


def test_ping_without_workers_fails(client) -> None:
    assert client.ping(timeout=1) is False


def test_delayed_ping_goes_through_the_store(client, store) -> None:
    assert client.ping(delay=30, timeout=1) is False
    assert store.pending() == 1


def test_cancel_removes_scheduled_job(client, store) -> None:
    job_id = client.submit("echo", scheduled_at=utc_now() + timedelta(hours=1))

    assert client.cancel(job_id) is True
    assert store.pending() == 0


def test_builders_reject_incomplete_configuration(logger) -> None:
    config = {"configs": {"default": {"redis": {}, "db": {"host": "db"}}}}

    with pytest.raises(ConfigurationError):
        build_broker(logger, config, "default")

    with pytest.raises(ConfigurationError):
        build_store(logger, config, "default")

    with pytest.raises(ConfigurationError):
        build_broker(logger, config, "reports")
