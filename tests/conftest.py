"""Shared test fixtures."""

from __future__ import annotations

import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from Broker import RedisBroker
from DelayedStore import DelayedStore
from Signals import ProcessFlags, Role

FUNCTION = "JobsDaemon::run"


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def lpush(self, *args):
        self.calls.append(("lpush", args))
        return self

    def expire(self, *args):
        self.calls.append(("expire", args))
        return self

    def execute(self):
        return [getattr(self.client, name)(*args) for name, args in self.calls]


class FakeRedis:
    """In-memory stand-in for the subset of redis.Redis the broker uses.

    `failures` maps a method name to exceptions raised, one per call,
    before the method behaves normally again.
    """

    def __init__(self, url="redis://fake/0", down=False):
        self.url = url
        self.down = down
        self.lists: dict[str, list[bytes]] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiry: dict[str, int] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.closed = 0

    def _check(self, op):
        if self.down:
            raise RedisConnectionError(f"{self.url} is down")
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def ping(self):
        self._check("ping")
        return True

    def close(self):
        self.closed += 1

    def sadd(self, key, *values):
        self._check("sadd")
        self.sets.setdefault(key, set()).update(values)
        return len(values)

    def srem(self, key, *values):
        self._check("srem")
        self.sets.setdefault(key, set()).difference_update(values)
        return len(values)

    def smembers(self, key):
        self._check("smembers")
        return {v.encode() for v in self.sets.get(key, set())}

    def lpush(self, key, *values):
        self._check("lpush")
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value.encode() if isinstance(value, str) else value)
        return len(items)

    def rpop(self, key):
        self._check("rpop")
        items = self.lists.get(key)
        return items.pop() if items else None

    def brpop(self, keys, timeout=0):
        self._check("brpop")
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key.encode(), items.pop()
        return None

    def blpop(self, keys, timeout=0):
        self._check("blpop")
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key.encode(), items.pop(0)
        return None

    def expire(self, key, ttl):
        self.expiry[key] = ttl
        return True

    def pipeline(self):
        return FakePipeline(self)

    def queued(self, priority="normal"):
        return list(self.lists.get(f"{FUNCTION}:{priority}", []))


@pytest.fixture()
def logger():
    log = logging.getLogger("jobsd.test")
    log.setLevel(logging.DEBUG)
    log.propagate = True
    return log


@pytest.fixture()
def redis_server():
    return FakeRedis()


@pytest.fixture()
def broker(logger, redis_server):
    return RedisBroker(
        logger,
        [redis_server.url],
        FUNCTION,
        client_factory=lambda url, **kwargs: redis_server,
    )


@pytest.fixture()
def store(logger, tmp_path):
    delayed = DelayedStore(logger, f"sqlite:///{tmp_path / 'delayed.db'}")
    delayed.init()
    yield delayed
    delayed.dispose()


@pytest.fixture()
def flags():
    return ProcessFlags(role=Role.WORKER)


@pytest.fixture()
def config(tmp_path):
    return {
        "name": "JobsDaemon",
        "log": {},
        "configs": {
            "default": {
                "redis": {"servers": ["redis://fake/0"]},
                "db": {"url": f"sqlite:///{tmp_path / 'delayed.db'}"},
                "table": "jd_delayed_jobs",
                "tasks": {"add": "operator:add"},
            },
        },
    }


def messages(caplog, key="status"):
    """Values of `key` in the dict messages captured by caplog."""
    return [r.msg.get(key) for r in caplog.records if isinstance(r.msg, dict)]
