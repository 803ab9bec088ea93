from __future__ import annotations

import time

import fakeredis
import pytest

from fakes import FakeClock, FakeEtcd
from glock import (
    EtcdClient,
    EtcdOptions,
    MemoryClient,
    MemoryOptions,
    MemoryStore,
    RedisClient,
    RedisOptions,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_options(redis_server):
    def connect(network, address, **kwargs):
        kwargs.setdefault("decode_responses", True)
        return fakeredis.FakeRedis(server=redis_server, **kwargs)

    return RedisOptions(address="redis.test:6379", connect=connect)


@pytest.fixture
def etcd(clock):
    return FakeEtcd(clock)


@pytest.fixture
def etcd_options(etcd):
    return EtcdOptions(host="etcd.test", connect=lambda options: etcd)


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


class Backend:
    """Builds clients sharing one store, and lets time pass for them."""

    def __init__(self, name, factory, wait, short_ttl, fractional_ttl):
        self.name = name
        self._factory = factory
        self._wait = wait
        self.short_ttl = short_ttl
        # a ttl the store cannot represent exactly
        self.fractional_ttl = fractional_ttl

    def client(self, client_id: str = "", namespace: str = ""):
        return self._factory(client_id, namespace)

    def wait(self, seconds: float) -> None:
        self._wait(seconds)


@pytest.fixture(params=["memory", "redis", "etcd"])
def backend(request, clock, memory_store, redis_options, etcd_options):
    if request.param == "memory":
        return Backend(
            "memory",
            lambda cid, ns: MemoryClient(MemoryOptions(store=memory_store, client_id=cid, namespace=ns)),
            clock.advance,
            short_ttl=0.05,
            fractional_ttl=0.0375,
        )
    if request.param == "redis":
        # fakeredis expires keys on the wall clock
        return Backend(
            "redis",
            lambda cid, ns: RedisClient(RedisOptions(
                address=redis_options.address,
                connect=redis_options.connect,
                client_id=cid,
                namespace=ns,
            )),
            time.sleep,
            short_ttl=0.05,
            fractional_ttl=0.0375,
        )
    return Backend(
        "etcd",
        lambda cid, ns: EtcdClient(EtcdOptions(
            host=etcd_options.host,
            connect=etcd_options.connect,
            client_id=cid,
            namespace=ns,
        )),
        clock.advance,
        short_ttl=1,
        fractional_ttl=1.5,
    )
