from __future__ import annotations

from datetime import timedelta

import pytest
from etcd3.exceptions import ConnectionFailedError, ConnectionTimeoutError, InternalServerError

from glock import (
    EtcdClient,
    EtcdOptions,
    InvalidTTLError,
    LockHeldError,
    StoreConnectionError,
    StoreError,
)
from glock.etcd_lock import default_connect, lease_seconds


@pytest.fixture
def client(etcd_options):
    etcd_options.client_id = "a1"
    return EtcdClient(etcd_options)


@pytest.mark.parametrize("ttl, seconds", [(1, 1), (1.5, 1), (timedelta(milliseconds=1999), 1), (5, 5)])
def test_lease_seconds_round_down(ttl, seconds):
    assert lease_seconds(ttl) == seconds


@pytest.mark.parametrize("ttl", [0.001, 0.5, timedelta(milliseconds=999)])
def test_lease_seconds_rejects_sub_second_ttls(ttl):
    with pytest.raises(InvalidTTLError):
        lease_seconds(ttl)


def test_owner_key_is_bound_to_a_lease(client, etcd):
    lock = client.new_lock("job-7")
    lock.set_data("payload")

    lock.acquire(timedelta(milliseconds=1500))

    owner = etcd.kvs["glock:job-7"]
    assert owner.value == b"a1"
    assert etcd.leases[owner.lease] == etcd.clock() + 1
    data = etcd.kvs["glock:job-7:data"]
    assert data.value == b"payload"
    assert data.lease == 0
    assert data.create_revision == owner.create_revision


@pytest.mark.parametrize("ttl", [0.5, timedelta(milliseconds=999)])
def test_sub_second_ttl_makes_no_calls(client, etcd, ttl):
    lock = client.new_lock("job-7")
    etcd.calls.clear()

    with pytest.raises(InvalidTTLError):
        lock.acquire(ttl)

    assert etcd.calls == []


def test_sub_second_refresh_makes_no_calls(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)
    etcd.calls.clear()

    with pytest.raises(InvalidTTLError):
        lock.refresh_ttl(0.25)

    assert etcd.calls == []
    assert lock.info().owner == "a1"


def test_lease_raised_by_server_minimum_is_rejected(client, etcd):
    etcd.min_ttl = 2
    lock = client.new_lock("job-7")

    with pytest.raises(InvalidTTLError):
        lock.acquire(1)

    assert etcd.leases == {}
    assert etcd.kvs == {}


def test_failed_acquire_revokes_its_lease(client, etcd, etcd_options):
    client.new_lock("job-7").acquire(5)
    other = EtcdClient(EtcdOptions(connect=etcd_options.connect))

    with pytest.raises(LockHeldError):
        other.new_lock("job-7").acquire(5)

    assert len(etcd.leases) == 1


def test_release_revokes_the_lease(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)

    lock.release()

    assert etcd.leases == {}
    assert etcd.kvs == {}


def test_refresh_moves_key_to_a_new_lease(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)
    first_lease = etcd.kvs["glock:job-7"].lease

    lock.refresh_ttl(30)

    second_lease = etcd.kvs["glock:job-7"].lease
    assert second_lease != first_lease
    assert list(etcd.leases) == [second_lease]
    assert lock.info().ttl == timedelta(seconds=30)


def test_info_reads_in_one_transaction(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)
    etcd.calls.clear()

    lock.info()

    assert etcd.calls == ["transaction", "get_lease_info"]


def test_info_of_expired_lease_is_not_acquired(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)
    # lease gone from the server's view, key not yet collected
    etcd.kvs["glock:job-7"].lease = 9999

    info = lock.info()

    assert info.owner == "a1"
    assert info.acquired is False
    assert info.ttl == timedelta(0)


def test_failed_status_closes_the_channel(etcd, etcd_options):
    etcd.failures["status"] = InternalServerError("no leader")

    with pytest.raises(StoreConnectionError):
        EtcdClient(etcd_options)
    assert etcd.closed == 1


def test_unreachable_cluster(etcd, etcd_options):
    etcd.down = True

    with pytest.raises(StoreConnectionError):
        EtcdClient(etcd_options)


def test_connection_loss_during_acquire(client, etcd):
    lock = client.new_lock("job-7")
    etcd.down = True

    with pytest.raises(StoreConnectionError):
        lock.acquire(5)


def test_timeout_is_a_connection_error(client, etcd):
    lock = client.new_lock("job-7")
    etcd.failures["transaction"] = ConnectionTimeoutError()

    with pytest.raises(StoreConnectionError):
        lock.info()


def test_server_error_is_a_store_error(client, etcd):
    lock = client.new_lock("job-7")
    lock.acquire(5)
    etcd.failures["transaction"] = InternalServerError("etcdserver: request timed out")

    with pytest.raises(StoreError) as exc_info:
        lock.refresh()
    assert not isinstance(exc_info.value, StoreConnectionError)
    assert isinstance(exc_info.value.__cause__, InternalServerError)
    # the lease granted for the refresh is given back
    assert len(etcd.leases) == 1


def test_close_ignores_driver_errors(client, etcd):
    def close():
        raise ConnectionFailedError()

    etcd.close = close

    client.close()

    assert client.etcd is None


def test_default_connect_passes_options(monkeypatch):
    seen = {}

    def fake_client(**kwargs):
        seen.update(kwargs)
        return "channel"

    monkeypatch.setattr("glock.etcd_lock.etcd3.client", fake_client)
    options = EtcdOptions(host="etcd-0", port=2380, user="root", password="pw", ca_cert="/ca.pem")

    assert default_connect(options) == "channel"
    assert seen["host"] == "etcd-0"
    assert seen["port"] == 2380
    assert seen["user"] == "root"
    assert seen["password"] == "pw"
    assert seen["ca_cert"] == "/ca.pem"
    assert seen["timeout"] == 5
