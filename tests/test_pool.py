import threading
import time

import pytest

from peerrun.plan import parse_host_spec
from peerrun.runner import CancelToken
from peerrun.sweep import HostPool
from peerrun.utils import CancellationExceeded, PlanError


@pytest.mark.level("unit")
def test_require_and_return():
    pool = HostPool(parse_host_spec("a:4,b:4,c:4"))
    taken = pool.require_n(2, poll_interval=0.01)

    assert [h.address for h in taken] == ["a", "b"]
    assert pool.available == 1
    assert pool.borrowed == 2

    pool.return_all(taken)
    assert pool.available == 3
    assert pool.borrowed == 0
    assert [h.address for h in pool.require_n(3, poll_interval=0.01)] == ["a", "b", "c"]


@pytest.mark.level("unit")
def test_require_more_than_total_fails_immediately():
    pool = HostPool(parse_host_spec("a,b"))
    with pytest.raises(PlanError):
        pool.require_n(3)
    with pytest.raises(PlanError):
        pool.require_n(0)


@pytest.mark.level("unit")
def test_double_return_is_rejected():
    pool = HostPool(parse_host_spec("a,b"))
    taken = pool.require_n(1, poll_interval=0.01)
    pool.return_all(taken)
    with pytest.raises(ValueError):
        pool.return_all(taken)
    assert pool.available == 2


@pytest.mark.level("unit")
def test_foreign_host_return_is_rejected():
    pool = HostPool(parse_host_spec("a,b"))
    with pytest.raises(ValueError):
        pool.return_all(parse_host_spec("z"))


@pytest.mark.level("unit")
def test_require_blocks_until_hosts_are_returned():
    pool = HostPool(parse_host_spec("a,b"))
    first = pool.require_n(2, poll_interval=0.01)

    got = []
    t = threading.Thread(target=lambda: got.append(pool.require_n(1, poll_interval=0.01)))
    t.start()
    time.sleep(0.1)
    assert got == []

    pool.return_all(first)
    t.join(timeout=10)
    assert len(got) == 1


@pytest.mark.level("unit")
def test_require_gives_up_on_cancellation():
    pool = HostPool(parse_host_spec("a"))
    pool.require_n(1, poll_interval=0.01)
    with pytest.raises(CancellationExceeded):
        pool.require_n(1, CancelToken.with_timeout(0.1), poll_interval=0.01)


@pytest.mark.level("unit")
def test_borrow_returns_on_error():
    pool = HostPool(parse_host_spec("a,b"))
    with pytest.raises(RuntimeError):
        with pool.borrow(2, poll_interval=0.01):
            assert pool.available == 0
            raise RuntimeError("experiment blew up")
    assert pool.available == 2


@pytest.mark.level("unit")
def test_concurrent_borrowers_never_exceed_the_pool():
    pool = HostPool(parse_host_spec("a,b,c,d"))
    in_use = []
    lock = threading.Lock()
    errors = []

    def worker(n):
        try:
            with pool.borrow(n, poll_interval=0.001) as hosts:
                with lock:
                    in_use.extend(h.address for h in hosts)
                    assert len(in_use) == len(set(in_use)) <= 4
                time.sleep(0.005)
                with lock:
                    for h in hosts:
                        in_use.remove(h.address)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(1 + i % 3,)) for i in range(30)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert pool.peak_borrowed <= 4
    assert pool.available == 4
    assert pool.borrowed == 0
