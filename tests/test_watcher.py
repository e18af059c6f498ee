import socket
import threading
import time

import pytest

from peerrun.plan import gen_peer_list, parse_host_spec
from peerrun.runner import CancelToken
from peerrun.serving import serve_and_watch, Stage, StageStore, Watcher, WatchState
from peerrun.utils import ProcessFailure, TransportFailure

from tests.utils import FakeRunner, python_job


def _stage(spec="127.0.0.1:2", np=2, checkpoint="0"):
    return Stage(cluster=gen_peer_list(parse_host_spec(spec), np), checkpoint=checkpoint)


def _wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _watcher(store, runner, keep=False, self_host="127.0.0.1"):
    return Watcher(
        self_host=self_host,
        job=python_job("pass"),
        fetch=store.get,
        runner=runner,
        watch_period=0.01,
        keep=keep,
        verbose=False,
    )


@pytest.mark.level("unit")
def test_runs_once_and_terminates():
    runner = FakeRunner()
    watcher = _watcher(StageStore(_stage()), runner)

    assert watcher.state == WatchState.IDLE
    assert watcher.watch_run(CancelToken.with_timeout(10)) is None
    assert watcher.state == WatchState.TERMINATED
    assert len(runner.calls) == 1
    assert [p.peer.rank for p in runner.calls[0]] == [0, 1]


@pytest.mark.level("unit")
def test_only_this_hosts_share_is_started():
    runner = FakeRunner()
    store = StageStore(_stage("127.0.0.1:1,10.0.0.2:3", 4))
    _watcher(store, runner).watch_run(CancelToken.with_timeout(10))
    assert [p.peer.rank for p in runner.calls[0]] == [0]


@pytest.mark.level("unit")
def test_run_error_is_returned():
    runner = FakeRunner(exit_code=2)
    err = _watcher(StageStore(_stage()), runner).watch_run(CancelToken.with_timeout(10))
    assert isinstance(err, ProcessFailure)


@pytest.mark.level("unit")
def test_checkpoint_change_restarts_the_run():
    store = StageStore(_stage(checkpoint="0"))
    runner = FakeRunner(block=True)
    watcher = _watcher(store, runner)
    token = CancelToken.with_timeout(20)

    t = threading.Thread(target=watcher.watch_run, args=(token,))
    t.start()
    assert _wait_until(lambda: len(runner.calls) == 1)
    assert watcher.state == WatchState.RUNNING

    store.push(_stage("127.0.0.1:3", 3, checkpoint="1"))
    assert _wait_until(lambda: len(runner.calls) == 2)
    assert watcher.restarts == 1
    assert watcher.checkpoint == "1"
    assert len(runner.calls[1]) == 3
    assert runner.max_active == 1

    token.cancel()
    t.join(timeout=10)
    assert watcher.state == WatchState.TERMINATED
    assert watcher.outcomes[0].cancelled


@pytest.mark.level("unit")
def test_same_checkpoint_does_not_restart():
    store = StageStore(_stage(checkpoint="0"))
    runner = FakeRunner(block=True)
    watcher = _watcher(store, runner)
    token = CancelToken()

    t = threading.Thread(target=watcher.watch_run, args=(token,))
    t.start()
    assert _wait_until(lambda: len(runner.calls) == 1)
    store.push(_stage("127.0.0.1:1", 1, checkpoint="0"))
    time.sleep(0.2)
    assert len(runner.calls) == 1

    token.cancel()
    t.join(timeout=10)


@pytest.mark.level("unit")
def test_keep_waits_for_the_next_checkpoint():
    store = StageStore(_stage(checkpoint="0"))
    runner = FakeRunner()
    watcher = _watcher(store, runner, keep=True)
    token = CancelToken.with_timeout(20)

    t = threading.Thread(target=watcher.watch_run, args=(token,))
    t.start()
    assert _wait_until(lambda: watcher.state == WatchState.DRAINING)
    assert t.is_alive()

    store.push(_stage(checkpoint="1"))
    assert _wait_until(lambda: len(runner.calls) == 2)
    assert _wait_until(lambda: watcher.state == WatchState.DRAINING)

    token.cancel()
    t.join(timeout=10)
    assert watcher.state == WatchState.TERMINATED


@pytest.mark.level("unit")
def test_no_task_for_this_host_keeps_node_idle():
    runner = FakeRunner()
    watcher = _watcher(StageStore(_stage("10.0.0.2:2", 2)), runner)
    token = CancelToken.with_timeout(0.3)

    assert watcher.watch_run(token) is None
    assert runner.calls == []
    assert watcher.checkpoint == "0"


@pytest.mark.level("unit")
def test_fetch_errors_are_retried():
    attempts = []
    stage = _stage()

    def flaky_fetch():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransportFailure(host="parent", reason="connection refused")
        return stage

    runner = FakeRunner()
    watcher = Watcher(
        self_host="127.0.0.1",
        job=python_job("pass"),
        fetch=flaky_fetch,
        runner=runner,
        watch_period=0.01,
        verbose=False,
    )
    assert watcher.watch_run(CancelToken.with_timeout(10)) is None
    assert len(attempts) >= 3
    assert len(runner.calls) == 1


@pytest.mark.level("unit")
def test_serve_and_watch_runs_local_workers():
    job = python_job("import os; print(os.environ['RANK'])", hosts="127.0.0.1:2", parent_port=_free_port())
    peers = gen_peer_list(job.hosts, 2)
    err = serve_and_watch(
        self_host="127.0.0.1",
        job=job,
        peers=peers,
        checkpoint="0",
        watch_period=0.05,
        verbose=False,
        cancel_token=CancelToken.with_timeout(30),
        server_host="127.0.0.1",
    )
    assert err is None


@pytest.mark.level("unit")
def test_failure_finished_before_restart_is_recorded():
    store = StageStore(_stage(checkpoint="0"))
    runner = FakeRunner(exit_code=2, duration=0.2)
    watcher = _watcher(store, runner)
    token = CancelToken.with_timeout(20)

    watcher._tick(token)
    assert _wait_until(lambda: watcher._future is not None and watcher._future.done())

    runner.exit_code = 0
    runner.block = True
    store.push(_stage(checkpoint="1"))
    watcher._tick(token)

    assert watcher.restarts == 1
    assert watcher.state == WatchState.RUNNING
    assert isinstance(watcher.outcomes[0].error, ProcessFailure)
    assert isinstance(watcher.last_error, ProcessFailure)

    token.cancel()
    watcher.watch_run(token)
    assert watcher.state == WatchState.TERMINATED
