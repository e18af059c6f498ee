import shlex

import pytest

from peerrun.plan import JobConfig, parse_host_spec, PeerID, Strategy
from peerrun.runner import build_command, CancelToken, remote_run_all, RemoteRunner, SSHCredential
from peerrun.utils import CancellationExceeded, ProcessFailure, TransportFailure

from tests.utils import FakeExecutor


def _procs(hosts="a:2,b:1:pub-b", np=3, args=("bench.py", "--model", "resnet 50")):
    job = JobConfig(parent=PeerID("a", 38080), hosts=parse_host_spec(hosts), program="python3", args=args)
    procs, _ = job.create_procs_for_count(np, Strategy.RING)
    return procs


@pytest.mark.level("unit")
def test_build_command_quotes_env_and_args():
    spec = _procs()[0]
    command = build_command(spec)
    tokens = shlex.split(command)

    assert tokens[0] == "env"
    assert tokens[-4:] == ["python3", "bench.py", "--model", "resnet 50"]
    assignments = dict(t.split("=", 1) for t in tokens[1:-4])
    assert assignments == spec.env


@pytest.mark.level("unit")
def test_runs_on_public_address_when_present():
    executor = FakeExecutor(outputs={"a": ["hello from a"], "pub-b": ["hello from b"]})
    credential = SSHCredential(username="ubuntu")
    outcome = remote_run_all(_procs(), credential, verbose=False, executor=executor)

    assert outcome.ok
    assert sorted(host for host, _, _ in executor.commands) == ["a", "a", "pub-b"]
    assert all(cred == credential for _, _, cred in executor.commands)
    assert outcome.results[2].stdout == ["hello from b"]


@pytest.mark.level("unit")
def test_unreachable_host_is_a_transport_failure():
    executor = FakeExecutor(unreachable={"pub-b"})
    outcome = RemoteRunner(executor, SSHCredential()).run_all(_procs(), verbose=False)

    assert isinstance(outcome.error, TransportFailure)
    assert outcome.error.host == "pub-b"
    assert [r.ok for r in outcome.results] == [True, True, False]


@pytest.mark.level("unit")
def test_remote_exit_code_is_a_process_failure():
    executor = FakeExecutor(exit_codes={"a": 1})
    outcome = RemoteRunner(executor, SSHCredential()).run_all(_procs(), verbose=False)
    assert isinstance(outcome.error, ProcessFailure)
    assert outcome.error.exit_code == 1


@pytest.mark.level("unit")
def test_deadline_cancels_remote_sessions():
    executor = FakeExecutor(delay=30)
    outcome = RemoteRunner(executor, SSHCredential()).run_all(_procs(), CancelToken.with_timeout(0.3), verbose=False)

    assert outcome.cancelled
    assert isinstance(outcome.error, CancellationExceeded)
    assert all(r.stopped for r in outcome.results)


@pytest.mark.level("unit")
def test_expired_deadline_contacts_no_host():
    executor = FakeExecutor()
    outcome = RemoteRunner(executor, SSHCredential()).run_all(_procs(), CancelToken.with_timeout(0), verbose=False)
    assert outcome.cancelled
    assert executor.commands == []


@pytest.mark.level("unit")
def test_credential_defaults_come_from_config(isolated_config):
    isolated_config.set("ssh_user", "ops")
    isolated_config.set("ssh_key", "/keys/id_rsa")
    assert SSHCredential.from_config() == SSHCredential(username="ops", key_filename="/keys/id_rsa")
