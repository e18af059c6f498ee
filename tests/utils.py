import sys
import threading
import time
from typing import List, Optional

from peerrun.plan import JobConfig, parse_host_spec, PeerID, Strategy
from peerrun.runner.base import ProcResult, Runner
from peerrun.runner.remote import ExecResult, RemoteExecutor
from peerrun.utils import CancellationExceeded, ProcessFailure


def python_job(code: str, hosts: str = "127.0.0.1:4", parent_port: int = 38080) -> JobConfig:
    """Job whose workers run ``code`` with the current interpreter."""
    return JobConfig(
        parent=PeerID(host="127.0.0.1", port=parent_port),
        hosts=parse_host_spec(hosts),
        program=sys.executable,
        args=("-c", code),
    )


def python_procs(code: str, np: int, hosts: str = "127.0.0.1:4", strategy: Strategy = Strategy.RING):
    procs, _ = python_job(code, hosts).create_procs_for_count(np, strategy)
    return procs


class FakeRunner(Runner):
    """Runner that never spawns anything.

    ``output`` lines are reported as stdout of every process; ``exit_code`` is used for all of
    them. With ``block`` the run waits until its token is cancelled. Concurrency is tracked so
    tests can check how many runs overlapped.
    """

    def __init__(self, output: Optional[List[str]] = None, exit_code: int = 0, duration: float = 0.0, block=False):
        self.output = output or []
        self.exit_code = exit_code
        self.duration = duration
        self.block = block
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _run(self, procs, token, verbose) -> List[ProcResult]:
        with self._lock:
            self.calls.append(list(procs))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.block:
                token.wait()
            elif self.duration:
                token.wait(self.duration)

            results = []
            for spec in procs:
                result = ProcResult(spec=spec)
                if token.cancelled:
                    result.stopped = True
                    result.error = CancellationExceeded(token.reason)
                else:
                    result.exit_code = self.exit_code
                    result.stdout = list(self.output)
                    if self.exit_code != 0:
                        result.error = ProcessFailure(peer=spec.peer, exit_code=self.exit_code)
                results.append(result)
            return results
        finally:
            with self._lock:
                self.active -= 1


class FakeExecutor(RemoteExecutor):
    """In-memory remote shell keyed by host address."""

    def __init__(self, outputs=None, exit_codes=None, unreachable=(), delay: float = 0.0):
        self.outputs = outputs or {}
        self.exit_codes = exit_codes or {}
        self.unreachable = set(unreachable)
        self.delay = delay
        self.commands = []
        self._lock = threading.Lock()

    def exec(self, host, command, credential, cancel_token=None, on_line=None) -> ExecResult:
        from peerrun.utils import TransportFailure

        with self._lock:
            self.commands.append((host, command, credential))
        if host in self.unreachable:
            raise TransportFailure(host=host, reason="connection refused")

        deadline = time.monotonic() + self.delay
        while time.monotonic() < deadline:
            if cancel_token is not None and cancel_token.wait(0.01):
                raise CancellationExceeded(cancel_token.reason)

        lines = list(self.outputs.get(host, []))
        if on_line:
            for line in lines:
                on_line(line)
        return ExecResult(stdout=lines, stderr=[], exit_code=self.exit_codes.get(host, 0))
