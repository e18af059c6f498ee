"""Run process specs on other hosts over a remote shell.

The transport itself sits behind :class:`RemoteExecutor`. :class:`SSHExecutor` is the paramiko
implementation used by ``peerrun sweep``; tests and other transports can supply their own.
"""

import shlex
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from peerrun.globals import config
from peerrun.logger import get_logger
from peerrun.plan.job import ProcSpec
from peerrun.runner.base import ProcResult, Runner
from peerrun.runner.cancel import CancelToken
from peerrun.utils import CancellationExceeded, ProcessFailure, TransportFailure

logger = get_logger(__name__)


@dataclass(frozen=True)
class SSHCredential:
    username: Optional[str] = None
    key_filename: Optional[str] = None
    port: int = 22

    @classmethod
    def from_config(cls) -> "SSHCredential":
        return cls(username=config.ssh_user, key_filename=config.ssh_key)


@dataclass
class ExecResult:
    stdout: List[str]
    stderr: List[str]
    exit_code: int


class RemoteExecutor:
    """Interface to a remote shell.

    ``exec`` must raise :class:`TransportFailure` when the host cannot be reached or the command
    cannot be started, and :class:`CancellationExceeded` when ``cancel_token`` fires first. A
    command that ran and failed is reported through ``ExecResult.exit_code``.
    """

    def exec(
        self,
        host: str,
        command: str,
        credential,
        cancel_token: Optional[CancelToken] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> ExecResult:
        raise NotImplementedError


class SSHExecutor(RemoteExecutor):
    def __init__(self, connect_timeout: float = 10.0, poll_interval: float = 0.05):
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval

    def _connect(self, host: str, credential: SSHCredential):
        import paramiko

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                host,
                port=credential.port,
                username=credential.username,
                key_filename=credential.key_filename,
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportFailure(host=host, reason=str(e) or e.__class__.__name__)
        return client

    def exec(self, host, command, credential, cancel_token=None, on_line=None) -> ExecResult:
        import paramiko

        credential = credential or SSHCredential()
        token = cancel_token or CancelToken()
        client = self._connect(host, credential)
        try:
            try:
                channel = client.get_transport().open_session()
                # with a pty, closing the channel hangs up the remote process
                channel.get_pty()
                channel.exec_command(command)
            except (paramiko.SSHException, OSError) as e:
                raise TransportFailure(host=host, reason=f"failed to start command: {e}")

            stdout = _LineBuffer(on_line)
            stderr = _LineBuffer(None)
            while True:
                busy = False
                if channel.recv_ready():
                    stdout.feed(channel.recv(65536))
                    busy = True
                if channel.recv_stderr_ready():
                    stderr.feed(channel.recv_stderr(65536))
                    busy = True
                if not busy and channel.exit_status_ready():
                    break
                if token.cancelled:
                    logger.info(f"Closing remote session on {host}")
                    channel.close()
                    raise CancellationExceeded(token.reason or "cancelled")
                if not busy:
                    time.sleep(self.poll_interval)

            exit_code = channel.recv_exit_status()
            return ExecResult(stdout=stdout.close(), stderr=stderr.close(), exit_code=exit_code)
        finally:
            client.close()


class _LineBuffer:
    def __init__(self, on_line):
        self._on_line = on_line
        self._partial = ""
        self.lines = []

    def feed(self, data: bytes):
        text = self._partial + data.decode("utf-8", errors="replace")
        *complete, self._partial = text.split("\n")
        for line in complete:
            self._emit(line.rstrip("\r"))

    def _emit(self, line):
        self.lines.append(line)
        if self._on_line:
            self._on_line(line)

    def close(self) -> List[str]:
        if self._partial:
            self._emit(self._partial.rstrip("\r"))
            self._partial = ""
        return self.lines


def build_command(spec: ProcSpec) -> str:
    """Shell command that runs ``spec`` with its environment on the remote side."""
    assignments = [f"{k}={shlex.quote(v)}" for k, v in sorted(spec.env.items())]
    return " ".join(["env", *assignments, *(shlex.quote(a) for a in spec.argv)])


class RemoteRunner(Runner):
    """Run every spec concurrently through ``executor`` on the spec's host (public address first)."""

    def __init__(self, executor: Optional[RemoteExecutor] = None, credential=None):
        self.executor = executor or SSHExecutor()
        self.credential = credential if credential is not None else SSHCredential.from_config()

    def _run_one(self, result: ProcResult, token: CancelToken, verbose: bool):
        spec = result.spec
        if token.cancelled:
            result.error = CancellationExceeded("not started: run was cancelled")
            return result

        prefix = f"[{spec.peer.rank}@{spec.remote_address}]"
        on_line = (lambda line: logger.info(f"{prefix} {line}")) if verbose else None
        try:
            res = self.executor.exec(spec.remote_address, build_command(spec), self.credential, token, on_line)
        except TransportFailure as e:
            result.error = e
            logger.error(f"Could not run {spec} on {spec.remote_address}: {e.reason}")
            return result
        except CancellationExceeded as e:
            result.error = e
            result.stopped = True
            return result
        except Exception as e:
            result.error = e
            logger.error(f"Unexpected error running {spec} on {spec.remote_address}: {e}")
            return result

        result.stdout = list(res.stdout)
        result.stderr = list(res.stderr)
        result.exit_code = res.exit_code
        if res.exit_code != 0:
            result.error = ProcessFailure(peer=spec.peer, exit_code=res.exit_code)
            logger.error(f"{spec.peer} on {spec.remote_address} exited with code {res.exit_code}")
        return result

    def _run(self, procs: List[ProcSpec], token: CancelToken, verbose: bool) -> List[ProcResult]:
        results = [ProcResult(spec=spec) for spec in procs]
        with ThreadPoolExecutor(max_workers=len(results), thread_name_prefix="remote-run") as pool:
            futures = [pool.submit(self._run_one, r, token, verbose) for r in results]
            for future in futures:
                future.result()
        return results


def remote_run_all(
    procs: Sequence[ProcSpec],
    credential=None,
    cancel_token: Optional[CancelToken] = None,
    verbose: bool = True,
    executor: Optional[RemoteExecutor] = None,
):
    return RemoteRunner(executor=executor, credential=credential).run_all(procs, cancel_token, verbose)
