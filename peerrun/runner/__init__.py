from peerrun.runner.base import ProcResult, Runner, RunOutcome
from peerrun.runner.cancel import CancelToken
from peerrun.runner.local import local_run_all, LocalRunner
from peerrun.runner.remote import (
    build_command,
    ExecResult,
    remote_run_all,
    RemoteExecutor,
    RemoteRunner,
    SSHCredential,
    SSHExecutor,
)

__all__ = [
    "CancelToken",
    "ExecResult",
    "LocalRunner",
    "ProcResult",
    "RemoteExecutor",
    "RemoteRunner",
    "RunOutcome",
    "Runner",
    "SSHCredential",
    "SSHExecutor",
    "build_command",
    "local_run_all",
    "remote_run_all",
]
