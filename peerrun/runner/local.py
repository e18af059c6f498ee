import os
import signal
import subprocess
import threading
import time
from typing import List, Optional, Sequence, Tuple

from peerrun.globals import config
from peerrun.logger import get_logger
from peerrun.plan.job import ProcSpec
from peerrun.runner.base import ProcResult, Runner, RunOutcome
from peerrun.runner.cancel import CancelToken
from peerrun.utils import CancellationExceeded, ProcessFailure, TransportFailure

logger = get_logger(__name__)


def stream_output(pipe, sink: List[str], prefix: str, verbose: bool):
    """Drain ``pipe`` line by line into ``sink`` until EOF, echoing through the logger when verbose."""
    for line in iter(pipe.readline, ""):
        if line:
            stripped_line = line.rstrip("\n")
            sink.append(stripped_line)
            if verbose:
                logger.info(f"{prefix} {stripped_line}")
    pipe.close()


class LocalRunner(Runner):
    """Run process specs as children of the current node.

    Children are started in their own session so a stop request reaches the whole process group.
    Stopping is "signal then join": SIGTERM, up to ``grace_period`` seconds, then SIGKILL.
    """

    def __init__(self, grace_period: Optional[float] = None, poll_interval: float = 0.1):
        self.grace_period = config.stop_grace_period if grace_period is None else grace_period
        self.poll_interval = poll_interval

    def _spawn(self, spec: ProcSpec, result: ProcResult, verbose: bool):
        env = os.environ.copy()
        env.update(spec.env)
        env["PYTHONUNBUFFERED"] = "1"

        try:
            process = subprocess.Popen(
                spec.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            result.error = TransportFailure(host=spec.host, reason=f"failed to start {spec.program}: {e}")
            logger.error(f"Could not start {spec}: {e}")
            return None, []

        prefix = f"[{spec.peer.rank}]"
        threads = [
            threading.Thread(
                target=stream_output,
                args=(process.stdout, result.stdout, prefix, verbose),
                daemon=True,
                name=f"stdout-{spec.peer.rank}",
            ),
            threading.Thread(
                target=stream_output,
                args=(process.stderr, result.stderr, f"{prefix}[stderr]", verbose),
                daemon=True,
                name=f"stderr-{spec.peer.rank}",
            ),
        ]
        for t in threads:
            t.start()
        logger.debug(f"Started {spec} as pid {process.pid}")
        return process, threads

    @staticmethod
    def _signal(process: subprocess.Popen, sig: int):
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.send_signal(sig)

    def _stop(self, running: Sequence[Tuple[ProcResult, subprocess.Popen]]):
        alive = [(r, p) for r, p in running if p.poll() is None]
        if not alive:
            return
        logger.info(f"Stopping {len(alive)} local process(es)")
        for result, process in alive:
            result.stopped = True
            self._signal(process, signal.SIGTERM)

        deadline = time.monotonic() + self.grace_period
        for result, process in alive:
            try:
                process.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning(f"Force killing {result.spec} (pid {process.pid})")
                self._signal(process, signal.SIGKILL)
                process.wait()

    def _run(self, procs: List[ProcSpec], token: CancelToken, verbose: bool) -> List[ProcResult]:
        results = [ProcResult(spec=spec) for spec in procs]
        running = []
        readers = []

        for result in results:
            if token.cancelled:
                result.error = CancellationExceeded("not started: run was cancelled")
                continue
            process, threads = self._spawn(result.spec, result, verbose)
            if process is not None:
                running.append((result, process))
                readers.extend(threads)

        if any(isinstance(r.error, TransportFailure) for r in results):
            # the job cannot form without every peer
            self._stop(running)

        while any(p.poll() is None for _, p in running):
            if token.wait(self.poll_interval):
                self._stop(running)
                break

        for t in readers:
            t.join(timeout=self.grace_period)

        for result, process in running:
            result.exit_code = process.returncode
            if result.stopped:
                continue
            if result.exit_code != 0:
                result.error = ProcessFailure(peer=result.spec.peer, exit_code=result.exit_code)
                logger.error(f"{result.spec.peer} exited with code {result.exit_code}")
        return results


def local_run_all(
    procs: Sequence[ProcSpec], cancel_token: Optional[CancelToken] = None, verbose: bool = True
) -> RunOutcome:
    return LocalRunner().run_all(procs, cancel_token, verbose)
