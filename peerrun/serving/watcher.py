"""Watch mode: keep this node's share of the job in line with the latest published stage.

The watcher polls a stage source every ``watch_period`` seconds. Whenever the checkpoint changes
the current local run is stopped cooperatively and restarted over the new cluster. No state is
carried across restarts; workers resume from the checkpoint tag they are given.
"""

import enum
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

import httpx

from peerrun.globals import config
from peerrun.logger import get_logger
from peerrun.plan.job import for_host, JobConfig, ProcSpec
from peerrun.plan.peers import PeerList, Strategy
from peerrun.runner.base import Runner, RunOutcome
from peerrun.runner.cancel import CancelToken
from peerrun.runner.local import LocalRunner
from peerrun.serving.control_server import ControlServer
from peerrun.serving.stage_store import Stage, StageStore
from peerrun.utils import PeerrunError

logger = get_logger(__name__)


class WatchState(str, enum.Enum):
    IDLE = "idle"  # no stage seen yet
    RUNNING = "running"  # a run is in progress, or this node has no task in the current stage
    DRAINING = "draining"  # the run finished; waiting for a new checkpoint (keep mode)
    TERMINATED = "terminated"


class Watcher:
    def __init__(
        self,
        self_host: str,
        job: JobConfig,
        fetch: Callable[[], Optional[Stage]],
        strategy: Optional[Strategy] = None,
        runner: Optional[Runner] = None,
        watch_period: Optional[float] = None,
        keep: bool = False,
        verbose: bool = True,
    ):
        self.self_host = self_host
        self.job = job
        self.fetch = fetch
        self.strategy = strategy or Strategy.parse(None)
        self.runner = runner or LocalRunner()
        self.watch_period = config.watch_period if watch_period is None else watch_period
        self.keep = keep
        self.verbose = verbose

        self.state = WatchState.IDLE
        self.checkpoint: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.restarts = 0
        self.outcomes: List[RunOutcome] = []

        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="watch-run")
        self._future: Optional[Future] = None
        self._run_token: Optional[CancelToken] = None

    def _fetch(self) -> Optional[Stage]:
        try:
            return self.fetch()
        except (PeerrunError, httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning(f"Failed to fetch stage, retrying in {self.watch_period}s: {e}")
            return None

    def _plan(self, stage: Stage) -> List[ProcSpec]:
        procs = self.job.create_procs(stage.cluster, self.strategy)
        return for_host(self.self_host, procs)

    def _start(self, stage: Stage, token: CancelToken):
        self.checkpoint = stage.checkpoint
        try:
            procs = self._plan(stage)
        except PeerrunError as e:
            logger.error(f"Cannot build a plan for {stage}: {e}")
            self.last_error = e
            self.state = WatchState.DRAINING
            return

        self.state = WatchState.RUNNING
        if not procs:
            logger.info(f"No task for {self.self_host} at checkpoint {stage.checkpoint}")
            return

        logger.info(
            f"Starting {len(procs)} local peer(s) at checkpoint {stage.checkpoint} "
            f"({len(stage.cluster)} peers in cluster)"
        )
        self._run_token = token.child()
        self._future = self._pool.submit(self.runner.run_all, procs, self._run_token, self.verbose)

    def _stop_current(self, reason: str):
        if self._future is None:
            return
        if self._future.done():
            self._collect_finished()
            return
        self._run_token.cancel(reason)
        outcome = self._future.result()
        self.outcomes.append(outcome)
        self._future = None
        self._run_token = None

    def _collect_finished(self):
        outcome = self._future.result()
        self.outcomes.append(outcome)
        self._future = None
        self._run_token = None
        self.last_error = outcome.error
        if outcome.error is not None:
            logger.error(f"Run at checkpoint {self.checkpoint} failed: {outcome.error}")
        else:
            logger.info(f"Run at checkpoint {self.checkpoint} finished")
        self.state = WatchState.DRAINING

    def _tick(self, token: CancelToken) -> bool:
        """One poll of the stage source. Returns False once the watcher should terminate."""
        stage = self._fetch()
        if stage is not None and stage.checkpoint != self.checkpoint:
            if self._future is not None:
                logger.info(f"Checkpoint changed {self.checkpoint} -> {stage.checkpoint}, restarting")
                self._stop_current(f"restarting at checkpoint {stage.checkpoint}")
                self.restarts += 1
            self._start(stage, token)

        if self._future is not None and self._future.done():
            self._collect_finished()

        if self.state == WatchState.DRAINING and not self.keep:
            return False
        return True

    def watch_run(self, cancel_token: Optional[CancelToken] = None) -> Optional[Exception]:
        """Run until the job finishes (or forever with ``keep``) or ``cancel_token`` fires.

        Returns the error of the last completed run, ``None`` if it succeeded or was stopped.
        """
        token = cancel_token or CancelToken()
        try:
            while not token.cancelled:
                if not self._tick(token):
                    break
                token.wait(self.watch_period)
            if token.cancelled and self._future is not None:
                logger.info("Watch cancelled, stopping the current run")
                self._stop_current(token.reason or "cancelled")
        finally:
            self.state = WatchState.TERMINATED
            self._pool.shutdown(wait=True)
        return self.last_error


def serve_and_watch(
    self_host: str,
    job: JobConfig,
    peers: PeerList,
    checkpoint: str = "0",
    strategy: Optional[Strategy] = None,
    runner: Optional[Runner] = None,
    watch_period: Optional[float] = None,
    keep: bool = False,
    verbose: bool = True,
    cancel_token: Optional[CancelToken] = None,
    server_host: str = "0.0.0.0",
) -> Optional[Exception]:
    """Seed a stage store with the initial layout, serve it and watch it until done."""
    store = StageStore(Stage(cluster=peers, checkpoint=checkpoint))
    watcher = Watcher(
        self_host=self_host,
        job=job,
        fetch=store.get,
        strategy=strategy,
        runner=runner,
        watch_period=watch_period,
        keep=keep,
        verbose=verbose,
    )
    with ControlServer(store, host=server_host, port=job.parent.port):
        return watcher.watch_run(cancel_token)
