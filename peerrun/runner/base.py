from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from peerrun.logger import get_logger
from peerrun.plan.job import ProcSpec
from peerrun.runner.cancel import CancelToken
from peerrun.utils import CancellationExceeded, is_cancellation

logger = get_logger(__name__)


@dataclass
class ProcResult:
    """Captured outcome of one worker process."""

    spec: ProcSpec
    exit_code: Optional[int] = None
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
    stopped: bool = False  # terminated by the runner on cancellation

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0


@dataclass
class RunOutcome:
    """Aggregate result of running a set of :class:`ProcSpec`."""

    results: List[ProcResult] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.ok for r in self.results)

    @property
    def cancelled(self) -> bool:
        return is_cancellation(self.error)

    def stdout_lines(self) -> List[str]:
        lines = []
        for r in self.results:
            lines.extend(r.stdout)
        return lines

    def raise_for_error(self):
        if self.error is not None:
            raise self.error


def aggregate_errors(results: Sequence[ProcResult], token: CancelToken) -> Optional[Exception]:
    """First non-cancellation error wins; the rest are logged. Cancellation is reported only on its own."""
    errors = [r.error for r in results if r.error is not None and not is_cancellation(r.error)]
    for extra in errors[1:]:
        logger.error(f"Additional failure in run: {extra}")
    if errors:
        return errors[0]
    if any(is_cancellation(r.error) or r.stopped or r.exit_code is None for r in results):
        return CancellationExceeded(token.reason or "cancelled")
    return None


class Runner:
    """Shared contract of the local and remote runners.

    ``run_all`` always waits for every process it started before returning, including on
    cancellation, where children are asked to stop first.
    """

    def run_all(self, procs: Sequence[ProcSpec], cancel_token: Optional[CancelToken] = None, verbose: bool = True):
        token = cancel_token or CancelToken()
        if token.cancelled:
            logger.info("Deadline already expired, not starting any process")
            return RunOutcome(results=[], error=CancellationExceeded(token.reason or "cancelled"))
        if not procs:
            return RunOutcome(results=[])

        results = self._run(list(procs), token, verbose)
        return RunOutcome(results=results, error=aggregate_errors(results, token))

    def __call__(self, procs, cancel_token=None, verbose=True) -> RunOutcome:
        return self.run_all(procs, cancel_token, verbose)

    def _run(self, procs: List[ProcSpec], token: CancelToken, verbose: bool) -> List[ProcResult]:
        raise NotImplementedError
