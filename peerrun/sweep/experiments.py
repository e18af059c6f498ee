"""Run a grid of (strategy, partition) experiments over a shared host pool.

Every experiment borrows as many hosts as its partition has entries, shrinks each host to the
slot count the partition asks for, runs the job remotely under a timeout and scrapes a
throughput line from the workers' output. Experiments that do not fit the pool at all are
skipped; the others run concurrently, bounded by the pool.
"""

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from peerrun.globals import config
from peerrun.logger import get_logger
from peerrun.plan.hosts import HostList, HostRecord
from peerrun.plan.job import JobConfig
from peerrun.plan.peers import PeerID, Strategy
from peerrun.runner.base import Runner
from peerrun.runner.cancel import CancelToken
from peerrun.sweep.pool import HostPool
from peerrun.utils import format_duration, grep, measure, PlanError, ResultNotFound

logger = get_logger(__name__)

DEFAULT_ALGOS = (Strategy.SIMPLE, Strategy.RING, Strategy.CLIQUE, Strategy.TREE)
DEFAULT_PARTITIONS = ((1,), (2,), (3,), (4,), (1, 3), (2, 2), (3, 3), (4, 4))

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"


@dataclass(frozen=True)
class Result:
    mean: float
    conf: float

    def __str__(self):
        return f"{self.mean:f} +-{self.conf:f}"


@dataclass(frozen=True)
class ExperimentRecord:
    algo: Strategy
    partition: Tuple[int, ...]
    result: Result

    def __str__(self):
        return f"{self.algo} {list(self.partition)} {self.result}"


class ResultLog:
    """Append-only record list shared by concurrently finishing experiments."""

    def __init__(self):
        self._records: List[ExperimentRecord] = []
        self._lock = threading.Lock()

    def append(self, record: ExperimentRecord) -> int:
        with self._lock:
            self._records.append(record)
            return len(self._records)

    def records(self) -> List[ExperimentRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self):
        with self._lock:
            return len(self._records)


@dataclass
class SweepReport:
    records: List[ExperimentRecord] = field(default_factory=list)
    attempted: int = 0
    failures: List[Tuple[Strategy, Tuple[int, ...], Exception]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every attempted experiment produced a record."""
        return len(self.records) == self.attempted


def reschedule(hosts: Sequence[HostRecord], partition: Sequence[int]) -> HostList:
    """Copies of the first ``len(partition)`` hosts, each shrunk to its partition entry.

    Raises:
        PlanError: if there are fewer hosts than partition entries, or a host has fewer slots
            than its entry asks for.
    """
    if len(hosts) < len(partition):
        raise PlanError(f"not enough hosts: partition {list(partition)} needs {len(partition)}, got {len(hosts)}")
    workers = []
    for host, slots in zip(hosts, partition):
        if slots < 1 or host.capacity < slots:
            raise PlanError(f"host {host.address} has {host.capacity} slot(s), partition asks for {slots}")
        workers.append(replace(host, capacity=slots))
    return HostList(workers)


def parse_result(line: str, label: Optional[str] = None) -> Optional[Result]:
    """Parse ``"<label>: <mean> +-<conf>"`` anywhere in ``line``."""
    label = label or config.metric_label
    match = re.search(rf"{re.escape(label)}:\s*({_NUMBER})\s*\+-\s*({_NUMBER})", line)
    if match is None:
        return None
    return Result(mean=float(match.group(1)), conf=float(match.group(2)))


def scrape_result(lines: Iterable[str], label: Optional[str] = None) -> Optional[Result]:
    """First parseable result line among ``lines``."""
    label = label or config.metric_label
    for line in grep(label, lines):
        result = parse_result(line, label)
        if result is not None:
            return result
    return None


def run_experiment(
    hosts: Sequence[HostRecord],
    program: str,
    args: Sequence[str],
    algo: Strategy,
    partition: Sequence[int],
    timeout: Optional[float],
    runner: Runner,
    parent_port: Optional[int] = None,
    label: Optional[str] = None,
    verbose: bool = True,
) -> Result:
    label = label or config.metric_label
    workers = reschedule(hosts, partition)
    parent = PeerID(host=workers[0].address, port=parent_port or config.control_port)
    job = JobConfig(parent=parent, hosts=workers, program=program, args=tuple(args))
    procs, _ = job.create_procs_for_count(workers.total_capacity, algo, port_base=config.peer_port_base)

    token = CancelToken.with_timeout(timeout)
    duration, outcome = measure(lambda: runner.run_all(procs, token, verbose))
    logger.info(f"All {len(procs)} tasks finished, took {format_duration(duration)}")

    result = None
    for proc_result in outcome.results:
        result = scrape_result(proc_result.stdout, label)
        if result is not None:
            break

    outcome.raise_for_error()
    if result is None:
        raise ResultNotFound(f"no line containing {label!r} in the output of {len(procs)} task(s)")
    return result


def run_all_experiments(
    hosts: Sequence[HostRecord],
    program: str,
    args: Sequence[str],
    timeout: Optional[float],
    runner: Runner,
    algos: Sequence[Strategy] = DEFAULT_ALGOS,
    partitions: Sequence[Sequence[int]] = DEFAULT_PARTITIONS,
    pool: Optional[HostPool] = None,
    results: Optional[ResultLog] = None,
    poll_interval: Optional[float] = None,
    label: Optional[str] = None,
    verbose: bool = True,
) -> SweepReport:
    hosts = HostList(hosts)
    if pool is None:
        pool = HostPool(hosts)
    if results is None:
        results = ResultLog()
    report = SweepReport()
    failures_lock = threading.Lock()

    combos = []
    for algo in algos:
        for partition in partitions:
            partition = tuple(partition)
            if len(partition) > len(hosts):
                logger.info(f"Skipping experiment {{{algo} {list(partition)}}}: only {len(hosts)} host(s)")
                continue
            combos.append((algo, partition))
    report.attempted = len(combos)

    def run(algo: Strategy, partition: Tuple[int, ...]):
        with pool.borrow(len(partition), poll_interval=poll_interval) as borrowed:
            logger.info(f"Begin experiment {{{algo} {list(partition)}}} on {{{borrowed.humanize()}}}")
            try:
                result = run_experiment(
                    borrowed, program, args, algo, partition, timeout, runner, label=label, verbose=verbose
                )
            except Exception as e:
                logger.error(f"Failed experiment {{{algo} {list(partition)}}} with: {e}")
                with failures_lock:
                    report.failures.append((algo, partition, e))
                return
            record = ExperimentRecord(algo=algo, partition=partition, result=result)
            logger.info(f"End experiment {{{algo} {list(partition)}}} on {{{borrowed.humanize()}}} with: {record}")
            count = results.append(record)
            logger.info(f"Got results from {count} experiments")

    if combos:
        with ThreadPoolExecutor(max_workers=len(combos), thread_name_prefix="experiment") as executor:
            futures = [executor.submit(run, algo, partition) for algo, partition in combos]
            for future in futures:
                future.result()

    report.records = results.records()
    return report
