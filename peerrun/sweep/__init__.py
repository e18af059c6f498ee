from peerrun.sweep.experiments import (
    DEFAULT_ALGOS,
    DEFAULT_PARTITIONS,
    ExperimentRecord,
    parse_result,
    reschedule,
    Result,
    ResultLog,
    run_all_experiments,
    run_experiment,
    scrape_result,
    SweepReport,
)
from peerrun.sweep.pool import HostPool

__all__ = [
    "DEFAULT_ALGOS",
    "DEFAULT_PARTITIONS",
    "ExperimentRecord",
    "HostPool",
    "Result",
    "ResultLog",
    "SweepReport",
    "parse_result",
    "reschedule",
    "run_all_experiments",
    "run_experiment",
    "scrape_result",
]
