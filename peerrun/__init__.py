from peerrun.globals import config  # noqa: F401
from peerrun.plan import (  # noqa: F401
    for_host,
    gen_peer_list,
    HostList,
    HostRecord,
    JobConfig,
    parse_host_spec,
    Peer,
    PeerID,
    PeerList,
    ProcSpec,
    Strategy,
)
from peerrun.runner import CancelToken, local_run_all, remote_run_all, RunOutcome  # noqa: F401
from peerrun.serving import ControlClient, ControlServer, serve_and_watch, Stage, StageStore, Watcher  # noqa: F401
from peerrun.sweep import HostPool, run_all_experiments, run_experiment  # noqa: F401
from peerrun.utils import (  # noqa: F401
    BuildError,
    CancellationExceeded,
    ParseError,
    PeerrunError,
    PlanError,
    ProcessFailure,
    ResultNotFound,
    TransportFailure,
)

# Registry of all peerrun exceptions for serialization/deserialization
EXCEPTION_REGISTRY = {
    "PeerrunError": PeerrunError,
    "ParseError": ParseError,
    "PlanError": PlanError,
    "BuildError": BuildError,
    "TransportFailure": TransportFailure,
    "ProcessFailure": ProcessFailure,
    "CancellationExceeded": CancellationExceeded,
    "ResultNotFound": ResultNotFound,
}

# Make exceptions appear to be from the main package (e.g. peerrun.PlanError)
for exception in EXCEPTION_REGISTRY.values():
    exception.__module__ = "peerrun"

__version__ = "0.1.0"
