"""Deterministic job topology: host specs, peer tables and per-process launch plans."""

from peerrun.plan.hosts import default_host_spec, format_host_spec, HostList, HostRecord, parse_host_spec
from peerrun.plan.job import for_host, get_distributed_env_vars, JobConfig, ProcSpec
from peerrun.plan.peers import DEFAULT_STRATEGY, gen_peer_list, Peer, PeerID, PeerList, Strategy

__all__ = [
    "DEFAULT_STRATEGY",
    "HostList",
    "HostRecord",
    "JobConfig",
    "Peer",
    "PeerID",
    "PeerList",
    "ProcSpec",
    "Strategy",
    "default_host_spec",
    "for_host",
    "format_host_spec",
    "gen_peer_list",
    "get_distributed_env_vars",
    "parse_host_spec",
]
