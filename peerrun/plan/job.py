from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from peerrun import constants
from peerrun.constants import DEFAULT_PEER_PORT_BASE
from peerrun.plan.hosts import HostList
from peerrun.plan.peers import gen_peer_list, Peer, PeerID, PeerList, Strategy
from peerrun.utils import BuildError


@dataclass(frozen=True)
class ProcSpec:
    """Launch instructions for a single worker process."""

    peer: Peer
    program: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    public_address: Optional[str] = None

    @property
    def host(self) -> str:
        return self.peer.id.host

    @property
    def remote_address(self) -> str:
        return self.public_address or self.peer.id.host

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def __str__(self):
        return f"{self.peer} {' '.join(self.argv)}"


def get_distributed_env_vars(parent: PeerID, peer: Peer, peers: PeerList, strategy: Strategy) -> Dict[str, str]:
    """Environment variables describing ``peer``'s place in the job.

    This is the only place the typed peer table is serialized.
    """
    return {
        constants.ENV_PARENT: str(parent),
        constants.ENV_SELF: str(peer.id),
        constants.ENV_PEERS: peers.to_env_value(),
        constants.ENV_STRATEGY: str(strategy),
        constants.ENV_RANK: str(peer.rank),
        constants.ENV_LOCAL_RANK: str(peer.local_rank),
        constants.ENV_WORLD_SIZE: str(peer.cluster_size),
    }


@dataclass(frozen=True)
class JobConfig:
    """Everything needed to materialize a job's process plan."""

    parent: PeerID
    hosts: HostList
    program: str
    args: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))

    def create_procs(self, peers: Sequence[Peer], strategy: Strategy) -> List[ProcSpec]:
        """Build one :class:`ProcSpec` per peer. Pure: nothing is started.

        Raises:
            BuildError: if ``peers`` is empty or contains an invalid or repeated endpoint.
        """
        peers = peers if isinstance(peers, PeerList) else PeerList(peers)
        peers.validate()
        if not self.parent.valid:
            raise BuildError(f"invalid parent endpoint {self.parent.host!r}:{self.parent.port!r}")

        procs = []
        for peer in peers:
            host = self.hosts.lookup(peer.id.host)
            procs.append(
                ProcSpec(
                    peer=peer,
                    program=self.program,
                    args=self.args,
                    env=get_distributed_env_vars(self.parent, peer, peers, strategy),
                    public_address=host.public_address if host is not None else None,
                )
            )
        return procs

    def create_procs_for_count(
        self,
        total_peers: int,
        strategy: Strategy,
        port_base: int = DEFAULT_PEER_PORT_BASE,
    ) -> Tuple[List[ProcSpec], PeerList]:
        """Generate the peer table for ``total_peers`` over this job's hosts and build its plan."""
        peers = gen_peer_list(self.hosts, total_peers, strategy, port_base=port_base)
        return self.create_procs(peers, strategy), peers


def for_host(address: str, procs: Sequence[ProcSpec]) -> List[ProcSpec]:
    """The share of a plan that runs on ``address``."""
    return [p for p in procs if p.peer.id.host == address]
