import enum
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from peerrun.constants import DEFAULT_PEER_PORT_BASE, MAX_PORT
from peerrun.plan.hosts import HostList
from peerrun.utils import BuildError, ParseError, PlanError

_HOST_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class Strategy(str, enum.Enum):
    """Collective-communication topology requested from the worker runtime.

    peerrun never interprets the tag; it is only validated and handed to workers.
    """

    SIMPLE = "SIMPLE"
    RING = "RING"
    CLIQUE = "CLIQUE"
    TREE = "TREE"
    BINARY_TREE = "BINARY_TREE"
    BINARY_TREE_STAR = "BINARY_TREE_STAR"
    AUTO = "AUTO"

    def __str__(self):
        return self.value

    @classmethod
    def names(cls) -> List[str]:
        return [s.value for s in cls]

    @classmethod
    def parse(cls, name: Optional[str]) -> "Strategy":
        """Parse a strategy name case-insensitively; an empty name gives the default."""
        if not name:
            return DEFAULT_STRATEGY
        try:
            return cls(name.strip().upper().replace("-", "_"))
        except ValueError:
            raise ParseError(f"unknown strategy (options are: {' | '.join(cls.names())})", name)


DEFAULT_STRATEGY = Strategy.AUTO


@dataclass(frozen=True, order=True)
class PeerID:
    host: str
    port: int

    def __str__(self):
        return f"{self.host}:{self.port}"

    @property
    def valid(self) -> bool:
        return bool(self.host) and bool(_HOST_PATTERN.match(self.host)) and 0 < self.port <= MAX_PORT

    @classmethod
    def parse(cls, text: str) -> "PeerID":
        host, sep, port = (text or "").strip().rpartition(":")
        if not sep or not host:
            raise ParseError("invalid peer endpoint, expected host:port", text)
        try:
            peer_id = cls(host=host, port=int(port))
        except ValueError:
            raise ParseError("invalid port in peer endpoint", text)
        if not peer_id.valid:
            raise ParseError("invalid peer endpoint", text)
        return peer_id


@dataclass(frozen=True)
class Peer:
    """One worker's identity within a job."""

    id: PeerID
    rank: int
    local_rank: int
    cluster_size: int

    def __str__(self):
        return f"#{self.rank}@{self.id}"

    def to_dict(self) -> dict:
        return {
            "host": self.id.host,
            "port": self.id.port,
            "rank": self.rank,
            "local_rank": self.local_rank,
            "cluster_size": self.cluster_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Peer":
        return cls(
            id=PeerID(host=data["host"], port=int(data["port"])),
            rank=int(data["rank"]),
            local_rank=int(data["local_rank"]),
            cluster_size=int(data["cluster_size"]),
        )


class PeerList(Sequence[Peer]):
    """Ordered peer table. ``peers[i].rank == i`` for lists built by :func:`gen_peer_list`."""

    def __init__(self, peers: Iterable[Peer] = ()):
        self._peers = tuple(peers)

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return PeerList(self._peers[idx])
        return self._peers[idx]

    def __len__(self):
        return len(self._peers)

    def __eq__(self, other):
        if isinstance(other, PeerList):
            return self._peers == other._peers
        if isinstance(other, (list, tuple)):
            return list(self._peers) == list(other)
        return NotImplemented

    def __hash__(self):
        return hash(self._peers)

    def __repr__(self):
        return f"PeerList({[str(p) for p in self._peers]})"

    def endpoints(self) -> List[PeerID]:
        return [p.id for p in self._peers]

    def hosts(self) -> List[str]:
        """Distinct peer hosts in first-seen order."""
        seen = []
        for p in self._peers:
            if p.id.host not in seen:
                seen.append(p.id.host)
        return seen

    def on_host(self, host: str) -> "PeerList":
        return PeerList(p for p in self._peers if p.id.host == host)

    def to_env_value(self) -> str:
        """Serialize the endpoint table for the worker environment: ``host:port,host:port,...``."""
        return ",".join(str(p.id) for p in self._peers)

    @classmethod
    def from_env_value(cls, value: str) -> "PeerList":
        """Rebuild the peer table a worker sees from its serialized endpoint list.

        Local ranks are recomputed per host in list order, which matches :func:`gen_peer_list`.
        """
        if not value:
            return cls()
        ids = [PeerID.parse(token) for token in value.split(",")]
        local_counts = {}
        peers = []
        for rank, peer_id in enumerate(ids):
            local_rank = local_counts.get(peer_id.host, 0)
            local_counts[peer_id.host] = local_rank + 1
            peers.append(Peer(id=peer_id, rank=rank, local_rank=local_rank, cluster_size=len(ids)))
        return cls(peers)

    def validate(self):
        """Raise :class:`BuildError` when the table is empty or holds an unusable endpoint."""
        if not self._peers:
            raise BuildError("empty peer list")
        seen = set()
        for peer in self._peers:
            if not peer.id.valid:
                raise BuildError(f"invalid peer endpoint {peer.id.host!r}:{peer.id.port!r}")
            if peer.id in seen:
                raise BuildError(f"duplicate peer endpoint {peer.id}")
            seen.add(peer.id)


def gen_peer_list(
    hosts: HostList,
    total_peers: int,
    strategy: Optional[Strategy] = None,
    port_base: int = DEFAULT_PEER_PORT_BASE,
) -> PeerList:
    """Assign ``total_peers`` ranks to hosts, filling each host's slots in host-list order.

    The mapping is a pure function of ``(hosts, total_peers, port_base)`` so every node computes
    the same rank -> endpoint table without talking to the others. Hosts past the point where the
    count is satisfied get no peers. ``strategy`` does not affect placement.

    Raises:
        PlanError: if ``total_peers`` is not positive, exceeds the total capacity, or a peer port
            would fall outside the valid range. No partial list is returned.
    """
    if total_peers < 1:
        raise PlanError(f"invalid peer count {total_peers}")
    capacity = hosts.total_capacity
    if total_peers > capacity:
        raise PlanError(f"insufficient capacity: {total_peers} peers requested, {capacity} slots available")

    peers = []
    rank = 0
    for host in hosts:
        for local_rank in range(host.capacity):
            if rank >= total_peers:
                break
            port = port_base + local_rank
            if port > MAX_PORT or port < 1:
                raise PlanError(f"peer port {port} out of range for host {host.address}")
            peers.append(
                Peer(
                    id=PeerID(host=host.address, port=port),
                    rank=rank,
                    local_rank=local_rank,
                    cluster_size=total_peers,
                )
            )
            rank += 1
        if rank >= total_peers:
            break
    return PeerList(peers)
