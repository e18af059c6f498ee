import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from peerrun.plan.peers import Peer, PeerList


@dataclass(frozen=True)
class Stage:
    """A cluster layout plus the checkpoint tag workers resume from."""

    cluster: PeerList
    checkpoint: str = "0"

    def __post_init__(self):
        if not isinstance(self.cluster, PeerList):
            object.__setattr__(self, "cluster", PeerList(self.cluster))
        object.__setattr__(self, "checkpoint", str(self.checkpoint))

    def __str__(self):
        return f"Stage(checkpoint={self.checkpoint}, peers={len(self.cluster)})"

    def to_dict(self) -> dict:
        return {"checkpoint": self.checkpoint, "cluster": [p.to_dict() for p in self.cluster]}

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        return cls(
            cluster=PeerList(Peer.from_dict(p) for p in data.get("cluster", [])),
            checkpoint=str(data.get("checkpoint", "0")),
        )


class StageStore:
    """Latest-wins holder for the current :class:`Stage`.

    Only the newest pushed stage is kept. Every push bumps ``version``; readers always get a whole
    stage, never a partially written one.
    """

    def __init__(self, stage: Optional[Stage] = None):
        self._cond = threading.Condition()
        self._stage = stage
        self._version = 0 if stage is None else 1

    @property
    def version(self) -> int:
        with self._cond:
            return self._version

    def get(self) -> Optional[Stage]:
        with self._cond:
            return self._stage

    def snapshot(self) -> Tuple[int, Optional[Stage]]:
        with self._cond:
            return self._version, self._stage

    def push(self, stage: Stage) -> int:
        with self._cond:
            self._stage = stage
            self._version += 1
            self._cond.notify_all()
            return self._version

    def wait_for_update(self, after_version: int, timeout: Optional[float] = None) -> Tuple[int, Optional[Stage]]:
        """Block until the version moves past ``after_version`` or ``timeout`` elapses."""
        with self._cond:
            self._cond.wait_for(lambda: self._version > after_version, timeout=timeout)
            return self._version, self._stage
