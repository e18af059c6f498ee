import time
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from peerrun.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


####################################################################################################
# Errors
####################################################################################################
class PeerrunError(Exception):
    pass


class ParseError(PeerrunError, ValueError):
    """Malformed host spec, strategy name or other CLI input."""

    def __init__(self, message: str, token: Optional[str] = None):
        self.token = token
        if token is not None:
            message = f"{message}: {token!r}"
        super().__init__(message)


class PlanError(PeerrunError):
    """The requested peer layout cannot be satisfied by the host list."""


class BuildError(PeerrunError):
    """A process plan could not be built from the given peers."""


class TransportFailure(PeerrunError):
    """A process could not be started, or a remote host could not be reached."""

    def __init__(self, host: str = "unknown", reason: str = "unknown"):
        self.host = host
        self.reason = reason
        super().__init__(f"transport failure on {host}: {reason}")

    def __getstate__(self):
        return {"host": self.host, "reason": self.reason}

    @classmethod
    def from_dict(cls, state):
        return cls(host=state.get("host", "unknown"), reason=state.get("reason", "unknown"))


class ProcessFailure(PeerrunError):
    """A worker process exited with a non-zero code."""

    def __init__(self, peer=None, exit_code: int = -1):
        self.peer = peer
        self.exit_code = exit_code
        where = f"peer {peer}" if peer is not None else "process"
        super().__init__(f"{where} exited with code {exit_code}")

    def __getstate__(self):
        return {"peer": str(self.peer) if self.peer is not None else None, "exit_code": self.exit_code}

    @classmethod
    def from_dict(cls, state):
        return cls(peer=state.get("peer"), exit_code=state.get("exit_code", -1))


class CancellationExceeded(PeerrunError, TimeoutError):
    """A deadline expired or the run was cancelled. Callers must not treat this as a job failure."""

    def __init__(self, message: str = "cancelled or deadline exceeded"):
        super().__init__(message)


class ResultNotFound(PeerrunError):
    """No output line matched the metric pattern of an experiment."""


def is_cancellation(err: Optional[BaseException]) -> bool:
    return isinstance(err, CancellationExceeded)


####################################################################################################
# Helpers
####################################################################################################
def measure(fn: Callable[[], T]) -> Tuple[float, T]:
    """Run ``fn`` and return ``(seconds_taken, result)``."""
    t0 = time.monotonic()
    result = fn()
    return time.monotonic() - t0, result


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    if seconds < 60:
        return f"{seconds:.3f}s"
    minutes, secs = divmod(seconds, 60)
    return f"{int(minutes)}m{secs:.1f}s"


def grep(pattern: str, lines: Iterable[str]) -> List[str]:
    """Return lines containing ``pattern`` as a plain substring."""
    return [line for line in lines if pattern in line]
