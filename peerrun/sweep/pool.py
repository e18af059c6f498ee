import threading
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from peerrun.globals import config
from peerrun.logger import get_logger
from peerrun.plan.hosts import HostList, HostRecord
from peerrun.runner.cancel import CancelToken
from peerrun.utils import CancellationExceeded, PlanError

logger = get_logger(__name__)


class HostPool:
    """Bounded pool of hosts shared by concurrently running experiments.

    Hosts are handed out in pool order. Checking for and taking hosts happens under one lock, so
    two requesters can never both see the same hosts as free. The lock is not held while a
    requester sleeps between polls.
    """

    def __init__(self, hosts: Sequence[HostRecord]):
        self._hosts = HostList(hosts)
        self._free: List[HostRecord] = list(self._hosts)
        self._borrowed = set()
        self._peak = 0
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        return len(self._hosts)

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._free)

    @property
    def borrowed(self) -> int:
        with self._lock:
            return len(self._borrowed)

    @property
    def peak_borrowed(self) -> int:
        """Largest number of hosts that were out at the same time."""
        with self._lock:
            return self._peak

    def try_require_n(self, n: int) -> Optional[HostList]:
        with self._lock:
            if len(self._free) < n:
                return None
            taken, self._free = self._free[:n], self._free[n:]
            self._borrowed.update(h.address for h in taken)
            self._peak = max(self._peak, len(self._borrowed))
            return HostList(taken)

    def require_n(
        self,
        n: int,
        cancel_token: Optional[CancelToken] = None,
        poll_interval: Optional[float] = None,
    ) -> HostList:
        """Block until ``n`` hosts are free, then take them.

        Raises:
            PlanError: if ``n`` is not positive or larger than the pool, so it can never be satisfied.
            CancellationExceeded: if ``cancel_token`` fires while waiting.
        """
        if n < 1 or n > self.total:
            raise PlanError(f"cannot require {n} host(s) from a pool of {self.total}")
        poll_interval = config.pool_poll_interval if poll_interval is None else poll_interval

        while True:
            hosts = self.try_require_n(n)
            if hosts is not None:
                logger.debug(f"Took {n} host(s): {hosts}")
                return hosts
            if cancel_token is not None:
                if cancel_token.wait(poll_interval):
                    raise CancellationExceeded(f"gave up waiting for {n} host(s): {cancel_token.reason}")
            else:
                time.sleep(poll_interval)

    def return_all(self, hosts: Sequence[HostRecord]):
        """Give hosts back to the pool.

        Raises:
            ValueError: if any host is not currently borrowed from this pool. Nothing is returned
                in that case.
        """
        with self._lock:
            addresses = [h.address for h in hosts]
            unknown = [a for a in addresses if a not in self._borrowed]
            if unknown or len(set(addresses)) != len(addresses):
                raise ValueError(f"hosts not borrowed from this pool: {unknown or addresses}")
            for address in addresses:
                self._borrowed.discard(address)
            returned = set(addresses)
            # rebuild in pool order so hand-out order stays deterministic
            self._free = [h for h in self._hosts if h.address in returned or h in self._free]
            logger.debug(f"Returned {len(addresses)} host(s)")

    @contextmanager
    def borrow(
        self,
        n: int,
        cancel_token: Optional[CancelToken] = None,
        poll_interval: Optional[float] = None,
    ) -> Iterator[HostList]:
        hosts = self.require_n(n, cancel_token, poll_interval)
        try:
            yield hosts
        finally:
            self.return_all(hosts)
