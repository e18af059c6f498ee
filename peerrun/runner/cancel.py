import threading
import time
from typing import List, Optional

from peerrun.utils import CancellationExceeded


class CancelToken:
    """Cooperative cancellation signal with an optional deadline.

    Every blocking wait in peerrun takes a token. A token is done once ``cancel()`` was called,
    its deadline passed, or its parent is done.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional["CancelToken"] = None):
        # deadline is an absolute time.monotonic() value
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["CancelToken"] = []
        self._reason = None
        if parent is not None:
            parent._adopt(self)

    @classmethod
    def with_timeout(cls, seconds: Optional[float], parent: Optional["CancelToken"] = None) -> "CancelToken":
        deadline = time.monotonic() + seconds if seconds is not None else None
        return cls(deadline=deadline, parent=parent)

    def child(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken.with_timeout(timeout, parent=self)

    def _adopt(self, child: "CancelToken"):
        with self._lock:
            self._children.append(child)
            done = self._event.is_set()
        if done:
            child.cancel(self._reason)

    def cancel(self, reason: Optional[str] = None):
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason or "cancelled"
            self._event.set()
            children = list(self._children)
        for c in children:
            c.cancel(reason)

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.expired:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, ``None`` when there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block for up to ``timeout`` seconds (bounded by the deadline). Returns True if cancelled."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def raise_if_cancelled(self):
        if self.cancelled:
            raise CancellationExceeded(self._reason or "cancelled")

    def __repr__(self):
        state = "cancelled" if self._event.is_set() else "active"
        return f"CancelToken({state}, remaining={self.remaining()})"
