"""Host capacity records and the ``-H`` host spec grammar.

A host spec is a comma separated list of ``address[:capacity[:public_address]]`` entries,
e.g. ``10.0.0.1:4,10.0.0.2:4:52.1.2.3``. Capacity defaults to 1. The order of the entries
is significant: peers are assigned to hosts in exactly this order on every node.
"""

import os
import re
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from peerrun.constants import LOCALHOST
from peerrun.utils import ParseError

# Anything that can sit in front of the first ':' and is not obviously garbage.
_ADDRESS_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class HostRecord:
    """A host and the number of process slots it offers."""

    address: str
    capacity: int = 1
    public_address: Optional[str] = None

    def __str__(self):
        s = f"{self.address}:{self.capacity}"
        if self.public_address:
            s += f":{self.public_address}"
        return s

    def humanize(self) -> str:
        return f"<ip={self.address}, slots={self.capacity}, pub_ip={self.public_address or ''}>"

    @property
    def remote_address(self) -> str:
        """Address used to reach this host from outside the cluster network."""
        return self.public_address or self.address


class HostList(Sequence[HostRecord]):
    """Ordered, duplicate-free collection of :class:`HostRecord`."""

    def __init__(self, hosts=()):
        hosts = tuple(hosts)
        seen = set()
        for host in hosts:
            if host.address in seen:
                raise ParseError("duplicate host address", host.address)
            seen.add(host.address)
        self._hosts = hosts

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return HostList(self._hosts[idx])
        return self._hosts[idx]

    def __len__(self):
        return len(self._hosts)

    def __iter__(self) -> Iterator[HostRecord]:
        return iter(self._hosts)

    def __eq__(self, other):
        if isinstance(other, HostList):
            return self._hosts == other._hosts
        return NotImplemented

    def __hash__(self):
        return hash(self._hosts)

    def __repr__(self):
        return f"HostList({list(self._hosts)!r})"

    def __str__(self):
        return format_host_spec(self)

    @property
    def total_capacity(self) -> int:
        return sum(h.capacity for h in self._hosts)

    def lookup(self, address: str) -> Optional[HostRecord]:
        for host in self._hosts:
            if host.address == address:
                return host
        return None

    def humanize(self) -> str:
        return ", ".join(h.humanize() for h in self._hosts)


def _parse_entry(entry: str) -> HostRecord:
    token = entry.strip()
    if not token:
        raise ParseError("empty host entry", entry)

    parts = token.split(":")
    if len(parts) > 3:
        raise ParseError("too many fields in host entry", token)

    address = parts[0]
    if not _ADDRESS_PATTERN.match(address):
        raise ParseError("invalid host address", token)

    capacity = 1
    if len(parts) >= 2:
        try:
            capacity = int(parts[1])
        except ValueError:
            raise ParseError("invalid slot count", token)
        if capacity < 1:
            raise ParseError("slot count must be positive", token)

    public_address = None
    if len(parts) == 3:
        public_address = parts[2]
        if not _ADDRESS_PATTERN.match(public_address):
            raise ParseError("invalid public address", token)

    return HostRecord(address=address, capacity=capacity, public_address=public_address)


def parse_host_spec(text: str) -> HostList:
    """Parse a host spec string into a :class:`HostList`.

    Raises:
        ParseError: on an empty spec, a malformed entry or a repeated address. The offending token
            is included in the message and kept on ``ParseError.token``.
    """
    if text is None or not text.strip():
        raise ParseError("empty host spec")
    return HostList(_parse_entry(entry) for entry in text.split(","))


def format_host_spec(hosts) -> str:
    return ",".join(str(h) for h in hosts)


def default_host_spec() -> str:
    return f"{LOCALHOST}:{os.cpu_count() or 1}"
