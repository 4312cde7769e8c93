"""Leases, lease events, subnet keys and the subnet manager interface."""

from __future__ import annotations

import enum
import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network
from pathlib import Path
from typing import Any, AsyncIterator

from .config import Config

VERSION = "dev"

_SUBNET_RE = re.compile(r"(\d+\.\d+.\d+.\d+)-(\d+)(?:&([a-f\d:]+)-(\d+))?$", re.ASCII)


class LeaseTakenError(Exception):
    """The requested subnet lease is already held by another host."""

    def __init__(self, message: str = "subnet: lease already taken") -> None:
        super().__init__(message)


class NoMoreTriesError(Exception):
    """No attempts are left to acquire a lease."""

    def __init__(self, message: str = "subnet: no more tries") -> None:
        super().__init__(message)


def _fold(data: dict) -> dict:
    return {str(k).lower(): v for k, v in data.items()}


@dataclass
class LeaseAttrs:
    """Attributes a host publishes together with its lease."""

    public_ip: IPv4Address = IPv4Address(0)
    public_ipv6: IPv6Address | None = None
    backend_type: str = ""
    backend_data: Any = None
    backend_v6_data: Any = None

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "PublicIP": str(self.public_ip),
            "PublicIPv6": None if self.public_ipv6 is None else str(self.public_ipv6),
        }
        if self.backend_type:
            out["BackendType"] = self.backend_type
        if self.backend_data is not None:
            out["BackendData"] = self.backend_data
        if self.backend_v6_data is not None:
            out["BackendV6Data"] = self.backend_v6_data
        return out

    @classmethod
    def _from_dict(cls, data: dict) -> LeaseAttrs:
        if not isinstance(data, dict):
            raise ValueError(f"lease attributes must be an object, got {data!r}")
        folded = _fold(data)
        public_ip = folded.get("publicip")
        public_ipv6 = folded.get("publicipv6")
        return cls(
            public_ip=IPv4Address(public_ip) if public_ip is not None else IPv4Address(0),
            public_ipv6=IPv6Address(public_ipv6) if public_ipv6 is not None else None,
            backend_type=folded.get("backendtype") or "",
            backend_data=folded.get("backenddata"),
            backend_v6_data=folded.get("backendv6data"),
        )

    def to_json(self) -> str:
        """Serialise to compact JSON."""
        return json.dumps(self._to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> LeaseAttrs:
        """Build attributes from their JSON form."""
        return cls._from_dict(json.loads(data))


@dataclass
class Lease:
    """A subnet (and optional IPv6 subnet) leased to one host."""

    enable_ipv4: bool = False
    enable_ipv6: bool = False
    subnet: IPv4Network | None = None
    ipv6_subnet: IPv6Network | None = None
    attrs: LeaseAttrs = field(default_factory=LeaseAttrs)
    expiration: datetime | None = None
    asof: int = 0

    def key(self) -> str:
        """The registry key of this lease."""
        return make_subnet_key(self.subnet, self.ipv6_subnet)


def _lease_to_dict(lease: Lease) -> dict[str, Any]:
    return {
        "EnableIPv4": lease.enable_ipv4,
        "EnableIPv6": lease.enable_ipv6,
        "Subnet": None if lease.subnet is None else str(lease.subnet),
        "IPv6Subnet": None if lease.ipv6_subnet is None else str(lease.ipv6_subnet),
        "Attrs": lease.attrs._to_dict(),
        "Expiration": None if lease.expiration is None else lease.expiration.isoformat(),
        "Asof": lease.asof,
    }


def _lease_from_dict(data: Any) -> Lease:
    if data is None:
        return Lease()
    if not isinstance(data, dict):
        raise ValueError(f"lease must be an object, got {data!r}")
    folded = _fold(data)
    subnet = folded.get("subnet")
    ipv6_subnet = folded.get("ipv6subnet")
    expiration = folded.get("expiration")
    attrs = folded.get("attrs")
    return Lease(
        enable_ipv4=bool(folded.get("enableipv4", False)),
        enable_ipv6=bool(folded.get("enableipv6", False)),
        subnet=IPv4Network(subnet, strict=False) if subnet else None,
        ipv6_subnet=IPv6Network(ipv6_subnet, strict=False) if ipv6_subnet else None,
        attrs=LeaseAttrs._from_dict(attrs) if attrs is not None else LeaseAttrs(),
        expiration=datetime.fromisoformat(expiration) if expiration else None,
        asof=int(folded.get("asof", 0) or 0),
    )


class EventType(enum.Enum):
    """Kind of lease change."""

    ADDED = "added"
    REMOVED = "removed"


@dataclass
class Event:
    """A lease being added or removed."""

    type: EventType
    lease: Lease = field(default_factory=Lease)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        return {"type": self.type.value, "lease": _lease_to_dict(self.lease)}

    @classmethod
    def from_dict(cls, data: dict) -> Event:
        """Build an event from its JSON-ready representation."""
        try:
            event_type = EventType(data.get("type"))
        except ValueError:
            raise ValueError("bad event type") from None
        return cls(type=event_type, lease=_lease_from_dict(data.get("lease")))


@dataclass
class LeaseWatchResult:
    """One watch step: either incremental events or a full snapshot."""

    events: list[Event] = field(default_factory=list)
    snapshot: list[Lease] = field(default_factory=list)
    cursor: Any = None


def _parse_prefix(text: str, maximum: int) -> int | None:
    value = int(text)
    return value if value <= maximum else None


def parse_subnet_key(s: str) -> tuple[IPv4Network | None, IPv6Network | None]:
    """Parse a registry key such as ``10.1.2.0-24&fd00::-64``; ``(None, None)`` if invalid."""
    match = _SUBNET_RE.search(s)
    if match is None:
        return None, None
    try:
        addr4 = IPv4Address(match.group(1))
    except ValueError:
        return None, None
    prefix4 = _parse_prefix(match.group(2), 31)
    if prefix4 is None:
        return None, None
    sn4 = IPv4Network((addr4, prefix4), strict=False)

    sn6 = None
    if match.group(3):
        try:
            addr6 = IPv6Address(match.group(3))
        except ValueError:
            return None, None
        prefix6 = _parse_prefix(match.group(4), 127)
        if prefix6 is None:
            return None, None
        sn6 = IPv6Network((addr6, prefix6), strict=False)
    return sn4, sn6


def _is_empty(net: IPv4Network | IPv6Network | None) -> bool:
    return net is None or (int(net.network_address) == 0 and net.prefixlen == 0)


def make_subnet_key(sn: IPv4Network | None, sn6: IPv6Network | None) -> str:
    """The registry key for an IPv4 subnet and optional IPv6 subnet."""
    ip4 = sn if sn is not None else IPv4Network("0.0.0.0/0")
    key = f"{ip4.network_address}-{ip4.prefixlen}"
    if _is_empty(sn6):
        return key
    return f"{key}&{sn6.network_address}-{sn6.prefixlen}"


def _first_usable(net: IPv4Network | IPv6Network) -> str:
    return f"{net.network_address + 1}/{net.prefixlen}"


def write_subnet_file(
    path: str | os.PathLike,
    config: Config,
    ip_masq: bool,
    sn: IPv4Network | None,
    ipv6sn: IPv6Network | None,
    mtu: int,
) -> None:
    """Atomically write the environment file describing this host's subnet."""
    target = Path(path)
    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    temp = target.with_name("." + target.name)

    lines = []
    if config.enable_ipv4:
        if config.has_networks():
            networks = ",".join(str(n) for n in config.networks)
        else:
            networks = str(config.network or IPv4Network("0.0.0.0/0"))
        lines.append(f"FLANNEL_NETWORK={networks}")
        lines.append(f"FLANNEL_SUBNET={_first_usable(sn or IPv4Network('0.0.0.0/0'))}")
    if config.enable_ipv6:
        if config.has_ipv6_networks():
            networks = ",".join(str(n) for n in config.ipv6_networks)
        else:
            networks = str(config.ipv6_network or IPv6Network("::/0"))
        lines.append(f"FLANNEL_IPV6_NETWORK={networks}")
        lines.append(f"FLANNEL_IPV6_SUBNET={_first_usable(ipv6sn or IPv6Network('::/0'))}")
    lines.append(f"FLANNEL_MTU={int(mtu)}")
    lines.append(f"FLANNEL_IPMASQ={'true' if ip_masq else 'false'}")

    temp.write_text("\n".join(lines) + "\n")
    os.replace(temp, target)


class Manager(ABC):
    """A source of subnet leases for this host."""

    @abstractmethod
    async def get_network_config(self) -> Config:
        """Return the validated network configuration."""

    def handle_subnet_file(
        self,
        path: str | os.PathLike,
        config: Config,
        ip_masq: bool,
        sn: IPv4Network | None,
        ipv6sn: IPv6Network | None,
        mtu: int,
    ) -> None:
        """Write the subnet environment file."""
        write_subnet_file(path, config, ip_masq, sn, ipv6sn, mtu)

    @abstractmethod
    async def acquire_lease(self, attrs: LeaseAttrs) -> Lease:
        """Obtain a lease for this host."""

    @abstractmethod
    async def renew_lease(self, lease: Lease) -> None:
        """Extend ``lease`` and update its expiration."""

    @abstractmethod
    def watch_lease(
        self, sn: IPv4Network, sn6: IPv6Network | None
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        """Yield batches of watch results for one lease."""

    @abstractmethod
    def watch_leases(self) -> AsyncIterator[list[LeaseWatchResult]]:
        """Yield batches of watch results for all leases."""

    @abstractmethod
    async def complete_lease(self, lease: Lease) -> None:
        """Run the post-acquisition work for ``lease``."""

    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this manager."""