"""Network configuration: parsing, defaults and coherence checks."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network
from typing import Any, Callable

log = logging.getLogger(__name__)

_IPV4_SPACE = 1 << 32
_IPV6_SPACE = 1 << 128


class ConfigError(ValueError):
    """Raised when a network configuration is malformed or incoherent."""


@dataclass
class Config:
    """The overlay network configuration shared by all hosts."""

    enable_ipv4: bool = True
    enable_ipv6: bool = False
    network: IPv4Network | None = None
    ipv6_network: IPv6Network | None = None
    networks: list[IPv4Network] = field(default_factory=list)
    ipv6_networks: list[IPv6Network] = field(default_factory=list)
    subnet_min: IPv4Address | None = None
    subnet_max: IPv4Address | None = None
    ipv6_subnet_min: IPv6Address | None = None
    ipv6_subnet_max: IPv6Address | None = None
    subnet_len: int = 0
    ipv6_subnet_len: int = 0
    backend_type: str = ""
    backend: Any = None

    def get_flannel_network(self, sn: IPv4Network) -> IPv4Network:
        """Return the IPv4 network that holds subnet ``sn``."""
        if self.has_networks():
            for net in self.networks:
                if sn.subnet_of(net):
                    return net
            raise ConfigError(f"could not find flannel networks matching subnet {sn}")
        if not _net_empty(self.network):
            return self.network
        raise ConfigError("could not find an ipv4 network in the flannel configuration")

    def get_flannel_ipv6_network(self, sn: IPv6Network) -> IPv6Network:
        """Return the IPv6 network that holds subnet ``sn``."""
        if self.has_ipv6_networks():
            for net in self.ipv6_networks:
                if sn.subnet_of(net):
                    return net
            raise ConfigError(f"could not find flannel ipv6 networks matching subnet {sn}")
        if not _net_empty(self.ipv6_network):
            return self.ipv6_network
        raise ConfigError("could not find an ipv6 network in the flannel configuration")

    def add_network(self, net: IPv4Network | IPv6Network) -> None:
        """Add ``net`` to the IPv4 or IPv6 network list unless already present."""
        if isinstance(net, IPv4Network):
            if net not in self.networks:
                self.networks.append(net)
        elif isinstance(net, IPv6Network):
            if net not in self.ipv6_networks:
                self.ipv6_networks.append(net)
        else:
            log.warning("cannot add unknown CIDR to config: %s", net)

    def has_networks(self) -> bool:
        """Whether at least one IPv4 network has been added."""
        return len(self.networks) > 0

    def has_ipv6_networks(self) -> bool:
        """Whether at least one IPv6 network has been added."""
        return len(self.ipv6_networks) > 0


def _net_empty(net: IPv4Network | IPv6Network | None) -> bool:
    return net is None or (int(net.network_address) == 0 and net.prefixlen == 0)


def _ip_unset(addr: IPv4Address | IPv6Address | None) -> bool:
    return addr is None or int(addr) == 0


def _as_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"cannot decode {value!r} into boolean field {name}")
    return value


def _as_uint(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"cannot decode {value!r} into unsigned field {name}")
    return value


def _parser(kind: Callable[..., Any], label: str, **kwargs: Any) -> Callable[[str, Any], Any]:
    def convert(name: str, value: Any) -> Any:
        if not isinstance(value, str):
            raise ConfigError(f"cannot decode {value!r} into {label} field {name}")
        try:
            return kind(value, **kwargs)
        except ValueError as exc:
            raise ConfigError(f"invalid {label} for {name}: {value!r}") from exc

    return convert


_as_ip4net = _parser(IPv4Network, "IPv4 network", strict=False)
_as_ip6net = _parser(IPv6Network, "IPv6 network", strict=False)
_as_ip4 = _parser(IPv4Address, "IPv4 address")
_as_ip6 = _parser(IPv6Address, "IPv6 address")


def _list_of(item: Callable[[str, Any], Any]) -> Callable[[str, Any], list]:
    def convert(name: str, value: Any) -> list:
        if not isinstance(value, list):
            raise ConfigError(f"cannot decode {value!r} into list field {name}")
        return [item(name, v) for v in value]

    return convert


_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "enableipv4": ("enable_ipv4", _as_bool),
    "enableipv6": ("enable_ipv6", _as_bool),
    "network": ("network", _as_ip4net),
    "ipv6network": ("ipv6_network", _as_ip6net),
    "networks": ("networks", _list_of(_as_ip4net)),
    "ipv6networks": ("ipv6_networks", _list_of(_as_ip6net)),
    "subnetmin": ("subnet_min", _as_ip4),
    "subnetmax": ("subnet_max", _as_ip4),
    "ipv6subnetmin": ("ipv6_subnet_min", _as_ip6),
    "ipv6subnetmax": ("ipv6_subnet_max", _as_ip6),
    "subnetlen": ("subnet_len", _as_uint),
    "ipv6subnetlen": ("ipv6_subnet_len", _as_uint),
}


def _parse_backend_type(backend: Any, present: bool) -> str:
    if not present:
        return "udp"
    if backend is None:
        return ""
    if not isinstance(backend, dict):
        raise ConfigError(
            f"error decoding Backend property of config: cannot decode {backend!r} into an object"
        )
    backend_type = ""
    for key, value in backend.items():
        if key.lower() == "type" and value is not None:
            if not isinstance(value, str):
                raise ConfigError(
                    f"error decoding Backend property of config: Type must be a string, got {value!r}"
                )
            backend_type = value
    return backend_type


def parse_config(s: str) -> Config:
    """Parse a JSON network configuration; field names match case-insensitively."""
    try:
        raw = json.loads(s)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid configuration JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a JSON object")

    cfg = Config()
    backend_present = False
    for key, value in raw.items():
        folded = key.lower()
        if folded == "backend":
            backend_present = True
            cfg.backend = value
            continue
        spec = _FIELDS.get(folded)
        if spec is None or value is None:
            continue
        attr, convert = spec
        setattr(cfg, attr, convert(key, value))

    cfg.backend_type = _parse_backend_type(cfg.backend, backend_present)
    cfg.networks = []
    cfg.ipv6_networks = []
    return cfg


def _check_ipv4(config: Config) -> None:
    net = config.network
    if _net_empty(net):
        raise ConfigError("please define a correct Network parameter in the flannel config")
    if config.subnet_len > 0:
        if config.subnet_len > 30:
            raise ConfigError("SubnetLen must be less than /31")
        if config.subnet_len < net.prefixlen + 2:
            raise ConfigError("network must be able to accommodate at least four subnets")
    elif net.prefixlen > 28:
        raise ConfigError("network is too small. Minimum useful network prefix is /28")
    elif net.prefixlen <= 22:
        config.subnet_len = 24
    else:
        config.subnet_len = net.prefixlen + 2

    size = 1 << (32 - config.subnet_len)
    base = int(net.network_address)

    if _ip_unset(config.subnet_min):
        config.subnet_min = IPv4Address((base + size) % _IPV4_SPACE)
    elif config.subnet_min not in net:
        raise ConfigError("SubnetMin is not in the range of the Network")

    if _ip_unset(config.subnet_max):
        next_ip = (base + net.num_addresses) % _IPV4_SPACE
        config.subnet_max = IPv4Address((next_ip - size) % _IPV4_SPACE)
    elif config.subnet_max not in net:
        raise ConfigError("SubnetMax is not in the range of the Network")

    mask = (0xFFFFFFFF << (32 - config.subnet_len)) & 0xFFFFFFFF
    if int(config.subnet_min) & mask != int(config.subnet_min):
        raise ConfigError(f"SubnetMin is not on a SubnetLen boundary: {config.subnet_min}")
    if int(config.subnet_max) & mask != int(config.subnet_max):
        raise ConfigError(f"SubnetMax is not on a SubnetLen boundary: {config.subnet_max}")


def _check_ipv6(config: Config) -> None:
    net = config.ipv6_network
    if _net_empty(net):
        raise ConfigError("please define a correct IPv6Network parameter in the flannel config")
    if config.ipv6_subnet_len > 0:
        if config.ipv6_subnet_len > 126:
            raise ConfigError("SubnetLen must be less than /127")
        if config.ipv6_subnet_len < net.prefixlen + 2:
            raise ConfigError("network must be able to accommodate at least four subnets")
    elif net.prefixlen > 124:
        raise ConfigError("IPv6Network is too small. Minimum useful network prefix is /124")
    elif net.prefixlen <= 62:
        config.ipv6_subnet_len = 64
    else:
        config.ipv6_subnet_len = net.prefixlen + 2

    size = 1 << (128 - config.ipv6_subnet_len)
    base = int(net.network_address)

    if _ip_unset(config.ipv6_subnet_min):
        config.ipv6_subnet_min = IPv6Address((base + size) % _IPV6_SPACE)
    elif config.ipv6_subnet_min not in net:
        raise ConfigError("IPv6SubnetMin is not in the range of the IPv6Network")

    if _ip_unset(config.ipv6_subnet_max):
        next_ip = (base + net.num_addresses) % _IPV6_SPACE
        config.ipv6_subnet_max = IPv6Address((next_ip - size) % _IPV6_SPACE)
    elif config.ipv6_subnet_max not in net:
        raise ConfigError("IPv6SubnetMax is not in the range of the IPv6Network")

    mask = ((1 << 128) - 1) ^ (size - 1)
    if int(config.ipv6_subnet_min) & mask != int(config.ipv6_subnet_min):
        raise ConfigError(
            f"IPv6SubnetMin is not on a SubnetLen boundary: {config.ipv6_subnet_min}"
        )
    if int(config.ipv6_subnet_max) & mask != int(config.ipv6_subnet_max):
        raise ConfigError(
            f"IPv6SubnetMax is not on a SubnetLen boundary: {config.ipv6_subnet_max}"
        )


def check_network_config(config: Config) -> None:
    """Validate ``config`` and fill in defaulted subnet lengths and ranges."""
    if config.enable_ipv4:
        _check_ipv4(config)
    if config.enable_ipv6:
        _check_ipv6(config)


__all__ = [
    "Config",
    "ConfigError",
    "check_network_config",
    "parse_config",
    "ipaddress",
]