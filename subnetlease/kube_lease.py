"""Translation between Kubernetes node objects and subnet leases."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from ipaddress import (
    IPv4Address,
    IPv4Network,
    IPv6Address,
    IPv6Network,
    ip_network,
)
from typing import Any

from .kube_annotations import Annotations
from .subnet import Lease, LeaseAttrs

log = logging.getLogger(__name__)

Network = IPv4Network | IPv6Network


class PodCidrError(ValueError):
    """A node's pod CIDRs are missing, malformed or of an unsupported layout."""


@dataclass
class Node:
    """The parts of a Kubernetes node that matter for subnet leases."""

    name: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    pod_cidr: str = ""
    pod_cidrs: list[str] = field(default_factory=list)


def _as_network(value: Network | str) -> Network:
    if isinstance(value, (IPv4Network, IPv6Network)):
        return value
    return ip_network(value, strict=False)


def contains_cidr(ipnet1: Network | str, ipnet2: Network | str) -> bool:
    """Whether ``ipnet2`` lies entirely inside ``ipnet1``."""
    outer = _as_network(ipnet1)
    inner = _as_network(ipnet2)
    if outer.version != inner.version:
        return False
    return outer.prefixlen <= inner.prefixlen and inner.network_address in outer


def _parse_cidr(text: str) -> Network:
    try:
        return ip_network(text, strict=False)
    except ValueError as exc:
        raise PodCidrError(f"invalid CIDR address: {text!r}") from exc


def _check_layout(node: Node) -> None:
    if len(node.pod_cidrs) >= 3:
        raise PodCidrError(
            f"node {node.name!r} pod cidrs should be IPv4/IPv6 only or dualstack"
        )


def split_pod_cidrs(node: Node) -> tuple[IPv4Network | None, IPv6Network | None]:
    """Return the node's IPv4 and IPv6 pod CIDRs; either may be ``None``."""
    _check_layout(node)
    cidr4: IPv4Network | None = None
    cidr6: IPv6Network | None = None
    sources = node.pod_cidrs if node.pod_cidrs else [node.pod_cidr]
    for text in sources:
        parsed = _parse_cidr(text)
        if isinstance(parsed, IPv4Network):
            cidr4 = parsed
        else:
            cidr6 = parsed
    return cidr4, cidr6


def _pick_cidr(node: Node, version: int) -> Network:
    _check_layout(node)
    if not node.pod_cidrs:
        parsed = _parse_cidr(node.pod_cidr)
        if parsed.version != version:
            raise PodCidrError(
                f"node {node.name!r} pod cidr {node.pod_cidr!r} is not an IPv{version} network"
            )
        return parsed
    log.info(
        "Creating the node lease for IPv%d. This is the n.Spec.PodCIDRs: %s",
        version,
        node.pod_cidrs,
    )
    for text in node.pod_cidrs:
        parsed = _parse_cidr(text)
        if parsed.version == version:
            return parsed
    raise PodCidrError(f"node {node.name!r} has no IPv{version} pod cidr")


def _raw_json(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid backend data {text!r}: {exc}") from exc


def node_to_lease(
    node: Node, annotations: Annotations, enable_ipv4: bool, enable_ipv6: bool
) -> Lease:
    """Build the lease that ``node`` advertises through its annotations and pod CIDRs."""
    ann = node.annotations
    lease = Lease()

    if enable_ipv4:
        try:
            lease.attrs.public_ip = IPv4Address(ann.get(annotations.backend_public_ip, ""))
        except ValueError as exc:
            raise ValueError(f"invalid public IP on node {node.name!r}: {exc}") from exc
        lease.attrs.backend_data = _raw_json(ann.get(annotations.backend_data))
        lease.subnet = _pick_cidr(node, 4)
        lease.enable_ipv4 = True

    if enable_ipv6:
        try:
            lease.attrs.public_ipv6 = IPv6Address(
                ann.get(annotations.backend_public_ipv6, "")
            )
        except ValueError as exc:
            raise ValueError(f"invalid public IPv6 on node {node.name!r}: {exc}") from exc
        lease.attrs.backend_v6_data = _raw_json(ann.get(annotations.backend_v6_data))
        lease.ipv6_subnet = _pick_cidr(node, 6)
        lease.enable_ipv6 = True

    lease.attrs.backend_type = ann.get(annotations.backend_type, "")
    return lease


def lease_changed(
    old: Node,
    new: Node,
    annotations: Annotations,
    enable_ipv4: bool,
    enable_ipv6: bool,
) -> bool:
    """Whether an update from ``old`` to ``new`` should be reported as a lease change."""
    if new.annotations.get(annotations.subnet_kube_managed) != "true":
        return False

    def same(key: str) -> bool:
        return old.annotations.get(key, "") == new.annotations.get(key, "")

    changed = True
    if (
        enable_ipv4
        and same(annotations.backend_data)
        and same(annotations.backend_type)
        and same(annotations.backend_public_ip)
    ):
        changed = False
    if (
        enable_ipv6
        and same(annotations.backend_v6_data)
        and same(annotations.backend_type)
        and same(annotations.backend_public_ipv6)
    ):
        changed = False
    return changed


def _marshal(data: Any) -> str:
    if data is None:
        return "null"
    return json.dumps(data, separators=(",", ":"))


def apply_lease_annotations(node: Node, annotations: Annotations, attrs: LeaseAttrs) -> Node:
    """Return a copy of ``node`` whose annotations publish ``attrs``.

    The copy's annotations equal the original's when nothing needs updating.
    """
    updated = copy.deepcopy(node)
    ann = updated.annotations

    def get(key: str) -> str:
        return ann.get(key, "")

    bd = _marshal(attrs.backend_data)
    v6bd = _marshal(attrs.backend_v6_data)
    public_ip = str(attrs.public_ip)
    public_ipv6 = "" if attrs.public_ipv6 is None else str(attrs.public_ipv6)
    backend_type = attrs.backend_type

    overwrite4 = get(annotations.backend_public_ip_overwrite)
    overwrite6 = get(annotations.backend_public_ipv6_overwrite)

    needs_v4 = (
        get(annotations.backend_data) != bd
        or get(annotations.backend_type) != backend_type
        or get(annotations.backend_public_ip) != public_ip
        or get(annotations.subnet_kube_managed) != "true"
        or (overwrite4 != "" and overwrite4 != public_ip)
    )
    needs_v6 = attrs.public_ipv6 is not None and (
        get(annotations.backend_v6_data) != v6bd
        or get(annotations.backend_type) != backend_type
        or get(annotations.backend_public_ipv6) != public_ipv6
        or get(annotations.subnet_kube_managed) != "true"
        or (overwrite6 != "" and overwrite6 != public_ipv6)
    )
    if not (needs_v4 or needs_v6):
        return updated

    ann[annotations.backend_type] = backend_type

    if (
        (backend_type == "vxlan" and bd != "null")
        or (backend_type == "wireguard" and bd != "null")
        or backend_type != "vxlan"
    ):
        ann[annotations.backend_data] = bd
        if overwrite4:
            if get(annotations.backend_public_ip) != overwrite4:
                log.info(
                    "Overriding public ip with '%s' from node annotation '%s'",
                    overwrite4,
                    annotations.backend_public_ip_overwrite,
                )
                ann[annotations.backend_public_ip] = overwrite4
        else:
            ann[annotations.backend_public_ip] = public_ip

    if (
        (backend_type == "vxlan" and v6bd != "null")
        or (backend_type == "wireguard" and v6bd != "null" and attrs.public_ipv6 is not None)
        or (backend_type == "host-gw" and attrs.public_ipv6 is not None)
    ):
        ann[annotations.backend_v6_data] = v6bd
        if overwrite6:
            if get(annotations.backend_public_ipv6) != overwrite6:
                log.info(
                    "Overriding public ipv6 with '%s' from node annotation '%s'",
                    overwrite6,
                    annotations.backend_public_ipv6_overwrite,
                )
                ann[annotations.backend_public_ipv6] = overwrite6
        else:
            ann[annotations.backend_public_ipv6] = public_ipv6

    ann[annotations.subnet_kube_managed] = "true"
    return updated