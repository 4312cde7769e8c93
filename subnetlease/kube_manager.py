"""Subnet manager that takes leases from Kubernetes node pod CIDRs."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Network, IPv6Network, ip_network
from typing import AsyncIterator, Iterable, Mapping

from .config import Config, parse_config
from .kube_annotations import Annotations, new_annotations
from .kube_lease import (
    Node,
    PodCidrError,
    apply_lease_annotations,
    contains_cidr,
    lease_changed,
    node_to_lease,
    split_pod_cidrs,
)
from .subnet import Event, EventType, Lease, LeaseAttrs, LeaseWatchResult, Manager, write_subnet_file

log = logging.getLogger(__name__)

DEFAULT_EVENT_QUEUE_DEPTH = 5000
LEASE_DURATION = timedelta(hours=24)
_DUAL_STACK_BACKENDS = ("vxlan", "host-gw", "wireguard")


class KubeClient(ABC):
    """The Kubernetes API calls the subnet manager relies on."""

    @abstractmethod
    async def get_node(self, name: str) -> Node:
        """Return the node called ``name``."""

    @abstractmethod
    async def patch_node_annotations(self, name: str, annotations: Mapping[str, str]) -> None:
        """Set the given annotations on the node called ``name``."""

    @abstractmethod
    async def patch_node_status(self, name: str, patch: str) -> None:
        """Apply a JSON merge patch to the status of the node called ``name``."""

    @abstractmethod
    async def list_cluster_cidrs(self) -> Iterable[tuple[str, str]]:
        """Return the (IPv4, IPv6) CIDR pairs of all ClusterCIDR resources; empty means unset."""

    @abstractmethod
    async def _get_pod_node_name(self, namespace: str, name: str) -> str:
        """Return the name of the node the given pod is scheduled on."""


@dataclass(frozen=True)
class _SubnetFileInfo:
    path: str | os.PathLike
    ip_masq: bool
    sn: IPv4Network | None
    ipv6sn: IPv6Network | None
    mtu: int


def _parse_cluster_cidr(text: str) -> IPv4Network | IPv6Network:
    try:
        return ip_network(text, strict=False)
    except ValueError as exc:
        raise ValueError(f"invalid CIDR address: {text!r}") from exc


async def read_networks_from_cluster_cidrs(client: KubeClient, config: Config) -> None:
    """Add the CIDRs of all existing ClusterCIDR resources to ``config``."""
    cidrs = list(await client.list_cluster_cidrs())
    log.info("reading %d ClusterCIDRs from kube api", len(cidrs))
    for ipv4, ipv6 in cidrs:
        if ipv4:
            net = _parse_cluster_cidr(ipv4)
            log.info("adding IPv4 CIDR %s to config.Networks", net)
            config.add_network(net)
        if ipv6:
            net = _parse_cluster_cidr(ipv6)
            log.info("adding IPv6 CIDR %s to config.IPv6Networks", net)
            config.add_network(net)


def _event_queue_depth(environ: Mapping[str, str]) -> int:
    text = environ.get("EVENT_QUEUE_DEPTH", "")
    if not text:
        return DEFAULT_EVENT_QUEUE_DEPTH
    try:
        depth = int(text, 10)
    except ValueError as exc:
        raise ValueError(f"env EVENT_QUEUE_DEPTH={text} format error: {exc}") from exc
    return depth if depth > 0 else DEFAULT_EVENT_QUEUE_DEPTH


class KubeSubnetManager(Manager):
    """Publishes lease attributes as node annotations and reports other nodes' leases."""

    def __init__(
        self,
        client: KubeClient,
        config: Config,
        node_name: str,
        prefix: str,
        *,
        use_multi_cluster_cidr: bool = False,
        set_node_network_unavailable: bool = False,
        event_queue_depth: int = DEFAULT_EVENT_QUEUE_DEPTH,
    ) -> None:
        self.annotations: Annotations = new_annotations(prefix)
        self.client = client
        self.node_name = node_name
        self.subnet_conf = config
        self.enable_ipv4 = config.enable_ipv4
        self.enable_ipv6 = config.enable_ipv6
        self.use_multi_cluster_cidr = use_multi_cluster_cidr
        self.set_node_network_unavailable = set_node_network_unavailable
        # With the "alloc" backend routing is handled elsewhere, so node events are not needed.
        self.disable_node_informer = config.backend_type == "alloc"
        self._events: asyncio.Queue[Event] = asyncio.Queue(maxsize=event_queue_depth)
        self._subnet_file: _SubnetFileInfo | None = None

    # -- node events ---------------------------------------------------------

    def _publish(self, event: Event) -> None:
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            log.error("lease event queue is full, dropping event for %s", event.lease.subnet)

    def handle_add_lease_event(self, event_type: EventType, node: Node) -> None:
        """Report a node that appeared or disappeared as a lease event."""
        if node.annotations.get(self.annotations.subnet_kube_managed) != "true":
            return
        try:
            lease = node_to_lease(node, self.annotations, self.enable_ipv4, self.enable_ipv6)
        except ValueError as exc:
            log.info("Error turning node %r to lease: %s", node.name, exc)
            return
        self._publish(Event(event_type, lease))

    def handle_update_lease_event(self, old: Node, new: Node) -> None:
        """Report an updated node as an added lease if its lease data changed."""
        if not lease_changed(old, new, self.annotations, self.enable_ipv4, self.enable_ipv6):
            return
        try:
            lease = node_to_lease(new, self.annotations, self.enable_ipv4, self.enable_ipv6)
        except ValueError as exc:
            log.info("Error turning node %r to lease: %s", new.name, exc)
            return
        self._publish(Event(EventType.ADDED, lease))

    # -- cluster CIDR events -------------------------------------------------

    def handle_add_cluster_cidr(self, ipv4: str, ipv6: str) -> None:
        """Add a new ClusterCIDR's networks to the config and rewrite the subnet file."""
        for cidr in (ipv4, ipv6):
            if not cidr:
                continue
            log.info("handleAddClusterCidr: registering CIDR [ %s ]", cidr)
            try:
                net = _parse_cluster_cidr(cidr)
            except ValueError as exc:
                log.error("error reading cluster spec: %s", exc)
                return
            self.subnet_conf.add_network(net)

        info = self._subnet_file
        if info is None:
            log.error("subnet file location is not known yet; not rewriting it")
            return
        try:
            write_subnet_file(
                info.path, self.subnet_conf, info.ip_masq, info.sn, info.ipv6sn, info.mtu
            )
        except OSError as exc:
            log.error("error writing subnet file: %s", exc)

    def handle_delete_cluster_cidr(self, obj: object) -> None:
        """Deleting ClusterCIDR resources is not supported; the event is only logged."""
        log.error("deleting ClusterCIDR is not supported. This shouldn't get called (%r)", obj)

    # -- manager interface ---------------------------------------------------

    async def get_network_config(self) -> Config:
        return self.subnet_conf

    async def acquire_lease(self, attrs: LeaseAttrs) -> Lease:
        """Annotate this node with ``attrs`` and return the lease for its pod CIDRs."""
        node = await self.client.get_node(self.node_name)
        if not node.pod_cidr:
            raise PodCidrError(f"node {self.node_name!r} pod cidr not assigned")

        cidr4, cidr6 = split_pod_cidrs(node)

        updated = apply_lease_annotations(node, self.annotations, attrs)
        changes = {
            key: value
            for key, value in updated.annotations.items()
            if node.annotations.get(key) != value
        }
        if changes:
            await self.client.patch_node_annotations(self.node_name, changes)

        lease = Lease(
            enable_ipv4=False,
            enable_ipv6=False,
            attrs=attrs,
            expiration=datetime.now() + LEASE_DURATION,
        )
        if cidr4 is not None and self.enable_ipv4:
            net = self.subnet_conf.get_flannel_network(cidr4)
            if not contains_cidr(net, cidr4):
                raise ValueError(
                    f"subnet {str(self.subnet_conf.network)!r} specified in the flannel net "
                    f"config doesn't contain {str(cidr4)!r} PodCIDR of the "
                    f"{self.node_name!r} node"
                )
            lease.subnet = cidr4
        if cidr6 is not None:
            net6 = self.subnet_conf.get_flannel_ipv6_network(cidr6)
            if not contains_cidr(net6, cidr6):
                raise ValueError(
                    f"subnet {str(net6)!r} specified in the flannel net config doesn't "
                    f"contain {str(cidr6)!r} IPv6 PodCIDR of the {self.node_name!r} node"
                )
            lease.ipv6_subnet = cidr6

        if attrs.backend_type not in _DUAL_STACK_BACKENDS:
            lease.enable_ipv4 = True
            lease.enable_ipv6 = False
        return lease

    async def watch_leases(self) -> AsyncIterator[list[LeaseWatchResult]]:
        while True:
            event = await self._events.get()
            yield [LeaseWatchResult(events=[event])]

    async def renew_lease(self, lease: Lease) -> None:
        raise NotImplementedError("the Kubernetes subnet manager does not renew leases")

    async def watch_lease(
        self, sn: IPv4Network, sn6: IPv6Network | None
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        raise NotImplementedError("the Kubernetes subnet manager does not watch single leases")
        yield  # makes this an async generator like the other managers' watches

    def name(self) -> str:
        return f"Kubernetes Subnet Manager - {self.node_name}"

    async def complete_lease(self, lease: Lease) -> None:
        """Mark the node's network as available once the lease is in place, if configured."""
        if not self.set_node_network_unavailable:
            return
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        condition = {
            "type": "NetworkUnavailable",
            "status": "False",
            "lastHeartbeatTime": now,
            "lastTransitionTime": now,
            "reason": "FlannelIsUp",
            "message": "Flannel is running on this node",
        }
        patch = json.dumps({"status": {"conditions": [condition]}}, separators=(",", ":"))
        await self.client.patch_node_status(self.node_name, patch)

    def handle_subnet_file(
        self,
        path: str | os.PathLike,
        config: Config,
        ip_masq: bool,
        sn: IPv4Network | None,
        ipv6sn: IPv6Network | None,
        mtu: int,
    ) -> None:
        """Write the subnet file and remember its settings for later rewrites."""
        self._subnet_file = _SubnetFileInfo(path, ip_masq, sn, ipv6sn, mtu)
        write_subnet_file(path, config, ip_masq, sn, ipv6sn, mtu)


async def create_subnet_manager(
    client: KubeClient,
    net_conf_path: str | os.PathLike,
    prefix: str,
    set_node_network_unavailable: bool = False,
    use_multi_cluster_cidr: bool = False,
    environ: Mapping[str, str] | None = None,
) -> KubeSubnetManager:
    """Build a Kubernetes subnet manager for the node this process runs on."""
    env = os.environ if environ is None else environ

    node_name = env.get("NODE_NAME", "")
    if not node_name:
        pod_name = env.get("POD_NAME", "")
        pod_namespace = env.get("POD_NAMESPACE", "")
        if not pod_name or not pod_namespace:
            raise LookupError("env variables POD_NAME and POD_NAMESPACE must be set")
        try:
            node_name = await client._get_pod_node_name(pod_namespace, pod_name)
        except Exception as exc:
            raise LookupError(
                f"error retrieving pod spec for '{pod_namespace}/{pod_name}': {exc}"
            ) from exc
        if not node_name:
            raise LookupError(f"node name not present in pod spec '{pod_namespace}/{pod_name}'")

    try:
        with open(net_conf_path, encoding="utf-8") as handle:
            net_conf = handle.read()
    except OSError as exc:
        raise OSError(f"failed to read net conf: {exc}") from exc

    try:
        config = parse_config(net_conf)
    except ValueError as exc:
        raise ValueError(f"error parsing subnet config: {exc}") from exc

    if use_multi_cluster_cidr:
        try:
            await read_networks_from_cluster_cidrs(client, config)
        except ValueError as exc:
            raise ValueError(f"error reading flannel networks from k8s api: {exc}") from exc

    depth = _event_queue_depth(env)
    try:
        manager = KubeSubnetManager(
            client,
            config,
            node_name,
            prefix,
            use_multi_cluster_cidr=use_multi_cluster_cidr,
            set_node_network_unavailable=set_node_network_unavailable,
            event_queue_depth=depth,
        )
    except ValueError as exc:
        raise ValueError(f"error creating network manager: {exc}") from exc

    if manager.disable_node_informer:
        log.info("Node controller skips sync")
    return manager


__all__ = [
    "KubeClient",
    "KubeSubnetManager",
    "create_subnet_manager",
    "read_networks_from_cluster_cidrs",
]