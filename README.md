# subnetlease

`subnetlease` hands out one subnet per host from a larger overlay network and keeps
track of those leases. It reads a JSON network configuration, works out the range of
subnets that can be handed out, stores leases in a registry, renews them before they
expire and reports other hosts' leases as they appear and go away.

IPv4, IPv6 and dual-stack configurations are supported. The lease managers are
asynchronous (`asyncio`); there are two of them:

- `LocalManager` (`subnetlease.etcd_manager`) allocates subnets itself and keeps them
  in a `Registry` (`subnetlease.etcd_registry`). `InMemoryRegistry` is a complete
  registry kept in memory, with revisions, expiring keys and watches.
- `KubeSubnetManager` (`subnetlease.kube_manager`) takes each node's pod CIDR as its
  lease and records lease data in node annotations. It talks to the cluster through
  a `KubeClient` that you implement.

The package has no third-party dependencies.

## Installation

From a checkout of the project:

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Network configuration

```python
from subnetlease.config import parse_config, check_network_config

config = parse_config('{ "Network": "10.3.0.0/16" }')
check_network_config(config)

print(config.subnet_len)    # 24
print(config.subnet_min)    # 10.3.1.0
print(config.subnet_max)    # 10.3.255.0
print(config.backend_type)  # "udp" when no Backend is given
```

`parse_config` reads a JSON object whose field names are matched without regard to
case (`Network`, `SubnetMin`, `SubnetMax`, `SubnetLen`, `EnableIPv4`, `EnableIPv6`,
`IPv6Network`, `IPv6SubnetMin`, `IPv6SubnetMax`, `IPv6SubnetLen`, `Backend`). IPv4 is
enabled unless `EnableIPv4` is `false`. The backend type is taken from
`Backend.Type`.

`check_network_config` fills in defaults and raises `ConfigError` (a `ValueError`)
when the configuration is inconsistent, for example:

- no network is defined for an enabled address family;
- a `SubnetLen` above 30 (IPv6: above 126), or one that leaves room for fewer than
  four subnets;
- a network smaller than a /28 (IPv6: /124) when no subnet length is given;
- a `SubnetMin` or `SubnetMax` outside the network or not on a subnet boundary.

Without an explicit length, each host gets a /24 (IPv6: /64) if the network is large
enough, otherwise the network is split into four. `SubnetMin` defaults to the second
subnet of the network and `SubnetMax` to the last one.

`Config.add_network` adds extra IPv4 or IPv6 networks (duplicates are ignored), and
`get_flannel_network` / `get_flannel_ipv6_network` return the network that contains
a given subnet.

## Subnet keys and the subnet file

```python
from subnetlease.subnet import parse_subnet_key, make_subnet_key

sn, sn6 = parse_subnet_key("10.12.13.0-24&fd00:12:13::-56")
assert make_subnet_key(sn, sn6) == "10.12.13.0-24&fd00:12:13::-56"
```

`parse_subnet_key` returns `(None, None)` for a key that is not a valid subnet key.

`write_subnet_file(path, config, ip_masq, sn, ipv6sn, mtu)` writes an environment
file through a hidden temporary file that is then renamed into place, creating the
directory if needed. It contains `FLANNEL_NETWORK` and `FLANNEL_SUBNET` (when IPv4 is
enabled), `FLANNEL_IPV6_NETWORK` and `FLANNEL_IPV6_SUBNET` (when IPv6 is enabled),
`FLANNEL_MTU` and `FLANNEL_IPMASQ` (`true`/`false`). The subnet entries carry the
first usable address of the leased subnet, e.g. `FLANNEL_SUBNET=10.3.7.1/24`.

## Leasing a subnet

```python
import asyncio
from ipaddress import IPv4Address

from subnetlease.etcd_manager import LocalManager
from subnetlease.etcd_registry import InMemoryRegistry
from subnetlease.subnet import LeaseAttrs


async def main():
    registry = InMemoryRegistry()
    registry.set_network_config('{ "Network": "10.3.0.0/16" }')

    manager = LocalManager(registry)
    lease = await manager.acquire_lease(LeaseAttrs(public_ip=IPv4Address("192.0.2.10")))
    print(lease.subnet, lease.expiration)


asyncio.run(main())
```

`acquire_lease` works as follows:

1. If a lease already exists for the same public IP and still fits the
   configuration, it is renewed and returned. A lease that no longer fits is deleted.
2. Otherwise, a `LocalManager` created with a `previous_subnet` takes that subnet back
   when it is free and fits the configuration.
3. Otherwise a free subnet is picked at random from the first 100 free subnets
   between `subnet_min` and `subnet_max` (and likewise for IPv6).
   `OutOfSubnetsError` is raised when none is free.

If another host takes the chosen subnet first, the attempt is retried; after ten
attempts `NoMoreTriesError` is raised. Leases are created with a 24-hour TTL. Pass
`rng=random.Random(seed)` to `LocalManager` for a reproducible choice.

`renew_lease` extends a lease by the TTL and updates its `expiration`.
`complete_lease` watches the lease and renews it `subnet_lease_renew_margin` minutes
(default 60) before it expires, retrying a failed renewal after one minute. It ends
by raising `LeaseRevokedError` when the lease is removed from the registry, or
`LeaseMonitorStopped` when the watch ends.

`get_network_config` raises `ConfigNotFoundError` when the registry holds no
configuration.

### The in-memory registry

`InMemoryRegistry(config=None, *, clock=datetime.now, history_limit=1000)` stores keys
under the prefix of an `EtcdConfig` (default `/coreos.com/network`): the configuration
at `<prefix>/config` and leases at `<prefix>/subnets/<subnet key>`. Every write
increases a revision; a TTL of zero or less means the lease never expires, and expired
leases are removed (and reported as removals) when the registry is next used.
`create_subnet` raises `SubnetExistsError` for a key that is already taken,
`get_subnet` raises `KeyNotFoundError` for a missing one. Watches started from a
revision older than the kept history receive a full snapshot instead of incremental
events. `kv_to_lease` builds a `Lease` from a stored key and value.

## Watching leases

```python
from subnetlease.watch import watch_leases

async for batch in watch_leases(manager, own_lease=lease):
    for event in batch:
        print(event.type, event.lease.subnet)
```

`watch_leases` yields batches of `Event`s (`EventType.ADDED` / `EventType.REMOVED`)
for other hosts' leases and leaves out your own. When the manager reports a full
snapshot rather than incremental events, `LeaseWatcher.reset` compares it with what
has been seen before and produces the matching additions and removals;
`LeaseWatcher.update` applies incremental events. `watch_lease(manager, sn, sn6)`
yields the events of a single lease. Both end quietly (with an error logged) when the
underlying watch fails.

`Event.to_dict` / `Event.from_dict` and `LeaseAttrs.to_json` /
`LeaseAttrs.from_json` convert events and lease attributes to and from JSON form.

## Kubernetes

```python
from subnetlease.kube_annotations import new_annotations

annotations = new_annotations("flannel.alpha.coreos.com")
print(annotations.backend_type)  # flannel.alpha.coreos.com/backend-type
```

The prefix must be a lower-case domain name, optionally followed by a single `/` and
a name; anything else raises `ValueError`.

`subnetlease.kube_lease` works on `Node` objects (name, annotations, `pod_cidr`,
`pod_cidrs`):

- `node_to_lease` builds the lease a node advertises through its annotations and
  pod CIDRs;
- `lease_changed` tells whether a node update changed anything lease-related;
- `apply_lease_annotations` returns a copy of a node carrying the annotations that
  publish given `LeaseAttrs`, honouring the public-IP overwrite annotations;
- `split_pod_cidrs` returns a node's IPv4 and IPv6 pod CIDRs, raising
  `PodCidrError` for malformed CIDRs or more than two of them;
- `contains_cidr` tells whether one network contains another.

`KubeSubnetManager` (`subnetlease.kube_manager`) is built directly or with
`create_subnet_manager(client, net_conf_path, prefix, ...)`, which finds the node
name from `NODE_NAME` (or from the pod named by `POD_NAME` and `POD_NAMESPACE`),
reads the network configuration from a file, optionally adds the networks of all
ClusterCIDR resources, and reads the event queue depth from `EVENT_QUEUE_DEPTH`
(default 5000). Environment variables come from `environ`, or `os.environ` when it is
not given.

- `acquire_lease` annotates this node with the lease attributes (patching only the
  annotations that changed) and returns a 24-hour lease for the node's pod CIDRs,
  checked against the configured networks.
- `watch_leases` yields the events queued by `handle_add_lease_event` and
  `handle_update_lease_event`.
- `handle_add_cluster_cidr` adds a ClusterCIDR's networks to the configuration and
  rewrites the subnet file last written by `handle_subnet_file`.
- `complete_lease` patches the node status with a `NetworkUnavailable=False`
  condition when `set_node_network_unavailable` is set.
- `renew_lease` and `watch_lease` raise `NotImplementedError`.

A `KubeClient` subclass must implement `get_node`, `patch_node_annotations`,
`patch_node_status`, `list_cluster_cidrs` and `_get_pod_node_name`.

## What this package does not do

- It has no command-line program or long-running daemon; you drive the managers
  from your own code.
- It does not connect to an etcd cluster. `Registry` defines the storage interface,
  and `InMemoryRegistry` is the only implementation; it keeps everything in the
  memory of one process. The connection settings in `EtcdConfig` other than
  `prefix` are not used by it.
- It contains no Kubernetes API client and does not watch nodes or ClusterCIDR
  resources by itself. You supply a `KubeClient` and call the
  `KubeSubnetManager.handle_*` methods when nodes or ClusterCIDRs change.
- It does not configure network interfaces, routes or tunnels; it only manages
  leases and writes the subnet file.