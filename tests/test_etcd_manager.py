import asyncio
import random
from datetime import datetime, timedelta
from ipaddress import IPv4Address, IPv4Network, IPv6Network

import pytest

from subnetlease.config import check_network_config, parse_config
from subnetlease.etcd_manager import (
    LeaseMonitorStopped,
    LeaseRevokedError,
    LocalManager,
    OutOfSubnetsError,
    find_lease_by_ip,
    find_lease_by_subnet,
    get_next_index,
    is_ipv6_subnet_config_compat,
    is_subnet_config_compat,
)
from subnetlease.etcd_registry import ConfigNotFoundError, InMemoryRegistry, WatchCursor
from subnetlease.subnet import EventType, Lease, LeaseAttrs
from subnetlease.watch import watch_lease, watch_leases

CONFIG = '{ "Network": "10.3.0.0/16", "SubnetMin": "10.3.1.0", "SubnetMax": "10.3.25.0" }'
EXISTING = ["10.3.1.0/24", "10.3.2.0/24", "10.3.4.0/24", "10.3.5.0/24", "10.3.31.0/24"]
OWN_IP = IPv4Address("1.2.3.4")


async def dummy_registry(config=CONFIG, **kwargs):
    registry = InMemoryRegistry(**kwargs)
    registry.set_network_config(config)
    attrs = LeaseAttrs(public_ip=IPv4Address("1.1.1.1"))
    for net in EXISTING:
        await registry.create_subnet(IPv4Network(net), None, attrs, 0)
    return registry


def checked_config(text):
    cfg = parse_config(text)
    check_network_config(cfg)
    return cfg


def in_range(cfg, sn):
    return cfg.subnet_min <= sn.network_address <= cfg.subnet_max


async def next_item(gen):
    return await asyncio.wait_for(gen.__anext__(), 5)


@pytest.mark.asyncio
async def test_acquire_lease_allocates_free_subnet():
    registry = await dummy_registry()
    sm = LocalManager(registry, rng=random.Random(7))
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    cfg = await sm.get_network_config()
    assert in_range(cfg, lease.subnet)
    assert lease.subnet.prefixlen == 24
    assert str(lease.subnet) not in EXISTING
    assert lease.enable_ipv4 is True
    assert lease.enable_ipv6 is False
    assert lease.expiration is not None


@pytest.mark.asyncio
async def test_acquire_lease_reuses_subnet_for_same_ip():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    attrs = LeaseAttrs(public_ip=OWN_IP)
    first = await sm.acquire_lease(attrs)
    second = await sm.acquire_lease(attrs)
    assert second.subnet == first.subnet
    leases, _ = await registry.get_subnets()
    assert len(leases) == len(EXISTING) + 1


@pytest.mark.asyncio
async def test_acquire_lease_uses_previous_subnet():
    registry = await dummy_registry()
    previous = IPv4Network("10.3.6.0/24")
    sm = LocalManager(registry, previous_subnet=previous)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    assert lease.subnet == previous


@pytest.mark.asyncio
async def test_acquire_lease_ignores_incompatible_previous_subnet():
    registry = await dummy_registry()
    invalid = IPv4Network("10.4.1.0/24")
    sm = LocalManager(registry, previous_subnet=invalid)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    assert lease.subnet != invalid
    assert in_range(await sm.get_network_config(), lease.subnet)


@pytest.mark.asyncio
async def test_acquire_lease_ignores_previous_subnet_already_taken():
    registry = await dummy_registry()
    taken = IPv4Network("10.3.2.0/24")
    sm = LocalManager(registry, previous_subnet=taken)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    assert lease.subnet != taken
    assert str(lease.subnet) not in EXISTING


@pytest.mark.asyncio
async def test_config_changed_moves_lease_to_new_network():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    attrs = LeaseAttrs(public_ip=OWN_IP)
    old = await sm.acquire_lease(attrs)
    assert in_range(await sm.get_network_config(), old.subnet)

    registry.set_network_config('{ "Network": "10.4.0.0/16" }')
    new = await sm.acquire_lease(attrs)
    cfg = await sm.get_network_config()
    assert in_range(cfg, new.subnet)
    assert new.subnet.subnet_of(IPv4Network("10.4.0.0/16"))
    leases, _ = await registry.get_subnets()
    assert old.subnet not in [lease.subnet for lease in leases]


@pytest.mark.asyncio
async def test_acquire_lease_reuses_reservation_without_expiry():
    registry = await dummy_registry()
    reserved = IPv4Network("10.3.9.0/24")
    await registry.create_subnet(reserved, None, LeaseAttrs(public_ip=OWN_IP), 0)
    sm = LocalManager(registry)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP, backend_type="vxlan"))
    assert lease.subnet == reserved
    assert lease.expiration is None
    assert lease.attrs.backend_type == "vxlan"


@pytest.mark.asyncio
async def test_acquire_lease_out_of_subnets():
    config = '{ "Network": "10.3.0.0/16", "SubnetMin": "10.3.1.0", "SubnetMax": "10.3.2.0" }'
    registry = await dummy_registry(config)
    sm = LocalManager(registry)
    with pytest.raises(OutOfSubnetsError):
        await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))


@pytest.mark.asyncio
async def test_acquire_lease_dual_stack():
    config = '{ "Network": "10.3.0.0/16", "EnableIPv6": true, "IPv6Network": "fc00::/48" }'
    registry = await dummy_registry(config)
    sm = LocalManager(registry)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    assert lease.enable_ipv6 is True
    assert lease.ipv6_subnet.prefixlen == 64
    assert lease.ipv6_subnet.subnet_of(IPv6Network("fc00::/48"))
    assert lease.ipv6_subnet != IPv6Network("fc00::/64")
    assert "&" in lease.key()


@pytest.mark.asyncio
async def test_get_network_config_missing():
    sm = LocalManager(InMemoryRegistry())
    with pytest.raises(ConfigNotFoundError):
        await sm.get_network_config()


@pytest.mark.asyncio
async def test_renew_lease_updates_expiration_and_keeps_attrs():
    start = datetime(2024, 1, 1, 12, 0, 0)
    now = [start]
    registry = InMemoryRegistry(clock=lambda: now[0])
    registry.set_network_config(CONFIG)
    sm = LocalManager(registry)
    attrs = LeaseAttrs(
        public_ip=OWN_IP, backend_type="vxlan", backend_data={"Dummy": "test string"}
    )
    lease = await sm.acquire_lease(attrs)
    assert lease.expiration == start + timedelta(hours=24)

    now[0] = start + timedelta(seconds=10)
    await sm.renew_lease(lease)
    assert lease.expiration == start + timedelta(hours=24, seconds=10)

    stored, _ = await registry.get_subnet(lease.subnet, None)
    assert stored.attrs == attrs


@pytest.mark.asyncio
async def test_watch_leases_skips_own_and_reports_added():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    own = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    gen = watch_leases(sm, own)
    try:
        first = await next_item(gen)
        assert sorted(str(e.lease.subnet) for e in first) == sorted(EXISTING)
        assert all(e.lease.key() != own.key() for e in first)

        expected = IPv4Network("10.3.30.0/24")
        await registry.create_subnet(
            expected, None, LeaseAttrs(public_ip=IPv4Address("1.1.1.1")), 0
        )
        batch = await next_item(gen)
        assert len(batch) == 1
        assert batch[0].type is EventType.ADDED
        assert batch[0].lease.subnet == expected
    finally:
        await gen.aclose()


@pytest.mark.asyncio
async def test_watch_leases_reports_expired_lease_removed():
    registry = InMemoryRegistry()
    registry.set_network_config(CONFIG)
    sm = LocalManager(registry)
    own = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    gen = watch_leases(sm, own)
    try:
        expected = IPv4Network("10.3.31.0/24")
        await registry.create_subnet(
            expected, None, LeaseAttrs(public_ip=IPv4Address("1.1.1.1")), 1
        )
        added = await next_item(gen)
        assert [(e.type, e.lease.subnet) for e in added] == [(EventType.ADDED, expected)]

        removed = await next_item(gen)
        assert [(e.type, e.lease.subnet) for e in removed] == [(EventType.REMOVED, expected)]
    finally:
        await gen.aclose()


@pytest.mark.asyncio
async def test_watch_lease_follows_renewal_and_deletion():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    gen = watch_lease(sm, lease.subnet, lease.ipv6_subnet)
    try:
        event = await next_item(gen)
        assert event.type is EventType.ADDED
        assert event.lease.subnet == lease.subnet

        await sm.renew_lease(lease)
        event = await next_item(gen)
        assert event.type is EventType.ADDED
        assert event.lease.subnet == lease.subnet

        await registry.delete_subnet(lease.subnet, None)
        event = await next_item(gen)
        assert event.type is EventType.REMOVED
        assert event.lease.subnet == lease.subnet
    finally:
        await gen.aclose()


@pytest.mark.asyncio
async def test_complete_lease_raises_when_revoked():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    lease = await sm.acquire_lease(LeaseAttrs(public_ip=OWN_IP))
    task = asyncio.ensure_future(sm.complete_lease(lease))
    await asyncio.sleep(0.05)
    assert not task.done()
    await registry.delete_subnet(lease.subnet, None)
    with pytest.raises(LeaseRevokedError):
        await asyncio.wait_for(task, 5)


@pytest.mark.asyncio
async def test_complete_lease_stops_when_watch_cannot_start():
    registry = await dummy_registry()
    sm = LocalManager(registry)
    missing = Lease(
        enable_ipv4=True,
        subnet=IPv4Network("10.3.20.0/24"),
        attrs=LeaseAttrs(public_ip=OWN_IP),
        expiration=datetime.now() + timedelta(hours=24),
    )
    with pytest.raises(LeaseMonitorStopped):
        await asyncio.wait_for(sm.complete_lease(missing), 5)


def test_get_next_index():
    assert get_next_index(WatchCursor(5)) == 6
    assert get_next_index("7") == 8
    with pytest.raises(ValueError, match="failed to parse cursor"):
        get_next_index("abc")
    with pytest.raises(TypeError):
        get_next_index(3.5)


def test_find_lease_helpers():
    a = Lease(subnet=IPv4Network("10.3.1.0/24"), attrs=LeaseAttrs(public_ip=IPv4Address("1.1.1.1")))
    b = Lease(subnet=IPv4Network("10.3.2.0/24"), attrs=LeaseAttrs(public_ip=OWN_IP))
    assert find_lease_by_ip([a, b], OWN_IP) is b
    assert find_lease_by_ip([a, b], IPv4Address("9.9.9.9")) is None
    assert find_lease_by_subnet([a, b], IPv4Network("10.3.1.0/24")) is a
    assert find_lease_by_subnet([a, b], IPv4Network("10.3.3.0/24")) is None


def test_is_subnet_config_compat():
    cfg = checked_config(CONFIG)
    assert is_subnet_config_compat(cfg, IPv4Network("10.3.1.0/24")) is True
    assert is_subnet_config_compat(cfg, IPv4Network("10.3.25.0/24")) is True
    assert is_subnet_config_compat(cfg, IPv4Network("10.3.26.0/24")) is False
    assert is_subnet_config_compat(cfg, IPv4Network("10.3.2.0/25")) is False
    assert is_subnet_config_compat(cfg, None) is False


def test_is_ipv6_subnet_config_compat():
    v4_only = checked_config(CONFIG)
    assert is_ipv6_subnet_config_compat(v4_only, None) is True
    assert is_ipv6_subnet_config_compat(v4_only, IPv6Network("fc00:0:0:1::/64")) is False

    dual = checked_config('{ "Network": "10.3.0.0/16", "EnableIPv6": true, "IPv6Network": "fc00::/48" }')
    assert is_ipv6_subnet_config_compat(dual, IPv6Network("fc00:0:0:1::/64")) is True
    assert is_ipv6_subnet_config_compat(dual, IPv6Network("fc00::/64")) is False
    assert is_ipv6_subnet_config_compat(dual, IPv6Network("fc00:0:0:1::/80")) is False
    assert is_ipv6_subnet_config_compat(dual, None) is False


def test_name():
    registry = InMemoryRegistry()
    assert LocalManager(registry).name() == "Etcd Local Manager with Previous Subnet: None"
    named = LocalManager(registry, previous_subnet=IPv4Network("10.3.6.0/24"))
    assert named.name() == "Etcd Local Manager with Previous Subnet: 10.3.6.0/24"


def test_handle_subnet_file(tmp_path):
    cfg = checked_config('{ "Network": "10.3.0.0/16" }')
    sm = LocalManager(InMemoryRegistry())
    target = tmp_path / "run" / "subnet.env"
    sm.handle_subnet_file(target, cfg, True, IPv4Network("10.3.6.0/24"), None, 1450)
    assert target.read_text() == (
        "FLANNEL_NETWORK=10.3.0.0/16\n"
        "FLANNEL_SUBNET=10.3.6.1/24\n"
        "FLANNEL_MTU=1450\n"
        "FLANNEL_IPMASQ=true\n"
    )