from datetime import datetime, timezone
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network

import pytest

from subnetlease.config import Config, parse_config
from subnetlease.subnet import (
    Event,
    EventType,
    Lease,
    LeaseAttrs,
    LeaseTakenError,
    LeaseWatchResult,
    Manager,
    NoMoreTriesError,
    make_subnet_key,
    parse_subnet_key,
    write_subnet_file,
)


def test_subnet_node_v4():
    key = "10.12.13.0-24"
    sn, sn6 = parse_subnet_key(key)
    assert str(sn) == "10.12.13.0/24"
    assert sn6 is None
    assert make_subnet_key(sn, None) == key


def test_subnet_node_v6():
    key = "10.12.13.0-24&fd00:12:13::-56"
    sn, sn6 = parse_subnet_key(key)
    assert str(sn) == "10.12.13.0/24"
    assert str(sn6) == "fd00:12:13::/56"
    assert make_subnet_key(sn, sn6) == key


@pytest.mark.parametrize(
    "key",
    [
        "10",
        "10.12.13.0",
        "10.12.13-24",
        "10.12.13.300-24",
        "10.12.13.0-24hi",
        "&2001::-56",
        "10.12.13.0-24&:12:13:-56",
        "10.12.13.0-24&20011::-56",
        "10.12.13.0-24&2001-56",
        "10.12.13.0-24&2001::",
        "10.12.13.0-24&2001::-56hi",
        "10.12.13.0-32",
        "10.12.13.0-24&2001::-128",
    ],
)
def test_subnet_node_invalid(key):
    assert parse_subnet_key(key) == (None, None)


def test_parse_key_with_prefix_path():
    sn, sn6 = parse_subnet_key("/coreos.com/network/subnets/10.1.5.0-24")
    assert sn == IPv4Network("10.1.5.0/24")
    assert sn6 is None


def test_lease_key():
    lease = Lease(subnet=IPv4Network("10.1.5.0/24"), ipv6_subnet=IPv6Network("fc00:0:0:5::/64"))
    assert lease.key() == "10.1.5.0-24&fc00:0:0:5::-64"


def test_lease_attrs_json():
    attrs = LeaseAttrs(public_ip=IPv4Address("1.2.3.4"))
    assert attrs.to_json() == '{"PublicIP":"1.2.3.4","PublicIPv6":null}'


def test_lease_attrs_round_trip():
    attrs = LeaseAttrs(
        public_ip=IPv4Address("1.2.3.4"),
        public_ipv6=IPv6Address("fc00::1"),
        backend_type="vxlan",
        backend_data={"Dummy": "test string"},
    )
    assert LeaseAttrs.from_json(attrs.to_json()) == attrs


def test_lease_attrs_from_json_case_insensitive():
    attrs = LeaseAttrs.from_json('{"publicip": "5.6.7.8", "backendtype": "host-gw"}')
    assert attrs.public_ip == IPv4Address("5.6.7.8")
    assert attrs.backend_type == "host-gw"
    assert attrs.public_ipv6 is None


def test_lease_attrs_bad_ip():
    with pytest.raises(ValueError):
        LeaseAttrs.from_json('{"PublicIP": "1.2.3"}')


def test_event_round_trip():
    lease = Lease(
        enable_ipv4=True,
        subnet=IPv4Network("10.3.4.0/24"),
        attrs=LeaseAttrs(public_ip=IPv4Address("1.1.1.1")),
        expiration=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        asof=12,
    )
    event = Event(EventType.REMOVED, lease)
    data = event.to_dict()
    assert data["type"] == "removed"
    assert Event.from_dict(data) == event


def test_event_bad_type():
    with pytest.raises(ValueError, match="bad event type"):
        Event.from_dict({"type": "changed", "lease": {}})


def test_watch_result_defaults():
    result = LeaseWatchResult(cursor=5)
    assert result.events == []
    assert result.snapshot == []
    assert result.cursor == 5


def test_errors_messages():
    assert str(LeaseTakenError()) == "subnet: lease already taken"
    assert str(NoMoreTriesError()) == "subnet: no more tries"


def test_write_subnet_file_ipv4(tmp_path):
    path = tmp_path / "run" / "subnet.env"
    config = parse_config('{ "Network": "10.3.0.0/16" }')
    write_subnet_file(path, config, True, IPv4Network("10.3.5.0/24"), None, 1450)
    assert path.read_text() == (
        "FLANNEL_NETWORK=10.3.0.0/16\n"
        "FLANNEL_SUBNET=10.3.5.1/24\n"
        "FLANNEL_MTU=1450\n"
        "FLANNEL_IPMASQ=true\n"
    )
    assert not (path.parent / ".subnet.env").exists()


def test_write_subnet_file_networks_and_ipv6(tmp_path):
    path = tmp_path / "subnet.env"
    config = Config(enable_ipv6=True, ipv6_network=IPv6Network("fc00::/48"))
    config.add_network(IPv4Network("10.1.0.0/16"))
    config.add_network(IPv4Network("10.2.0.0/16"))
    write_subnet_file(
        path, config, False, IPv4Network("10.1.7.0/24"), IPv6Network("fc00:0:0:7::/64"), 1500
    )
    assert path.read_text().splitlines() == [
        "FLANNEL_NETWORK=10.1.0.0/16,10.2.0.0/16",
        "FLANNEL_SUBNET=10.1.7.1/24",
        "FLANNEL_IPV6_NETWORK=fc00::/48",
        "FLANNEL_IPV6_SUBNET=fc00:0:0:7::1/64",
        "FLANNEL_MTU=1500",
        "FLANNEL_IPMASQ=false",
    ]


def test_manager_is_abstract():
    with pytest.raises(TypeError):
        Manager()


class _FileOnlyManager(Manager):
    async def get_network_config(self):
        return Config()

    async def acquire_lease(self, attrs):
        return Lease(attrs=attrs)

    async def renew_lease(self, lease):
        return None

    async def watch_lease(self, sn, sn6):
        yield []

    async def watch_leases(self):
        yield []

    async def complete_lease(self, lease):
        return None

    def name(self):
        return "file-only"


def test_manager_handle_subnet_file(tmp_path):
    path = tmp_path / "subnet.env"
    config = parse_config('{ "Network": "10.3.0.0/16" }')
    _FileOnlyManager().handle_subnet_file(path, config, False, IPv4Network("10.3.9.0/24"), None, 1400)
    lines = path.read_text().splitlines()
    assert "FLANNEL_SUBNET=10.3.9.1/24" in lines
    assert "FLANNEL_MTU=1400" in lines
    assert lines[-1] == "FLANNEL_IPMASQ=false"