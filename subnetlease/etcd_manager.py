"""Subnet manager that allocates and renews leases held in a lease registry."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import random
from dataclasses import replace
from datetime import datetime, timedelta
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network
from typing import Any, AsyncIterator, Iterable

from .config import Config, check_network_config, parse_config
from .etcd_registry import Registry, SubnetExistsError, WatchCursor
from .subnet import (
    EventType,
    Lease,
    LeaseAttrs,
    LeaseWatchResult,
    Manager,
    NoMoreTriesError,
    write_subnet_file,
)
from .watch import watch_lease as _watch_lease_events

log = logging.getLogger(__name__)

RACE_RETRIES = 10
SUBNET_TTL = timedelta(hours=24)
MAX_CANDIDATES = 100
RENEW_RETRY_DELAY = 60.0


class LeaseRevokedError(Exception):
    """The lease being monitored was removed from the registry."""

    def __init__(self, message: str = "interrupted") -> None:
        super().__init__(message)


class LeaseMonitorStopped(Exception):
    """The lease watch ended, so the lease can no longer be monitored."""

    def __init__(self, message: str = "canceled") -> None:
        super().__init__(message)


class OutOfSubnetsError(Exception):
    """No free subnet is left in the configured range."""

    def __init__(self, message: str = "out of subnets") -> None:
        super().__init__(message)


def _is_empty(net: IPv4Network | IPv6Network | None) -> bool:
    return net is None or (int(net.network_address) == 0 and net.prefixlen == 0)


def find_lease_by_ip(leases: Iterable[Lease], pub_ip: IPv4Address) -> Lease | None:
    """Return the first lease published by ``pub_ip``, if any."""
    return next((lease for lease in leases if lease.attrs.public_ip == pub_ip), None)


def find_lease_by_subnet(leases: Iterable[Lease], subnet: IPv4Network) -> Lease | None:
    """Return the first lease holding ``subnet``, if any."""
    return next((lease for lease in leases if lease.subnet == subnet), None)


def is_subnet_config_compat(config: Config, sn: IPv4Network | None) -> bool:
    """Whether ``sn`` lies in the configured range and has the configured length."""
    if sn is None or config.subnet_min is None or config.subnet_max is None:
        return False
    addr = sn.network_address
    if addr < config.subnet_min or addr > config.subnet_max:
        return False
    return sn.prefixlen == config.subnet_len


def is_ipv6_subnet_config_compat(config: Config, sn6: IPv6Network | None) -> bool:
    """Whether ``sn6`` agrees with the IPv6 part of the configuration."""
    if not config.enable_ipv6:
        return _is_empty(sn6)
    if _is_empty(sn6) or config.ipv6_subnet_min is None or config.ipv6_subnet_max is None:
        return False
    addr = sn6.network_address
    if addr < config.ipv6_subnet_min or addr > config.ipv6_subnet_max:
        return False
    return sn6.prefixlen == config.ipv6_subnet_len


def get_next_index(cursor: Any) -> int:
    """Return the revision that follows the one ``cursor`` stands for."""
    if isinstance(cursor, WatchCursor):
        index = cursor.index
    elif isinstance(cursor, str):
        try:
            index = int(cursor, 10)
        except ValueError as exc:
            raise ValueError(f"failed to parse cursor: {exc}") from exc
    else:
        raise TypeError("internal error: watch cursor is of unknown type")
    return index + 1


def _free_subnets(
    first: int,
    last: int,
    prefixlen: int,
    bits: int,
    network_type: type,
    taken: list,
) -> list:
    size = 1 << (bits - prefixlen)
    limit = 1 << bits
    found = []
    current = first
    while current <= last and current < limit and len(found) < MAX_CANDIDATES:
        candidate = network_type((current, prefixlen), strict=False)
        if not any(candidate.overlaps(other) for other in taken):
            found.append(candidate)
        current += size
    return found


class LocalManager(Manager):
    """Allocates subnets by writing leases into a shared registry."""

    def __init__(
        self,
        registry: Registry,
        previous_subnet: IPv4Network | None = None,
        previous_ipv6_subnet: IPv6Network | None = None,
        subnet_lease_renew_margin: int = 60,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._previous_subnet = previous_subnet
        self._previous_ipv6_subnet = previous_ipv6_subnet
        self._renew_margin = timedelta(minutes=subnet_lease_renew_margin)
        self._rng = rng if rng is not None else random.Random()

    async def get_network_config(self) -> Config:
        raw = await self._registry.get_network_config()
        config = parse_config(raw)
        check_network_config(config)
        return config

    async def acquire_lease(self, attrs: LeaseAttrs) -> Lease:
        config = await self.get_network_config()
        for _ in range(RACE_RETRIES):
            try:
                return await self._try_acquire_lease(config, attrs)
            except SubnetExistsError:
                continue
        raise NoMoreTriesError("Max retries reached trying to acquire a subnet")

    async def _try_acquire_lease(self, config: Config, attrs: LeaseAttrs) -> Lease:
        leases, _ = await self._registry.get_subnets()
        ext_addr = attrs.public_ip

        found = find_lease_by_ip(leases, ext_addr)
        if found is not None:
            if is_subnet_config_compat(config, found.subnet) and is_ipv6_subnet_config_compat(
                config, found.ipv6_subnet
            ):
                log.info(
                    "Found lease (ip: %s ipv6: %s) for current IP (%s), reusing",
                    found.subnet,
                    found.ipv6_subnet,
                    ext_addr,
                )
                # A lease without expiration is a reservation and stays one.
                ttl = timedelta(0) if found.expiration is None else SUBNET_TTL
                expiration = await self._registry.update_subnet(
                    found.subnet, found.ipv6_subnet, attrs, ttl, 0
                )
                return replace(found, attrs=attrs, expiration=expiration)
            log.info(
                "Found lease (%r) for current IP (%s) but not compatible with current config, "
                "deleting",
                found,
                ext_addr,
            )
            await self._registry.delete_subnet(found.subnet, found.ipv6_subnet)

        sn: IPv4Network | None = None
        sn6: IPv6Network | None = None
        previous = self._previous_subnet
        if not _is_empty(previous) and find_lease_by_subnet(leases, previous) is None:
            if is_subnet_config_compat(config, previous) and is_ipv6_subnet_config_compat(
                config, self._previous_ipv6_subnet
            ):
                log.info("Found previously leased subnet (%s), reusing", previous)
                sn = previous
                sn6 = self._previous_ipv6_subnet
            else:
                log.error(
                    "Found previously leased subnet (%s) that is not compatible with the "
                    "Etcd network config, ignoring",
                    previous,
                )

        if sn is None:
            sn, sn6 = self._allocate_subnet(config, leases)

        expiration = await self._registry.create_subnet(sn, sn6, attrs, SUBNET_TTL)
        log.info("Allocated lease (ip: %s ipv6: %s) to current node (%s)", sn, sn6, ext_addr)
        return Lease(
            enable_ipv4=True,
            subnet=sn,
            enable_ipv6=not _is_empty(sn6),
            ipv6_subnet=sn6,
            attrs=attrs,
            expiration=expiration,
        )

    def _allocate_subnet(
        self, config: Config, leases: list[Lease]
    ) -> tuple[IPv4Network, IPv6Network | None]:
        log.info("Picking subnet in range %s ... %s", config.subnet_min, config.subnet_max)
        free4 = _free_subnets(
            int(config.subnet_min),
            int(config.subnet_max),
            config.subnet_len,
            32,
            IPv4Network,
            [lease.subnet for lease in leases if lease.subnet is not None],
        )

        free6: list[IPv6Network] = []
        if config.enable_ipv6:
            log.info(
                "Picking ipv6 subnet in range %s ... %s",
                config.ipv6_subnet_min,
                config.ipv6_subnet_max,
            )
            free6 = _free_subnets(
                int(config.ipv6_subnet_min),
                int(config.ipv6_subnet_max),
                config.ipv6_subnet_len,
                128,
                IPv6Network,
                [lease.ipv6_subnet for lease in leases if not _is_empty(lease.ipv6_subnet)],
            )

        if not free4 or (config.enable_ipv6 and not free6):
            raise OutOfSubnetsError()

        chosen4 = self._rng.choice(free4)
        if not config.enable_ipv6:
            return chosen4, None
        return chosen4, self._rng.choice(free6)

    async def renew_lease(self, lease: Lease) -> None:
        lease.expiration = await self._registry.update_subnet(
            lease.subnet, lease.ipv6_subnet, lease.attrs, SUBNET_TTL, 0
        )

    async def watch_lease(
        self, sn: IPv4Network, sn6: IPv6Network | None
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        lease, index = await self._registry.get_subnet(sn, sn6)
        reset = LeaseWatchResult(snapshot=[lease], cursor=WatchCursor(index))
        log.info("manager.WatchLease: sending reset results...")
        yield [reset]

        next_index = get_next_index(reset.cursor)
        async for batch in self._registry.watch_subnet(next_index, sn, sn6):
            yield batch

    async def watch_leases(self) -> AsyncIterator[list[LeaseWatchResult]]:
        reset = await self._registry.leases_watch_reset()
        yield [reset]

        next_index = get_next_index(reset.cursor)
        async for batch in self._registry.watch_subnets(next_index):
            yield batch

    def _renew_delay(self, lease: Lease) -> float | None:
        if lease.expiration is None:
            return None
        remaining = lease.expiration - datetime.now() - self._renew_margin
        return max(0.0, remaining.total_seconds())

    async def complete_lease(self, lease: Lease) -> None:
        """Renew ``lease`` ahead of expiry until it is revoked or its watch ends."""
        events = _watch_lease_events(self, lease.subnet, lease.ipv6_subnet)
        delay = self._renew_delay(lease)
        pending: asyncio.Future | None = None
        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(events.__anext__())
                done, _ = await asyncio.wait({pending}, timeout=delay)
                if not done:
                    try:
                        await self.renew_lease(lease)
                    except Exception as exc:
                        log.error("Error renewing lease (trying again in 1 min): %s", exc)
                        delay = RENEW_RETRY_DELAY
                        continue
                    log.info("Lease renewed, new expiration: %s", lease.expiration)
                    delay = self._renew_delay(lease)
                    continue

                finished, pending = pending, None
                try:
                    event = finished.result()
                except StopAsyncIteration:
                    log.info("Stopped monitoring lease")
                    raise LeaseMonitorStopped() from None

                if event.type is EventType.ADDED:
                    lease.expiration = event.lease.expiration
                    delay = self._renew_delay(lease)
                    log.info("Waiting for %s seconds to renew lease", delay)
                elif event.type is EventType.REMOVED:
                    log.error("Lease has been revoked. Shutting down daemon.")
                    raise LeaseRevokedError()
        finally:
            if pending is not None:
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await pending
            await events.aclose()

    def name(self) -> str:
        previous = "None" if _is_empty(self._previous_subnet) else str(self._previous_subnet)
        return f"Etcd Local Manager with Previous Subnet: {previous}"

    def handle_subnet_file(
        self,
        path: str | os.PathLike,
        config: Config,
        ip_masq: bool,
        sn: IPv4Network | None,
        ipv6sn: IPv6Network | None,
        mtu: int,
    ) -> None:
        """Write the subnet file once; it never changes for this manager."""
        write_subnet_file(path, config, ip_masq, sn, ipv6sn, mtu)


__all__ = [
    "LeaseMonitorStopped",
    "LeaseRevokedError",
    "LocalManager",
    "OutOfSubnetsError",
    "find_lease_by_ip",
    "find_lease_by_subnet",
    "get_next_index",
    "is_ipv6_subnet_config_compat",
    "is_subnet_config_compat",
    "IPv6Address",
]