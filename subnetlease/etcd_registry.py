"""Subnet lease registry: the storage interface and an in-memory implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import posixpath
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from ipaddress import IPv4Network, IPv6Network
from itertools import groupby
from typing import AsyncIterator, Callable

from .subnet import (
    Event,
    EventType,
    Lease,
    LeaseAttrs,
    LeaseWatchResult,
    make_subnet_key,
    parse_subnet_key,
)

log = logging.getLogger(__name__)

DEFAULT_PREFIX = "/coreos.com/network"


class ConfigNotFoundError(LookupError):
    """The network configuration key is missing from the store."""

    def __init__(
        self,
        message: str = (
            "flannel config not found in etcd store. "
            "Did you create your config using etcdv3 API?"
        ),
    ) -> None:
        super().__init__(message)


class SubnetExistsError(Exception):
    """A subnet lease with the same key already exists."""

    def __init__(self, message: str = "subnet already exists") -> None:
        super().__init__(message)


class KeyNotFoundError(LookupError):
    """The requested key does not exist in the store."""


@dataclass
class EtcdConfig:
    """Connection settings and key prefix of the lease store."""

    endpoints: list[str] = field(default_factory=list)
    keyfile: str = ""
    certfile: str = ""
    ca_file: str = ""
    prefix: str = DEFAULT_PREFIX
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class WatchCursor:
    """Store revision a watch result corresponds to."""

    index: int

    def __str__(self) -> str:
        return str(self.index)


def _is_empty(net: IPv4Network | IPv6Network | None) -> bool:
    return net is None or (int(net.network_address) == 0 and net.prefixlen == 0)


def _text(data: str | bytes) -> str:
    return data.decode() if isinstance(data, (bytes, bytearray)) else data


def _decode_lease(
    key: str | bytes,
    value: str | bytes,
    expiration: datetime | None,
    mod_revision: int,
) -> Lease:
    key = _text(key)
    sn, sn6 = parse_subnet_key(key)
    if sn is None:
        raise ValueError(f"failed to parse subnet key {key}")
    attrs = LeaseAttrs.from_json(_text(value))
    return Lease(
        enable_ipv4=True,
        enable_ipv6=not _is_empty(sn6),
        subnet=sn,
        ipv6_subnet=sn6,
        attrs=attrs,
        expiration=expiration,
        asof=mod_revision,
    )


def kv_to_lease(
    key: str | bytes, value: str | bytes, ttl: int | None, mod_revision: int
) -> Lease:
    """Build a lease from a stored key/value pair; ``ttl`` of ``None`` means no expiry."""
    expiration = None if ttl is None else datetime.now() + timedelta(seconds=ttl)
    return _decode_lease(key, value, expiration, mod_revision)


class Registry(ABC):
    """Storage of the network configuration and subnet leases."""

    @abstractmethod
    async def get_network_config(self) -> str:
        """Return the raw network configuration."""

    @abstractmethod
    async def get_subnets(self) -> tuple[list[Lease], int]:
        """Return all leases and the store revision they were read at."""

    @abstractmethod
    async def get_subnet(
        self, sn: IPv4Network, sn6: IPv6Network | None
    ) -> tuple[Lease, int]:
        """Return one lease and the store revision it was read at."""

    @abstractmethod
    async def create_subnet(
        self,
        sn: IPv4Network,
        sn6: IPv6Network | None,
        attrs: LeaseAttrs,
        ttl: timedelta | float,
    ) -> datetime | None:
        """Create a new lease; return its expiration."""

    @abstractmethod
    async def update_subnet(
        self,
        sn: IPv4Network,
        sn6: IPv6Network | None,
        attrs: LeaseAttrs,
        ttl: timedelta | float,
        asof: int,
    ) -> datetime | None:
        """Write a lease unconditionally; return its expiration."""

    @abstractmethod
    async def delete_subnet(self, sn: IPv4Network, sn6: IPv6Network | None) -> None:
        """Remove a lease."""

    @abstractmethod
    def watch_subnets(self, since: int) -> AsyncIterator[list[LeaseWatchResult]]:
        """Yield batches of changes to all leases starting at revision ``since``."""

    @abstractmethod
    def watch_subnet(
        self, since: int, sn: IPv4Network, sn6: IPv6Network | None
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        """Yield batches of changes to one lease starting at revision ``since``."""

    @abstractmethod
    async def leases_watch_reset(self) -> LeaseWatchResult:
        """Return a full snapshot of the leases for resynchronising a watch."""


@dataclass
class _Entry:
    value: str
    expiry: datetime | None
    mod_revision: int


@dataclass(frozen=True)
class _Change:
    revision: int
    key: str
    value: str | None
    expiry: datetime | None


def _ttl_seconds(ttl: timedelta | float) -> int:
    if isinstance(ttl, timedelta):
        return int(ttl.total_seconds())
    return int(ttl)


class InMemoryRegistry(Registry):
    """A revisioned key-value lease store kept in memory, with expiring keys and watches."""

    def __init__(
        self,
        config: EtcdConfig | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        history_limit: int = 1000,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._config = config if config is not None else EtcdConfig()
        self._clock = clock
        self._history_limit = history_limit
        self._store: dict[str, _Entry] = {}
        self._revision = 0
        self._history: deque[_Change] = deque()
        self._compacted = 0
        self._wakeup: asyncio.Event | None = None

    # -- storage primitives -------------------------------------------------

    def _key(self, *parts: str) -> str:
        return posixpath.normpath(posixpath.join(self._config.prefix, *parts))

    def _subnet_key(self, sn: IPv4Network, sn6: IPv6Network | None) -> str:
        return self._key("subnets", make_subnet_key(sn, sn6))

    def _record(self, change: _Change) -> None:
        self._history.append(change)
        while len(self._history) > self._history_limit:
            self._compacted = self._history.popleft().revision
        self._wake()

    def _put(self, key: str, value: str, expiry: datetime | None) -> None:
        self._revision += 1
        self._store[key] = _Entry(value, expiry, self._revision)
        self._record(_Change(self._revision, key, value, expiry))

    def _delete(self, key: str) -> None:
        if key not in self._store:
            return
        self._revision += 1
        del self._store[key]
        self._record(_Change(self._revision, key, None, None))

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = sorted(
            key
            for key, entry in self._store.items()
            if entry.expiry is not None and entry.expiry <= now
        )
        for key in expired:
            self._delete(key)

    def _expiry(self, ttl: timedelta | float) -> datetime | None:
        seconds = _ttl_seconds(ttl)
        if seconds <= 0:
            return None
        return self._clock() + timedelta(seconds=seconds)

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()
            self._wakeup = None

    async def _wait_for_change(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        wakeup = self._wakeup
        expiries = [e.expiry for e in self._store.values() if e.expiry is not None]
        timeout = None
        if expiries:
            timeout = max(0.0, (min(expiries) - self._clock()).total_seconds())
        try:
            await asyncio.wait_for(wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    # -- registry interface -------------------------------------------------

    def set_network_config(self, config: str) -> None:
        """Store the raw network configuration."""
        self._put(self._key("config"), config, None)

    async def get_network_config(self) -> str:
        entry = self._store.get(self._key("config"))
        if entry is None:
            raise ConfigNotFoundError()
        return entry.value

    async def get_subnets(self) -> tuple[list[Lease], int]:
        self._purge_expired()
        prefix = self._key("subnets")
        leases = []
        for key in sorted(self._store):
            if not key.startswith(prefix):
                continue
            entry = self._store[key]
            try:
                leases.append(_decode_lease(key, entry.value, entry.expiry, entry.mod_revision))
            except ValueError as exc:
                log.warning("Ignoring bad subnet node: %s", exc)
        return leases, self._revision

    async def get_subnet(
        self, sn: IPv4Network, sn6: IPv6Network | None
    ) -> tuple[Lease, int]:
        self._purge_expired()
        key = self._subnet_key(sn, sn6)
        entry = self._store.get(key)
        if entry is None:
            raise KeyNotFoundError(f"key not found: {key}")
        lease = _decode_lease(key, entry.value, entry.expiry, entry.mod_revision)
        return lease, self._revision

    async def create_subnet(
        self,
        sn: IPv4Network,
        sn6: IPv6Network | None,
        attrs: LeaseAttrs,
        ttl: timedelta | float,
    ) -> datetime | None:
        key = self._subnet_key(sn, sn6)
        value = attrs.to_json()
        self._purge_expired()
        if key in self._store:
            raise SubnetExistsError()
        expiry = self._expiry(ttl)
        self._put(key, value, expiry)
        return expiry

    async def update_subnet(
        self,
        sn: IPv4Network,
        sn6: IPv6Network | None,
        attrs: LeaseAttrs,
        ttl: timedelta | float,
        asof: int,
    ) -> datetime | None:
        key = self._subnet_key(sn, sn6)
        value = attrs.to_json()
        self._purge_expired()
        expiry = self._expiry(ttl)
        self._put(key, value, expiry)
        return expiry

    async def delete_subnet(self, sn: IPv4Network, sn6: IPv6Network | None) -> None:
        self._purge_expired()
        self._delete(self._subnet_key(sn, sn6))

    async def leases_watch_reset(self) -> LeaseWatchResult:
        try:
            leases, index = await self.get_subnets()
        except Exception as exc:
            raise RuntimeError(f"failed to retrieve subnet leases: {exc}") from exc
        return LeaseWatchResult(snapshot=leases, cursor=WatchCursor(index))

    def _change_to_event(self, change: _Change) -> Event:
        sn, sn6 = parse_subnet_key(change.key)
        if sn is None:
            kind = "DELETE" if change.value is None else "PUT"
            raise ValueError(f"{kind} {change.key!r}: not a subnet, skipping")
        if change.value is None:
            return Event(
                EventType.REMOVED,
                Lease(
                    enable_ipv4=True,
                    subnet=sn,
                    enable_ipv6=not _is_empty(sn6),
                    ipv6_subnet=sn6,
                ),
            )
        attrs = LeaseAttrs.from_json(change.value)
        return Event(
            EventType.ADDED,
            Lease(
                enable_ipv4=True,
                subnet=sn,
                enable_ipv6=not _is_empty(sn6),
                ipv6_subnet=sn6,
                attrs=attrs,
                expiration=change.expiry,
            ),
        )

    async def _watch(
        self,
        prefix: str,
        since: int,
        convert: Callable[[_Change], LeaseWatchResult | None],
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        next_rev = since if since > 0 else self._revision + 1
        while True:
            self._purge_expired()
            if next_rev <= self._compacted:
                log.warning(
                    "Watch of subnet leases failed because etcd index outside history window"
                )
                try:
                    reset = await self.leases_watch_reset()
                except Exception as exc:
                    log.error("error resetting etcd watch: %s", exc)
                    reset = LeaseWatchResult()
                yield [reset]
                next_rev = self._revision + 1
                continue

            pending = [c for c in self._history if c.revision >= next_rev]
            if not pending:
                await self._wait_for_change()
                continue

            next_rev = pending[-1].revision + 1
            for _, group in groupby(pending, key=lambda c: c.revision):
                results = [
                    result
                    for change in group
                    if change.key.startswith(prefix)
                    for result in (convert(change),)
                    if result is not None
                ]
                if results:
                    yield results

    async def watch_subnets(self, since: int) -> AsyncIterator[list[LeaseWatchResult]]:
        log.info("registry: watching subnets starting from rev %d", since)

        def convert(change: _Change) -> LeaseWatchResult:
            try:
                event = self._change_to_event(change)
            except ValueError as exc:
                log.warning("Watch of subnet leases failed because header revision != 0")
                log.error("error parsing etcd event: %s", exc)
                return LeaseWatchResult(cursor=WatchCursor(change.revision))
            event.lease.enable_ipv4 = True
            return LeaseWatchResult(events=[event], cursor=WatchCursor(change.revision))

        async for batch in self._watch(self._key("subnets"), since, convert):
            yield batch

    async def watch_subnet(
        self, since: int, sn: IPv4Network, sn6: IPv6Network | None
    ) -> AsyncIterator[list[LeaseWatchResult]]:
        def convert(change: _Change) -> LeaseWatchResult | None:
            try:
                event = self._change_to_event(change)
            except ValueError as exc:
                log.error("couldn't read etcd event: %s", exc)
                return None
            return LeaseWatchResult(events=[event], cursor=WatchCursor(change.revision))

        async for batch in self._watch(self._subnet_key(sn, sn6), since, convert):
            yield batch


__all__ = [
    "ConfigNotFoundError",
    "EtcdConfig",
    "InMemoryRegistry",
    "KeyNotFoundError",
    "Registry",
    "SubnetExistsError",
    "WatchCursor",
    "kv_to_lease",
    "json",
]