"""Long-running lease watches that turn registry results into lease events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from ipaddress import IPv4Network, IPv6Network
from typing import AsyncIterator, Iterable

from .subnet import Event, EventType, Lease, Manager

log = logging.getLogger(__name__)


def _is_empty(net: IPv4Network | IPv6Network | None) -> bool:
    return net is None or (int(net.network_address) == 0 and net.prefixlen == 0)


def _same_net(
    a: IPv4Network | IPv6Network | None, b: IPv4Network | IPv6Network | None
) -> bool:
    if _is_empty(a) and _is_empty(b):
        return True
    return a == b


def _same_lease(ref: Lease, other: Lease) -> bool:
    """Whether ``other`` names the same lease as ``ref``, judged by ``ref``'s stack flags."""
    v4, v6 = ref.enable_ipv4, ref.enable_ipv6
    same4 = _same_net(ref.subnet, other.subnet)
    same6 = _same_net(ref.ipv6_subnet, other.ipv6_subnet)
    if v4 and not v6:
        return same4
    if not v4 and v6:
        return same6
    if v4 and v6:
        return same4 and same6
    # Leases without stack flags are matched on the IPv4 subnet alone.
    return same4


def _matches_snapshot_entry(old: Lease, new: Lease) -> bool:
    """Match a remembered lease against a snapshot entry during a reset."""
    v4, v6 = old.enable_ipv4, old.enable_ipv6
    if v4 and not v6 and _same_net(old.subnet, new.subnet):
        return True
    if v4 and not v6 and _same_net(old.ipv6_subnet, new.ipv6_subnet):
        return True
    if (
        v4
        and v6
        and _same_net(old.subnet, new.subnet)
        and _same_net(old.ipv6_subnet, new.ipv6_subnet)
    ):
        return True
    return not v4 and not v6 and _same_net(old.subnet, new.subnet)


@dataclass
class LeaseWatcher:
    """Tracks the known leases of other hosts and emits change events."""

    own_lease: Lease | None = None
    leases: list[Lease] = field(default_factory=list)

    def _is_own(self, lease: Lease) -> bool:
        return self.own_lease is not None and _same_lease(lease, self.own_lease)

    def reset(self, leases: Iterable[Lease]) -> list[Event]:
        """Diff a full snapshot against the known leases and return the changes."""
        snapshot = list(leases)
        batch: list[Event] = []

        for new in snapshot:
            if self._is_own(new):
                continue
            for i, old in enumerate(self.leases):
                if _matches_snapshot_entry(old, new):
                    del self.leases[i]
                    break
            else:
                batch.append(Event(EventType.ADDED, new))

        # Whatever is left was not in the snapshot, so it has gone away.
        batch.extend(
            Event(EventType.REMOVED, old) for old in self.leases if not self._is_own(old)
        )

        self.leases = list(snapshot)
        return batch

    def update(self, events: Iterable[Event]) -> list[Event]:
        """Apply incremental events and return those that concern other hosts."""
        batch: list[Event] = []
        for event in events:
            if self._is_own(event.lease):
                continue
            if event.type is EventType.ADDED:
                batch.append(self._add(event.lease))
            elif event.type is EventType.REMOVED:
                batch.append(self._remove(event.lease))
        return batch

    def _add(self, lease: Lease) -> Event:
        for i, known in enumerate(self.leases):
            if _same_lease(known, lease):
                self.leases[i] = lease
                return Event(EventType.ADDED, lease)
        self.leases.append(lease)
        return Event(EventType.ADDED, lease)

    def _remove(self, lease: Lease) -> Event:
        for i, known in enumerate(self.leases):
            if _same_lease(known, lease):
                del self.leases[i]
                return Event(EventType.REMOVED, known)
        log.error(
            "Removed subnet (%s) and ipv6 subnet (%s) were not found",
            lease.subnet,
            lease.ipv6_subnet,
        )
        return Event(EventType.REMOVED, lease)


async def watch_leases(
    manager: Manager, own_lease: Lease | None
) -> AsyncIterator[list[Event]]:
    """Yield batches of add/remove events for every lease but ``own_lease``."""
    watcher = LeaseWatcher(own_lease=own_lease)
    try:
        async for results in manager.watch_leases():
            for result in results:
                if result.events:
                    batch = watcher.update(result.events)
                else:
                    batch = watcher.reset(result.snapshot)
                for i, event in enumerate(batch):
                    log.info("Batch elem [%d] is { %r }", i, event)
                if batch:
                    yield batch
    except Exception as exc:
        log.error("could not watch leases: %s", exc)


async def watch_lease(
    manager: Manager, sn: IPv4Network, sn6: IPv6Network | None
) -> AsyncIterator[Event]:
    """Yield events for the single lease identified by ``sn`` and ``sn6``."""
    try:
        async for results in manager.watch_lease(sn, sn6):
            for result in results:
                if result.snapshot:
                    yield Event(EventType.ADDED, result.snapshot[0])
                elif result.events:
                    yield result.events[0]
                else:
                    log.debug("WatchLease: empty event received")
    except Exception as exc:
        log.error("Subnet watch failed: %s", exc)
        return
    log.info("lease watch finished")