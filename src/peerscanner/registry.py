"""Host registry and startup reconciliation against the DNS zone."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from peerscanner.cloudflare import DNSProvider, DNSProviderError, Record
from peerscanner.hosts import (
    GROUP_LABELS,
    HealthProbe,
    Host,
    HostKey,
    LifecycleSettings,
    RecordKind,
    classify,
)

logger = logging.getLogger(__name__)

MAX_CLEANUP_WORKERS = 16

# =============================================================================
# Host Registry
# =============================================================================


class HostRegistry:
    """Every host we track, keyed by (name, ip).

    The map is the only state shared between request handlers and lifecycle
    tasks. The lock is held for the map operation alone, never across a
    provider call.
    """

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        probe: HealthProbe,
        settings: Optional[LifecycleSettings] = None,
    ):
        self.dns_provider = dns_provider
        self.probe = probe
        self.settings = settings or LifecycleSettings()
        self._hosts: Dict[HostKey, Host] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hosts)

    def new_host(self, key: HostKey, record: Optional[Record] = None) -> Host:
        """Build a host wired to this registry without tracking or starting it."""
        return Host(
            key,
            registry=self,
            dns_provider=self.dns_provider,
            probe=self.probe,
            settings=self.settings,
            record=record,
        )

    def get_or_create(self, name: str, ip: str) -> Host:
        key = HostKey(name, ip)
        with self._lock:
            host = self._hosts.get(key)
            if host is None:
                host = self.new_host(key)
                self._hosts[key] = host
                logger.info(f"Registered new host {key}")
                host.run()
                return host
            host.reset()
            return host

    def get(self, name: str, ip: str) -> Optional[Host]:
        with self._lock:
            return self._hosts.get(HostKey(name, ip))

    def remove(self, host: Host, generation: Optional[int] = None) -> bool:
        """Stop tracking ``host``.

        With ``generation`` the removal only happens if the host has not been
        reset since, so a superseded lifecycle task cannot evict a re-armed
        host. Returns whether anything was removed.
        """
        with self._lock:
            if generation is not None and host.generation != generation:
                return False
            if self._hosts.get(host.key) is not host:
                return False
            del self._hosts[host.key]
        logger.debug(f"Stopped tracking {host.key}")
        return True

    def adopt(self, hosts: Iterable[Host]) -> None:
        """Track pre-built hosts without starting their lifecycle."""
        with self._lock:
            for host in hosts:
                self._hosts[host.key] = host

    def hosts(self) -> List[Host]:
        with self._lock:
            return list(self._hosts.values())

    def shutdown(self) -> None:
        """Stop every lifecycle task, leaving DNS untouched."""
        for host in self.hosts():
            host.cancel()


# =============================================================================
# Group Tracker
# =============================================================================


class GroupTracker:
    """Rotation group records seen in the zone that no host has claimed yet."""

    def __init__(self, labels: Iterable[str] = GROUP_LABELS):
        self._groups: Dict[str, Dict[str, Record]] = {label: {} for label in labels}

    def add(self, record: Record) -> None:
        logger.debug(f"Adding to {record.name}: {record.value}")
        self._groups[record.name][record.value] = record

    def claim(self, label: str, ip: str) -> Optional[Record]:
        group = self._groups.get(label)
        if group is None:
            return None
        return group.pop(ip, None)

    def orphans(self) -> Iterator[Tuple[str, Record]]:
        for label, group in self._groups.items():
            for record in group.values():
                yield label, record

    def __len__(self) -> int:
        return sum(len(g) for g in self._groups.values())


# =============================================================================
# Reconciliation
# =============================================================================


@dataclass
class LoadResult:
    hosts: List[Host] = field(default_factory=list)
    deleted: List[Record] = field(default_factory=list)
    failed: List[Record] = field(default_factory=list)
    unrecognized: int = 0


def load_hosts(registry: HostRegistry, dns_provider: Optional[DNSProvider] = None) -> LoadResult:
    """Rebuild the registry from the zone and prune orphaned rotation entries.

    Runs once at startup, before any registration is accepted. A failure to
    list the zone propagates: we must not serve with unknown DNS state.
    Matching finishes before any orphan is deleted, and every deletion is
    waited on before any host starts, so a host's own rotation record is
    never mistaken for an orphan.
    """
    dns_provider = dns_provider or registry.dns_provider
    records = dns_provider.list_all_records()

    result = LoadResult()
    groups = GroupTracker()
    hosts: Dict[HostKey, Host] = {}

    for r in records:
        kind = classify(r.name)
        if kind in (RecordKind.PEER, RecordKind.FALLBACK):
            logger.debug(f"Adding {kind.value}: {r.name}")
            key = HostKey(r.name, r.value)
            hosts[key] = registry.new_host(key, r)
        elif kind is RecordKind.GROUP:
            groups.add(r)
        else:
            logger.debug(f"Unrecognized record: {r.full_name}")
            result.unrecognized += 1

    for host in hosts.values():
        for m in host.groups:
            m.existing = groups.claim(m.label, host.key.ip)

    orphans = list(groups.orphans())
    if orphans:
        with ThreadPoolExecutor(max_workers=min(MAX_CLEANUP_WORKERS, len(orphans))) as pool:
            outcomes = list(
                pool.map(lambda o: _remove_from_rotation(dns_provider, *o), orphans)
            )
        for (_, record), ok in zip(orphans, outcomes):
            (result.deleted if ok else result.failed).append(record)

    result.hosts = list(hosts.values())
    registry.adopt(result.hosts)
    for host in result.hosts:
        host.run()

    logger.info(
        f"Loaded {len(result.hosts)} hosts from {len(records)} records, "
        f"removed {len(result.deleted)} orphaned rotation entries"
        + (f" ({len(result.failed)} failed)" if result.failed else "")
    )
    return result


def _remove_from_rotation(dns_provider: DNSProvider, label: str, record: Record) -> bool:
    logger.debug(f"{record.value} in {label} is missing host, removing from rotation")
    try:
        dns_provider.destroy_record(record)
        return True
    except DNSProviderError as e:
        logger.warning(f"Unable to remove {record.value} from {label}: {e}")
        return False
