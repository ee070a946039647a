"""Tracked hosts and their lifecycle.

Every give mode peer or fallback relay we know about is a Host keyed by
(name, ip). A Host owns one background thread per generation which keeps
its own A record present, probes it, and moves it in or out of the rotation
groups it belongs to. ``reset()`` bumps the generation and starts over; any
older thread notices it has been superseded and exits without side effects.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

import requests

from peerscanner.cloudflare import DNSProvider, DNSProviderError, Record

if TYPE_CHECKING:
    from peerscanner.registry import HostRegistry

logger = logging.getLogger(__name__)

# =============================================================================
# Rotation Groups
# =============================================================================

# Reserved record names aggregating the ips eligible for each kind of traffic.
ROUND_ROBIN = "atest_roundrobin"
PEERS = "atest_apeers"
FALLBACKS = "atest_fallbacks"

GROUP_LABELS: Tuple[str, ...] = (ROUND_ROBIN, PEERS, FALLBACKS)

PEER_PREFIX = "peer-"
FALLBACK_PREFIX = "fl-"
PEER_ID_LENGTH = 32


class RecordKind(Enum):
    """What a record name in the managed zone stands for."""

    PEER = "peer"
    FALLBACK = "fallback"
    GROUP = "group"
    UNRECOGNIZED = "unrecognized"


def classify(name: str) -> RecordKind:
    """Classify a record name.

    Peers are either named by their 32 character id or carry the "peer-"
    prefix. Peer and fallback checks come before the group labels so a
    reserved label can never be mistaken for a host.
    """
    if len(name) == PEER_ID_LENGTH or name.startswith(PEER_PREFIX):
        return RecordKind.PEER
    if name.startswith(FALLBACK_PREFIX):
        return RecordKind.FALLBACK
    if name in GROUP_LABELS:
        return RecordKind.GROUP
    return RecordKind.UNRECOGNIZED


def groups_for(kind: RecordKind) -> Tuple[str, ...]:
    """Rotation groups a host of the given kind belongs to."""
    if kind is RecordKind.PEER:
        return (ROUND_ROBIN, PEERS)
    if kind is RecordKind.FALLBACK:
        return (ROUND_ROBIN, FALLBACKS)
    return ()


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class HostKey:
    """Identity of a tracked host, stable across DNS record churn."""

    name: str
    ip: str

    def __str__(self) -> str:
        return f"{self.name} ({self.ip})"


@dataclass
class GroupMembership:
    """A host's slot in one rotation group and the record filling it, if any."""

    label: str
    existing: Optional[Record] = None


@dataclass(frozen=True)
class LifecycleSettings:
    probe_interval: float = 60.0
    max_failures: int = 3
    registration_ttl: float = 600.0


class HostState(Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    DEGRADED = "degraded"
    REMOVED = "removed"


# =============================================================================
# Health Probes
# =============================================================================


class HealthProbe(ABC):
    """Decides whether a host is currently able to serve traffic."""

    @abstractmethod
    def check(self, key: HostKey) -> bool:
        pass


class ProxyProbe(HealthProbe):
    """Fetch a known URL using the host as an HTTP proxy.

    Any HTTP response counts as live; connection errors and timeouts do not.
    """

    def __init__(self, url: str, port: int = 80, timeout_seconds: float = 10.0):
        self._url = url
        self._port = port
        self._timeout = timeout_seconds

    def check(self, key: HostKey) -> bool:
        proxy = f"http://{key.ip}:{self._port}"
        try:
            response = requests.get(
                self._url,
                proxies={"http": proxy, "https": proxy},
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"Probe of {key} through {proxy} failed: {e}")
            return False
        logger.debug(f"Probe of {key} through {proxy} returned {response.status_code}")
        return True


# =============================================================================
# Host
# =============================================================================


class Host:
    def __init__(
        self,
        key: HostKey,
        *,
        registry: HostRegistry,
        dns_provider: DNSProvider,
        probe: HealthProbe,
        settings: LifecycleSettings,
        record: Optional[Record] = None,
    ):
        self.key = key
        self.kind = classify(key.name)
        self.record = record
        self.groups: List[GroupMembership] = [GroupMembership(label) for label in groups_for(self.kind)]
        self.state = HostState.INITIALIZING
        self.generation = 0

        self._registry = registry
        self._dns_provider = dns_provider
        self._probe = probe
        self._settings = settings
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._registered_at = time.monotonic()

    def __repr__(self) -> str:
        return f"Host({self.key.name!r}, {self.key.ip!r}, state={self.state.value}, generation={self.generation})"

    def membership(self, label: str) -> Optional[GroupMembership]:
        for m in self.groups:
            if m.label == label:
                return m
        return None

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """Start the lifecycle task for the current generation."""
        with self._lock:
            self._registered_at = time.monotonic()
            self._start(self.generation, self._cancel, self._run)

    def reset(self) -> None:
        """Restart the decision cycle, keeping key, records and memberships."""
        with self._lock:
            self._supersede()
            self.state = HostState.INITIALIZING
            self._registered_at = time.monotonic()
            self._start(self.generation, self._cancel, self._run)
        logger.debug(f"{self.key} re-registered, generation {self.generation}")

    def unregister(self) -> None:
        """Take the host out of DNS after an explicit unregistration."""
        with self._lock:
            self._supersede()
            self.state = HostState.REMOVED
            self._start(self.generation, self._cancel, self._teardown)
        logger.info(f"{self.key} unregistered")

    def cancel(self) -> None:
        """Stop the running task without touching DNS."""
        with self._lock:
            self._supersede()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _supersede(self) -> None:
        self._cancel.set()
        self._cancel = threading.Event()
        self.generation += 1

    def _start(self, generation: int, cancel: threading.Event, target) -> None:
        self._thread = threading.Thread(
            target=target,
            args=(generation, cancel),
            name=f"host-{self.key.name}-{self.key.ip}-{generation}",
            daemon=True,
        )
        self._thread.start()

    def _superseded(self, generation: int) -> bool:
        return self.generation != generation

    def _transition(self, generation: int, state: HostState) -> None:
        with self._lock:
            if self._superseded(generation) or self.state is state:
                return
            previous = self.state
            self.state = state
        logger.info(f"{self.key}: {previous.value} -> {state.value}")

    def _expired(self) -> bool:
        ttl = self._settings.registration_ttl
        return ttl > 0 and time.monotonic() - self._registered_at >= ttl

    # -------------------------------------------------------------------------
    # Lifecycle task
    # -------------------------------------------------------------------------

    def _run(self, generation: int, cancel: threading.Event) -> None:
        failures = 0
        try:
            while not self._superseded(generation):
                if self._expired():
                    logger.info(
                        f"{self.key} has not registered in "
                        f"{self._settings.registration_ttl:g}s, removing"
                    )
                    self._terminate(generation)
                    return

                self._ensure_record(generation)
                if self._superseded(generation):
                    return

                live = self._probe.check(self.key)
                if self._superseded(generation):
                    return

                if live:
                    failures = 0
                    self._add_to_rotation(generation)
                    self._transition(generation, HostState.ACTIVE)
                else:
                    failures += 1
                    logger.debug(
                        f"{self.key} failed probe ({failures}/{self._settings.max_failures})"
                    )
                    if failures >= self._settings.max_failures:
                        logger.info(f"{self.key} failed {failures} probes in a row, removing")
                        self._terminate(generation)
                        return
                    if self.state is HostState.ACTIVE:
                        self._transition(generation, HostState.DEGRADED)

                if cancel.wait(self._settings.probe_interval):
                    return
        except Exception as e:
            logger.error(f"Lifecycle task for {self.key} failed: {e}", exc_info=True)
            # No task is left to expire the host, so take it out of DNS now.
            try:
                self._terminate(generation)
            except Exception as e:
                logger.error(f"Teardown of {self.key} failed: {e}", exc_info=True)

    def _teardown(self, generation: int, cancel: threading.Event) -> None:
        try:
            self._terminate(generation)
        except Exception as e:
            logger.error(f"Teardown of {self.key} failed: {e}", exc_info=True)

    def _terminate(self, generation: int) -> None:
        self._remove_from_rotation(generation)
        if self._superseded(generation):
            return

        record = self.record
        if record is not None:
            try:
                self._dns_provider.destroy_record(record)
                self.record = None
            except DNSProviderError as e:
                logger.warning(f"Unable to remove record for {self.key}: {e}")

        self._transition(generation, HostState.REMOVED)
        self._registry.remove(self, generation)

    def _ensure_record(self, generation: int) -> None:
        if self.record is not None:
            return
        try:
            record = self._dns_provider.create_record(self.key.name, self.key.ip)
        except DNSProviderError as e:
            logger.warning(f"Unable to create record for {self.key}: {e}")
            return
        self._keep(generation, record)

    def _add_to_rotation(self, generation: int) -> None:
        for m in self.groups:
            if m.existing is not None:
                continue
            if self._superseded(generation):
                return
            try:
                record = self._dns_provider.create_record(m.label, self.key.ip)
            except DNSProviderError as e:
                logger.warning(f"Unable to add {self.key} to {m.label}: {e}")
                continue
            if self._keep(generation, record, m):
                logger.info(f"Added {self.key} to {m.label}")

    def _keep(
        self, generation: int, record: Record, membership: Optional[GroupMembership] = None
    ) -> bool:
        """Track a record this task just created.

        A task that was reset or unregistered while the create was in flight
        destroys the record instead, so the current generation owns every
        record the host tracks.
        """
        with self._lock:
            current = not self._superseded(generation) and self.state is not HostState.REMOVED
            if current:
                if membership is None:
                    self.record = record
                else:
                    membership.existing = record
        if current:
            return True

        try:
            self._dns_provider.destroy_record(record)
        except DNSProviderError as e:
            logger.warning(f"Unable to remove stale record {record.full_name} -> {record.value}: {e}")
        return False

    def _remove_from_rotation(self, generation: int) -> None:
        for m in self.groups:
            record = m.existing
            if record is None:
                continue
            if self._superseded(generation):
                return
            try:
                self._dns_provider.destroy_record(record)
                m.existing = None
                logger.info(f"Removed {self.key} from {m.label}")
            except DNSProviderError as e:
                logger.warning(f"Unable to remove {self.key} from {m.label}: {e}")
