"""Shared fakes for peerscanner tests.

MockDNSProvider keeps records in memory and tracks every call so tests can
assert on exactly what was created or destroyed. FakeProbe answers health
checks from a per-host table.
"""

import itertools
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

import pytest

from peerscanner.cloudflare import DNSProvider, DNSProviderError, Record
from peerscanner.hosts import HealthProbe, HostKey, LifecycleSettings
from peerscanner.registry import HostRegistry

DOMAIN = "getiantem.org"


def make_record(name: str, value: str, record_id: Optional[str] = None) -> Record:
    """Create a Record for testing."""
    return Record(
        id=record_id or f"{name}-{value}",
        name=name,
        value=value,
        full_name=f"{name}.{DOMAIN}",
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


# =============================================================================
# Mock DNS Provider
# =============================================================================


class MockDNSProvider(DNSProvider):
    """In-memory DNS provider with call tracking and injectable failures."""

    def __init__(self, initial_records: Iterable[Record] = ()):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.records: Dict[str, Record] = {r.id: r for r in initial_records}
        self.create_calls: List[tuple[str, str]] = []
        self.destroy_calls: List[Record] = []
        self.list_calls = 0
        self.fail_list = False
        self.fail_create: Set[str] = set()
        self.fail_destroy: Set[str] = set()

    @property
    def name(self) -> str:
        return "MockDNS"

    def list_all_records(self) -> List[Record]:
        with self._lock:
            self.list_calls += 1
            if self.fail_list:
                raise DNSProviderError("listing failed")
            return list(self.records.values())

    def create_record(self, name: str, value: str) -> Record:
        with self._lock:
            self.create_calls.append((name, value))
            if name in self.fail_create:
                raise DNSProviderError(f"create {name} failed")
            record = make_record(name, value, record_id=f"created-{next(self._ids)}")
            self.records[record.id] = record
            return record

    def destroy_record(self, record: Record) -> None:
        with self._lock:
            self.destroy_calls.append(record)
            if record.id in self.fail_destroy:
                raise DNSProviderError(f"destroy {record.id} failed")
            self.records.pop(record.id, None)

    def values_for(self, name: str) -> List[str]:
        with self._lock:
            return sorted(r.value for r in self.records.values() if r.name == name)


# =============================================================================
# Fake Probe
# =============================================================================


class FakeProbe(HealthProbe):
    """Health probe answering from a table, defaulting to ``default``."""

    def __init__(self, default: bool = True):
        self.default = default
        self.results: Dict[HostKey, bool] = {}
        self.calls: List[HostKey] = []
        self.gate: Optional[threading.Event] = None

    def check(self, key: HostKey) -> bool:
        self.calls.append(key)
        if self.gate is not None:
            self.gate.wait(2.0)
        return self.results.get(key, self.default)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def dns() -> MockDNSProvider:
    return MockDNSProvider()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def make_registry(dns: MockDNSProvider, probe: FakeProbe):
    """Build registries over the shared fakes and stop their tasks afterwards."""
    created: List[HostRegistry] = []

    def factory(**lifecycle) -> HostRegistry:
        settings = LifecycleSettings(
            probe_interval=lifecycle.pop("probe_interval", 0.01),
            max_failures=lifecycle.pop("max_failures", 3),
            registration_ttl=lifecycle.pop("registration_ttl", 0),
        )
        registry = HostRegistry(dns_provider=dns, probe=probe, settings=settings)
        created.append(registry)
        return registry

    yield factory

    for registry in created:
        registry.shutdown()
        for host in registry.hosts():
            host.join(1.0)
