"""DNS provider interface and the CloudFlare implementation.

The registry only ever needs three operations against the zone: list every
record, create an A record and destroy a record. Every failure surfaces as a
DNSProviderError so callers can decide whether it is fatal (initial listing)
or merely worth a log line (orphan cleanup, host teardown).
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Record:
    """Represents a DNS record in the managed zone."""

    id: str
    name: str
    value: str
    full_name: str
    type: str = "A"


class DNSProviderError(Exception):
    """Raised when the DNS provider cannot complete a request."""


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_all_records(self) -> List[Record]:
        """Get every record under the managed domain."""
        pass

    @abstractmethod
    def create_record(self, name: str, value: str) -> Record:
        """Create an A record ``name -> value`` and return it."""
        pass

    @abstractmethod
    def destroy_record(self, record: Record) -> None:
        """Delete a record."""
        pass


# =============================================================================
# CloudFlare
# =============================================================================


class CloudFlareDNSProvider(DNSProvider):
    """CloudFlare v4 API provider authenticated with account email + API key."""

    PAGE_SIZE = 100

    def __init__(
        self,
        domain: str,
        user: str,
        api_key: str,
        base_url: str = CLOUDFLARE_API_URL,
        timeout_seconds: float = 10.0,
    ):
        self.domain = domain.strip().rstrip(".").lower()
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._zone_id: Optional[str] = None
        self._session = requests.Session()
        self._session.headers.update(
            {
                "X-Auth-Email": user,
                "X-Auth-Key": api_key,
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "CloudFlare"

    @property
    def zone_id(self) -> str:
        if self._zone_id is None:
            raise DNSProviderError(f"{self.name} client for {self.domain} is not connected")
        return self._zone_id

    def connect(self) -> str:
        """Resolve and cache the zone id of the managed domain."""
        zones = self._request("GET", "/zones", params={"name": self.domain})
        result = zones.get("result") or []
        if not result:
            raise DNSProviderError(f"Zone {self.domain} not found in {self.name}")
        self._zone_id = str(result[0]["id"])
        logger.info(f"{self.name} connection successful, zone {self.domain} is {self._zone_id}")
        return self._zone_id

    def list_all_records(self) -> List[Record]:
        records: List[Record] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                f"/zones/{self.zone_id}/dns_records",
                params={"page": page, "per_page": self.PAGE_SIZE},
            )
            for item in data.get("result") or []:
                record = self._to_record(item)
                if record is None:
                    logger.warning(f"Skipping malformed record: {item}")
                    continue
                records.append(record)

            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                break
            page += 1

        logger.debug(f"Loaded {len(records)} records from {self.name} zone {self.domain}")
        return records

    def create_record(self, name: str, value: str) -> Record:
        payload = {"type": "A", "name": self.full_name(name), "content": value, "ttl": 1}
        data = self._request("POST", f"/zones/{self.zone_id}/dns_records", json=payload)
        record = self._to_record(data.get("result") or {})
        if record is None:
            raise DNSProviderError(f"Malformed create response for {name} -> {value}")
        logger.info(f"Added DNS record: {record.full_name} -> {record.value}")
        return record

    def destroy_record(self, record: Record) -> None:
        self._request("DELETE", f"/zones/{self.zone_id}/dns_records/{record.id}")
        logger.info(f"Deleted DNS record: {record.full_name} -> {record.value}")

    def full_name(self, name: str) -> str:
        if name in ("", "@"):
            return self.domain
        return f"{name}.{self.domain}"

    def relative_name(self, full_name: str) -> str:
        """Strip the managed domain from a FQDN ("@" for the apex)."""
        full_name = full_name.rstrip(".").lower()
        if full_name == self.domain:
            return "@"
        suffix = f".{self.domain}"
        if full_name.endswith(suffix):
            return full_name[: -len(suffix)]
        return full_name

    def _to_record(self, item: Any) -> Optional[Record]:
        if not isinstance(item, dict):
            return None
        record_id = item.get("id")
        full_name = item.get("name")
        value = item.get("content")
        if not isinstance(record_id, str) or not isinstance(full_name, str):
            return None
        if not isinstance(value, str):
            return None
        return Record(
            id=record_id,
            name=self.relative_name(full_name),
            value=value,
            full_name=full_name,
            type=str(item.get("type") or "A"),
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise DNSProviderError(f"{self.name} {method} {path} failed: {e}") from e

        if not isinstance(data, dict) or not data.get("success", False):
            errors = data.get("errors") if isinstance(data, dict) else data
            raise DNSProviderError(
                f"{self.name} {method} {path} failed with status "
                f"{response.status_code}: {errors}"
            )
        return data
