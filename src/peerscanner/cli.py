#!/usr/bin/env python3
"""peerscanner - DNS rotation for give mode peers and fallbacks

Peers and fallback relays register over HTTP. peerscanner keeps an A record
for each of them in a CloudFlare zone, probes them, and keeps the rotation
groups (atest_roundrobin, atest_apeers, atest_fallbacks) pointing only at
hosts that are alive. On startup the zone is reconciled against the hosts it
describes and rotation entries without a host are removed.

Environment variables:

    CloudFlare:
        CF_USER                    Account email (required)
        CF_API_KEY                 API key (required)
        CF_DOMAIN                  Managed domain (default: getiantem.org)

    HTTP:
        PORT                       Listen port (default: 62443)
        LISTEN_HOST                Listen address (default: 0.0.0.0)

    Host lifecycle:
        PROBE_INTERVAL_SECONDS     Seconds between probes of a host (default: 60)
        PROBE_MAX_FAILURES         Consecutive failed probes before a host is
                                   removed from DNS (default: 3)
        PROBE_PORT                 Port hosts proxy on (default: 80)
        PROBE_URL                  URL fetched through each host
                                   (default: http://www.google.com/humans.txt)
        PROBE_TIMEOUT_SECONDS      Probe timeout (default: 10)
        REGISTRATION_TTL_SECONDS   Hosts that do not register again within
                                   this many seconds are removed; 0 disables
                                   (default: 600)

        PEERSCANNER_CONFIG_PATH    Optional YAML file overriding the lifecycle
                                   settings above (default: /config/peerscanner.yaml)
                                   Example:
                                     lifecycle:
                                       probe_interval: 30
                                       max_failures: 5
                                       probe_port: 443
                                       probe_url: "http://www.google.com/humans.txt"
                                       probe_timeout: 5
                                       registration_ttl: 900

    Runtime:
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import uvicorn
import yaml

from peerscanner.api import create_app
from peerscanner.cloudflare import CloudFlareDNSProvider, DNSProviderError
from peerscanner.hosts import LifecycleSettings, ProxyProbe
from peerscanner.registry import HostRegistry, load_hosts

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_DOMAIN = "getiantem.org"
DEFAULT_PORT = 62443
DEFAULT_CONFIG_PATH = "/config/peerscanner.yaml"
DEFAULT_PROBE_URL = "http://www.google.com/humans.txt"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    cf_user: str = ""
    cf_api_key: str = ""
    cf_domain: str = DEFAULT_DOMAIN
    listen_host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    config_path: str = DEFAULT_CONFIG_PATH
    probe_interval: float = 60.0
    max_failures: int = 3
    probe_port: int = 80
    probe_url: str = DEFAULT_PROBE_URL
    probe_timeout: float = 10.0
    registration_ttl: float = 600.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls(
            cf_user=env.get("CF_USER", "").strip(),
            cf_api_key=env.get("CF_API_KEY", "").strip(),
            cf_domain=env.get("CF_DOMAIN", DEFAULT_DOMAIN).strip(),
            listen_host=env.get("LISTEN_HOST", "0.0.0.0").strip(),
            port=_parse_int(env.get("PORT"), DEFAULT_PORT),
            log_level=env.get("LOG_LEVEL", "INFO").strip(),
            config_path=env.get("PEERSCANNER_CONFIG_PATH", DEFAULT_CONFIG_PATH).strip(),
            probe_interval=_parse_float(env.get("PROBE_INTERVAL_SECONDS"), 60.0),
            max_failures=_parse_int(env.get("PROBE_MAX_FAILURES"), 3),
            probe_port=_parse_int(env.get("PROBE_PORT"), 80),
            probe_url=env.get("PROBE_URL", DEFAULT_PROBE_URL).strip(),
            probe_timeout=_parse_float(env.get("PROBE_TIMEOUT_SECONDS"), 10.0),
            registration_ttl=_parse_float(env.get("REGISTRATION_TTL_SECONDS"), 600.0),
        )
        return settings.with_config_file()

    def with_config_file(self) -> "Settings":
        """Overlay the ``lifecycle`` section of the YAML config file, if any."""
        overrides = load_config_file(self.config_path)
        if not overrides:
            return self
        return replace(self, **overrides)

    def lifecycle(self) -> LifecycleSettings:
        return LifecycleSettings(
            probe_interval=self.probe_interval,
            max_failures=self.max_failures,
            registration_ttl=self.registration_ttl,
        )


_CONFIG_FILE_KEYS = {
    "probe_interval": float,
    "max_failures": int,
    "probe_port": int,
    "probe_url": str,
    "probe_timeout": float,
    "registration_ttl": float,
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Read lifecycle overrides from a YAML file; missing or broken files yield {}."""
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}

    if not isinstance(config_data, dict) or not isinstance(config_data.get("lifecycle"), dict):
        logger.warning(f"Config file {config_path} missing 'lifecycle' key")
        return {}

    overrides: Dict[str, Any] = {}
    for key, value in config_data["lifecycle"].items():
        convert = _CONFIG_FILE_KEYS.get(key)
        if convert is None:
            logger.warning(f"Ignoring unknown lifecycle setting '{key}' in {config_path}")
            continue
        try:
            overrides[key] = convert(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid value for '{key}' in {config_path}: {value!r}")
    return overrides


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None or not str(value).strip():
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid integer '{value}', using {default}")
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    if value is None or not str(value).strip():
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid number '{value}', using {default}")
        return default


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []

    if not settings.cf_user:
        errors.append("Please specify a CF_USER environment variable")
    if not settings.cf_api_key:
        errors.append("Please specify a CF_API_KEY environment variable")
    if not settings.cf_domain:
        errors.append("CF_DOMAIN must not be empty")
    if settings.log_level.upper() not in LOG_LEVELS:
        errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {settings.log_level}")
    if not 0 < settings.port < 65536:
        errors.append(f"PORT must be between 1 and 65535, got {settings.port}")
    if not 0 < settings.probe_port < 65536:
        errors.append(f"PROBE_PORT must be between 1 and 65535, got {settings.probe_port}")
    if settings.probe_interval <= 0:
        errors.append(f"PROBE_INTERVAL_SECONDS must be positive, got {settings.probe_interval}")
    if settings.max_failures < 1:
        errors.append(f"PROBE_MAX_FAILURES must be at least 1, got {settings.max_failures}")
    if settings.registration_ttl < 0:
        errors.append(
            f"REGISTRATION_TTL_SECONDS must not be negative, got {settings.registration_ttl}"
        )

    return errors


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"peerscanner: {settings.cf_domain} on port {settings.port}")

    dns_provider = CloudFlareDNSProvider(settings.cf_domain, settings.cf_user, settings.cf_api_key)
    try:
        dns_provider.connect()
    except DNSProviderError as e:
        logger.error(f"Unable to create CloudFlare utility: {e}")
        sys.exit(1)

    probe = ProxyProbe(settings.probe_url, settings.probe_port, settings.probe_timeout)
    registry = HostRegistry(
        dns_provider=dns_provider, probe=probe, settings=settings.lifecycle()
    )
    logger.info(
        f"Probe: {settings.probe_url} via port {settings.probe_port} every "
        f"{settings.probe_interval:.0f}s, removal after {settings.max_failures} failures"
    )

    try:
        load_hosts(registry)
    except DNSProviderError as e:
        logger.error(f"Unable to load hosts: {e}")
        sys.exit(1)

    try:
        uvicorn.run(
            create_app(registry),
            host=settings.listen_host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        logger.info("Shutting down gracefully...")
        registry.shutdown()


if __name__ == "__main__":
    main()
