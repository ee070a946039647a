"""HTTP surface through which peers and fallbacks register and unregister."""

from __future__ import annotations

import ipaddress
import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status

from peerscanner.hosts import RecordKind, classify
from peerscanner.registry import HostRegistry

logger = logging.getLogger(__name__)


def client_ip(request: Request, ip: Optional[str]) -> str:
    """Resolve the ip being registered.

    An explicit ``ip`` parameter wins, then the first X-Forwarded-For entry,
    then the peer address of the connection.
    """
    candidate = (ip or "").strip()
    if not candidate:
        forwarded = request.headers.get("X-Forwarded-For", "")
        candidate = forwarded.split(",")[0].strip()
    if not candidate and request.client is not None:
        candidate = request.client.host
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid ip '{candidate}'",
        ) from None


def _validate_name(name: str) -> str:
    name = name.strip()
    if classify(name) not in (RecordKind.PEER, RecordKind.FALLBACK):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'{name}' is neither a peer nor a fallback name",
        )
    return name


def create_app(registry: HostRegistry) -> FastAPI:
    app = FastAPI(
        title="peerscanner",
        description="Registration endpoint keeping peer and fallback DNS rotation current",
        docs_url=None,
        redoc_url=None,
    )
    app.state.registry = registry

    @app.api_route("/register", methods=["GET", "POST"])
    def register(
        request: Request,
        name: str = Query(..., min_length=1),
        ip: Optional[str] = Query(None),
    ) -> Dict[str, str]:
        name = _validate_name(name)
        address = client_ip(request, ip)
        host = request.app.state.registry.get_or_create(name, address)
        logger.debug(f"Register request for {host.key}")
        return {"status": "ok", "name": name, "ip": address, "state": host.state.value}

    @app.api_route("/unregister", methods=["GET", "POST"])
    def unregister(
        request: Request,
        name: str = Query(..., min_length=1),
        ip: Optional[str] = Query(None),
    ) -> Dict[str, str]:
        name = name.strip()
        address = client_ip(request, ip)
        registry: HostRegistry = request.app.state.registry
        host = registry.get(name, address)
        if host is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Host {name} ({address}) is not registered",
            )
        registry.remove(host)
        host.unregister()
        return {"status": "ok", "name": name, "ip": address, "state": host.state.value}

    @app.get("/healthz")
    def healthz(request: Request) -> Dict[str, object]:
        return {"status": "ok", "hosts": len(request.app.state.registry)}

    return app
