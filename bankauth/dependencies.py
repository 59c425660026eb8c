"""Shared FastAPI dependencies."""
from __future__ import annotations

import ipaddress

from fastapi import Depends, HTTPException, Request, status

from . import schemas
from .services.auth_service import AuthService

SESSION_HEADER = "X-Session-Token"
FINGERPRINT_HEADER = "X-Device-Fingerprint"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _is_trusted_proxy(address: str, proxies: list[str]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in ipaddress.ip_network(proxy, strict=False) for proxy in proxies)


def _get_ip(request: Request) -> str:
    """Client address; X-Forwarded-For is only honoured when the peer is a trusted proxy."""

    client_host = request.client.host if request.client else "0.0.0.0"
    proxies = get_auth_service(request).settings.trusted_proxies
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or not _is_trusted_proxy(client_host, proxies):
        return client_host
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    # Walk back from the nearest hop; the first untrusted address is the client.
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop, proxies):
            return hop
    return hops[0] if hops else client_host


def get_request_context(request: Request) -> schemas.RequestContext:
    return schemas.RequestContext(
        ip_address=_get_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_fingerprint=request.headers.get(FINGERPRINT_HEADER),
    )


def get_access_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1]
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token faltante")


async def get_principal(
    request: Request,
    token: str = Depends(get_access_token),
    context: schemas.RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
) -> schemas.AuthenticatedPrincipal:
    return await service.authenticate(token, context, session_token=request.headers.get(SESSION_HEADER))


async def require_mfa_principal(
    request: Request,
    token: str = Depends(get_access_token),
    context: schemas.RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
) -> schemas.AuthenticatedPrincipal:
    """Principal for sensitive routes: a recent MFA verification is required when MFA is enabled."""

    return await service.authenticate(
        token, context, session_token=request.headers.get(SESSION_HEADER), require_mfa=True
    )
