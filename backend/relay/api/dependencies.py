"""FastAPI dependency injection functions.

Services are built once in the application lifespan and stored on
app.state; these helpers hand them to endpoints and resolve callers.
"""
import ipaddress
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from relay.core.config import settings
from relay.core.exceptions import AuthError, ValidationError
from relay.services.auth_gate import AuthGate, parse_basic_auth
from relay.services.game_ids import is_player_id
from relay.services.retention_sweeper import RetentionSweeper
from relay.services.save_coordinator import SaveCoordinator
from relay.storage.backend import SaveStoreBackend


@dataclass
class Caller:
    """Resolved identity for endpoints open to players and the admin."""
    player_id: Optional[str] = None
    is_admin: bool = False


def get_backend(request: Request) -> SaveStoreBackend:
    return request.app.state.backend


def get_auth_gate(request: Request) -> AuthGate:
    return request.app.state.auth_gate


def get_coordinator(request: Request) -> SaveCoordinator:
    return request.app.state.coordinator


def get_sweeper(request: Request) -> RetentionSweeper:
    return request.app.state.sweeper


def _is_trusted_proxy(ip: str) -> bool:
    """Check if the given IP is in the trusted proxies list."""
    if not settings.TRUSTED_PROXIES:
        return False
    try:
        client_ip = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for proxy in settings.TRUSTED_PROXIES:
        try:
            # Support both single IPs and CIDR notation
            if "/" in proxy:
                if client_ip in ipaddress.ip_network(proxy, strict=False):
                    return True
            elif client_ip == ipaddress.ip_address(proxy):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> Optional[str]:
    """
    Client address used for throttling and audit fields.

    X-Forwarded-For / X-Real-IP are only trusted when the direct peer is in
    TRUSTED_PROXIES; otherwise a client could pick its own address.
    """
    direct_ip = request.client.host if request.client else None

    if direct_ip and _is_trusted_proxy(direct_ip):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return direct_ip


def require_unciv_client(user_agent: Optional[str] = Header(None)) -> None:
    """Reject /files requests that do not come from the game client."""
    prefix = settings.CLIENT_USER_AGENT_PREFIX
    if prefix and not (user_agent or "").startswith(prefix):
        raise ValidationError("Unsupported client", code="INVALID_CLIENT")


async def require_player(
    request: Request,
    authorization: Optional[str] = Header(None),
    gate: AuthGate = Depends(get_auth_gate),
) -> str:
    """Player id for a VALID Basic credential; 401 otherwise."""
    return await gate.require_valid(authorization, get_client_ip(request))


def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
    gate: AuthGate = Depends(get_auth_gate),
) -> Caller:
    if not gate.authenticate_admin(authorization, get_client_ip(request)):
        raise AuthError()
    return Caller(is_admin=True)


async def get_caller(
    request: Request,
    authorization: Optional[str] = Header(None),
    gate: AuthGate = Depends(get_auth_gate),
) -> Caller:
    """Player or admin, told apart by whether the Basic user is a UUID."""
    parsed = parse_basic_auth(authorization)
    if parsed is not None and not is_player_id(parsed[0]):
        return require_admin(request, authorization, gate)
    player_id = await gate.require_valid(authorization, get_client_ip(request))
    return Caller(player_id=player_id)


async def read_body(request: Request, max_bytes: int) -> bytes:
    """Read the request body, rejecting it once it exceeds max_bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise ValidationError("Request body too large", code="BODY_TOO_LARGE")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise ValidationError("Request body too large", code="BODY_TOO_LARGE")
        chunks.append(chunk)
    return b"".join(chunks)
