"""Unciv authentication endpoints (/auth)."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import PlainTextResponse

from relay.api.dependencies import get_auth_gate, get_client_ip, read_body
from relay.core.config import settings
from relay.core.exceptions import AuthError, ValidationError
from relay.schemas.enums import AuthStatus
from relay.services.auth_gate import AuthGate

router = APIRouter(tags=["auth"])
logger = logging.getLogger(__name__)


@router.get("/auth", response_class=PlainTextResponse)
async def check_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
    gate: AuthGate = Depends(get_auth_gate),
):
    """
    Verify credentials; responds with the caller's player id.
    GET /auth

    An unknown player id is registered with the supplied secret.
    """
    ip = get_client_ip(request)
    result = await gate.authenticate(authorization, ip)
    if result.status == AuthStatus.INVALID:
        raise AuthError()
    if result.status == AuthStatus.MISSING:
        await gate.register_or_update_secret(result.player_id, result.password, ip)
        logger.info(f"Registered player {result.player_id} from {ip}")
    return PlainTextResponse(result.player_id)


@router.put("/auth", response_class=PlainTextResponse)
async def update_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
    gate: AuthGate = Depends(get_auth_gate),
):
    """
    Set a new secret; the request body is the secret as plain text.
    PUT /auth
    """
    ip = get_client_ip(request)
    result = await gate.authenticate(authorization, ip)
    if result.status == AuthStatus.INVALID:
        raise AuthError()

    # Four bytes per character covers any UTF-8 secret within the length limit
    body = await read_body(request, settings.PASSWORD_MAX_LENGTH * 4)
    try:
        secret = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("Password must be UTF-8 text") from e

    await gate.register_or_update_secret(result.player_id, secret, ip)
    return PlainTextResponse(result.player_id)
