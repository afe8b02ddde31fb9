"""Authentication schemas."""
from pydantic import BaseModel

from relay.schemas.enums import AuthStatus


class AuthResult(BaseModel):
    """Outcome of parsing and checking a Basic credential.

    player_id and password are only populated for VALID and MISSING;
    INVALID never echoes what was stored or sent.
    """
    player_id: str = ""
    password: str = ""
    status: AuthStatus

    @classmethod
    def invalid(cls) -> "AuthResult":
        return cls(status=AuthStatus.INVALID)
