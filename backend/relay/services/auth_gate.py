"""HTTP Basic authentication for players and the admin account."""
import base64
import binascii
import logging
from typing import Optional

from relay.core.config import settings as default_settings
from relay.core.exceptions import (
    AuthError, RateLimitedError, StorageConflictError, StorageError, ValidationError,
    InternalError,
)
from relay.core.security import constant_time_equals, hash_password, hash_token, verify_password
from relay.schemas.auth import AuthResult
from relay.schemas.enums import AuthStatus
from relay.services.cache import TTLCache
from relay.services.game_ids import is_player_id
from relay.services.login_rate_limiter import LoginRateLimiter
from relay.storage.backend import SaveStoreBackend
from relay.storage.records import PlayerRecord, utcnow

logger = logging.getLogger(__name__)


def parse_basic_auth(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Return (user, secret) from 'Basic base64(user:secret)', or None.

    Splits on the first colon only, so secrets may contain colons.
    """
    if not header:
        return None
    parts = header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1].strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    user, sep, secret = decoded.partition(":")
    if not sep or not user or not secret:
        return None
    return user, secret


class AuthGate:
    """Resolves callers to player ids.

    Verified credentials are cached as player_id -> sha256(secret) so the
    bcrypt check runs once per TTL instead of on every client poll.
    """

    def __init__(
        self,
        backend: SaveStoreBackend,
        credential_cache: TTLCache,
        admin_limiter: Optional[LoginRateLimiter] = None,
        settings=None,
    ):
        self._backend = backend
        self._cache = credential_cache
        self._settings = settings or default_settings
        self._admin_limiter = admin_limiter or LoginRateLimiter(
            max_attempts=self._settings.ADMIN_MAX_ATTEMPTS,
            window_seconds=self._settings.ADMIN_WINDOW_SECONDS,
            lockout_seconds=self._settings.ADMIN_LOCKOUT_SECONDS,
            max_lockout_seconds=self._settings.ADMIN_MAX_LOCKOUT_SECONDS,
        )

    @property
    def admin_limiter(self) -> LoginRateLimiter:
        return self._admin_limiter

    async def authenticate(self, header: Optional[str], ip: Optional[str] = None) -> AuthResult:
        """Classify a Basic credential as VALID, INVALID or MISSING.

        MISSING means well-formed but unknown; the id and secret are
        returned so the caller may register them.
        """
        parsed = parse_basic_auth(header)
        if parsed is None or not is_player_id(parsed[0]):
            return AuthResult.invalid()
        player_id, secret = parsed

        try:
            if not await self._secret_matches_cache(player_id, secret):
                # A secret change after this point must not re-cache the old secret
                generation = await self._cache.generation(player_id)
                player = await self._backend.get_player(player_id)
                if player is None:
                    return AuthResult(player_id=player_id, password=secret, status=AuthStatus.MISSING)
                if not verify_password(secret, player.password_hash):
                    logger.info(f"Wrong secret for player {player_id}")
                    return AuthResult.invalid()
                await self._cache.set(player_id, hash_token(secret), generation=generation)

            await self._touch(player_id, ip)
        except StorageError as e:
            logger.error(f"Credential lookup failed for {player_id}: {e}")
            raise InternalError("Credential lookup failed") from e
        return AuthResult(player_id=player_id, password=secret, status=AuthStatus.VALID)

    async def require_valid(self, header: Optional[str], ip: Optional[str] = None) -> str:
        """Return the caller's player id or raise AuthError."""
        result = await self.authenticate(header, ip)
        if result.status != AuthStatus.VALID:
            raise AuthError()
        return result.player_id

    async def register_or_update_secret(
        self, player_id: str, secret: str, ip: Optional[str] = None
    ) -> None:
        """Create the player or replace its secret (idempotent upsert).

        Raises:
            ValidationError: If the secret length is outside the allowed range
        """
        min_len = self._settings.PASSWORD_MIN_LENGTH
        max_len = self._settings.PASSWORD_MAX_LENGTH
        if not secret or not (min_len <= len(secret) <= max_len):
            raise ValidationError(
                f"Password must be {min_len} to {max_len} characters",
                details={"player_id": player_id},
            )

        password_hash = hash_password(secret)
        # A concurrent first registration can race the insert; retry once as an update
        for attempt in range(2):
            try:
                await self._upsert_player(player_id, password_hash, ip)
                break
            except StorageConflictError:
                if attempt == 1:
                    logger.error(f"Password update for {player_id} kept conflicting")
                    raise InternalError("Password update failed")
            except StorageError as e:
                logger.error(f"Password update failed for {player_id}: {e}")
                raise InternalError("Password update failed") from e

        await self._cache.delete(player_id)
        logger.info(f"Secret updated for player {player_id}")

    async def _upsert_player(self, player_id: str, password_hash: str, ip: Optional[str]) -> None:
        now = utcnow()
        player = await self._backend.get_player(player_id)
        if player is None:
            player = PlayerRecord(
                player_id=player_id,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
                create_ip=ip,
                update_ip=ip,
            )
        else:
            player.password_hash = password_hash
            player.updated_at = now
            player.update_ip = ip
        await self._backend.save_player(player)

    async def _secret_matches_cache(self, player_id: str, secret: str) -> bool:
        cached = await self._cache.get(player_id)
        return cached is not None and constant_time_equals(cached, hash_token(secret))

    async def _touch(self, player_id: str, ip: Optional[str]) -> None:
        try:
            await self._backend.touch_player(player_id, ip, utcnow())
        except StorageConflictError as e:
            # Activity timestamps only feed retention; a lost touch is harmless
            logger.info(f"Skipped activity touch for {player_id}: {e}")

    def authenticate_admin(self, header: Optional[str], ip: Optional[str] = None) -> bool:
        """Check the admin Basic credential.

        Raises:
            RateLimitedError: If the client is locked out after failed attempts
        """
        identifier = ip or "unknown"
        allowed, retry_after = self._admin_limiter.check_rate_limit(identifier)
        if not allowed:
            raise RateLimitedError(retry_after)

        expected_password = self._settings.ADMIN_PASSWORD
        if not expected_password:
            return False

        parsed = parse_basic_auth(header)
        if parsed is None:
            return False

        username, password = parsed
        # Evaluate both comparisons so timing does not reveal which one failed
        user_ok = constant_time_equals(username, self._settings.ADMIN_USERNAME)
        password_ok = constant_time_equals(password, expected_password)
        success = user_ok and password_ok
        self._admin_limiter.record_attempt(identifier, success)
        if not success:
            logger.warning(f"Failed admin login from {identifier}")
        return success
