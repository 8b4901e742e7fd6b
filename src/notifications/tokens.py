"""Push token lifecycle management.

Validates, persists, caches, invalidates and garbage-collects device
push tokens. Mutations go through the retry policy; read paths degrade
to empty or zero results, since token data is advisory.

The in-memory cache is write-through: an entry is added or dropped only
after the matching store mutation has succeeded.
"""

import logging
import re
from datetime import timedelta
from typing import Optional

from src.notifications.config import DEFAULT_NOTIFICATION_CONFIG, TOKEN_PATTERN, NotificationConfig
from src.notifications.models import DeviceInfo, PushToken, TokenStats, _now
from src.notifications.token_store import TokenStore
from src.resilience import DeliveryError, ErrorKind, ErrorLog, RetryPolicy

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(TOKEN_PATTERN)
MASK_LENGTH = 30


def mask_token(token: str) -> str:
    """Shorten a token for logs."""
    return token[:MASK_LENGTH] + "..."


class TokenManager:
    """Keeps one validated record per (user, device) push destination."""

    def __init__(
        self,
        store: TokenStore,
        retry_policy: RetryPolicy,
        error_log: ErrorLog,
        config: Optional[NotificationConfig] = None,
    ):
        self._store = store
        self._retry = retry_policy
        self._error_log = error_log
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._cache: dict[str, PushToken] = {}

    # --- Validation ---

    def validate_format(self, token: str) -> bool:
        """Check the token against the push transport's grammar. No I/O."""
        if isinstance(token, str) and _TOKEN_RE.match(token):
            return True

        self._error_log.log(
            DeliveryError(
                ErrorKind.INVALID_TOKEN,
                "Token does not match push token format",
                retryable=False,
                context={"token": mask_token(str(token))},
            )
        )
        return False

    # --- Mutations ---

    async def save_token(
        self,
        user_id: str,
        token: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> bool:
        """Validate and upsert a token, then mirror it into the cache."""
        if not self.validate_format(token):
            return False

        now = _now()
        record = PushToken(
            user_id=user_id,
            token=token,
            device_info=device_info,
            created_at=now,
            updated_at=now,
            last_used=now,
        )
        context = {"user_id": user_id}
        if device_info is not None:
            context["platform"] = device_info.platform.value

        try:
            saved = await self._retry.execute(
                lambda: self._store.upsert(record),
                ErrorKind.TOKEN_SAVE_FAILED,
                context=context,
                config=self.config.storage_retry,
            )
        except DeliveryError as e:
            self._error_log.log(e)
            return False

        self._cache[token] = saved
        logger.info("Saved push token for user %s", user_id)
        return True

    async def invalidate_token(self, token: str) -> None:
        """Mark a token invalid. Best effort: failures are logged, never raised."""
        try:
            await self._retry.execute(
                lambda: self._store.mark_invalid(token, _now()),
                ErrorKind.STORAGE_ERROR,
                context={"operation": "invalidate_token"},
                config=self.config.storage_retry,
            )
        except DeliveryError as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    "Failed to invalidate token",
                    retryable=False,
                    context={"token": mask_token(token)},
                    caused_by=e,
                )
            )
            return

        self._cache.pop(token, None)

    async def cleanup_stale_tokens(self, user_id: Optional[str] = None) -> int:
        """Invalidate valid tokens unused for ``token_expiry_days``.

        Scoped to one user when given, global otherwise. Returns the
        number of tokens flipped, 0 on failure.
        """
        now = _now()
        cutoff = now - timedelta(days=self.config.token_expiry_days)

        try:
            count = await self._retry.execute(
                lambda: self._store.invalidate_stale(cutoff, now, user_id),
                ErrorKind.STORAGE_ERROR,
                context={"operation": "cleanup_stale_tokens", "user_id": user_id},
                config=self.config.storage_retry,
            )
        except DeliveryError as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    "Failed to cleanup stale tokens",
                    retryable=False,
                    context={"user_id": user_id},
                    caused_by=e,
                )
            )
            return 0

        for token, cached in list(self._cache.items()):
            if cached.last_used < cutoff and (user_id is None or cached.user_id == user_id):
                del self._cache[token]

        logger.info("Cleaned up %d stale tokens", count)
        return count

    async def remove_all_user_tokens(self, user_id: str) -> bool:
        """Hard-delete every token of a user (logout, account deletion)."""
        try:
            await self._retry.execute(
                lambda: self._store.delete_for_user(user_id),
                ErrorKind.STORAGE_ERROR,
                context={"user_id": user_id, "operation": "remove_all_user_tokens"},
                config=self.config.storage_retry,
            )
        except DeliveryError as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    "Failed to remove user tokens",
                    retryable=False,
                    context={"user_id": user_id},
                    caused_by=e,
                )
            )
            return False

        for token, cached in list(self._cache.items()):
            if cached.user_id == user_id:
                del self._cache[token]
        return True

    async def update_last_used(self, token: str) -> None:
        """Stamp ``last_used``. Not critical; failures are only logged."""
        now = _now()
        try:
            await self._store.touch(token, now)
        except Exception as e:
            logger.warning("Failed to update last_used for %s: %s", mask_token(token), e)
            return

        cached = self._cache.get(token)
        if cached is not None:
            cached.last_used = now
            cached.updated_at = now

    async def validate_and_refresh_token(self, user_id: str, token: str) -> bool:
        if not self.validate_format(token):
            await self.invalidate_token(token)
            return False

        await self.update_last_used(token)
        return True

    async def batch_validate_tokens(self, tokens: list[str]) -> dict[str, bool]:
        """Check each token's format, invalidating the malformed ones."""
        results: dict[str, bool] = {}
        for token in tokens:
            valid = self.validate_format(token)
            results[token] = valid
            if not valid:
                await self.invalidate_token(token)
        return results

    # --- Reads ---

    async def get_user_tokens(self, user_id: str) -> list[PushToken]:
        try:
            return await self._store.fetch_valid(user_id)
        except Exception as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    "Failed to fetch user tokens",
                    context={"user_id": user_id},
                    caused_by=e,
                )
            )
            return []

    async def get_token_stats(self, user_id: Optional[str] = None) -> TokenStats:
        """Token counts from independent queries; zeros on failure."""
        cutoff = _now() - timedelta(days=self.config.token_expiry_days)
        try:
            valid = await self._store.count(user_id=user_id, is_valid=True)
            invalid = await self._store.count(user_id=user_id, is_valid=False)
            stale = await self._store.count(user_id=user_id, is_valid=True, used_before=cutoff)
        except Exception as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    "Failed to get token statistics",
                    retryable=False,
                    context={"user_id": user_id},
                    caused_by=e,
                )
            )
            return TokenStats()

        return TokenStats(total=valid + invalid, valid=valid, invalid=invalid, stale=stale)

    # --- Cache ---

    def get_cached(self, token: str) -> Optional[PushToken]:
        return self._cache.get(token)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
