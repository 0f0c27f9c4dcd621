"""
auth/apikeys.py -- Issue, validate, list and revoke API keys.

Key format: "ih_" + 64 hex chars. Only HMAC-SHA256(SECRET_KEY, <hex part>) is
stored (see auth/tokens.py). The plaintext exists exactly once, in the
IssuedApiKey returned by issue().

validate() never raises for unknown, revoked or garbage input; it answers
None and the dependency layer turns that into a 401.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from auth.models import ApiKey, ApiKeyIdentity, IssuedApiKey
from auth.store import UserStore
from auth.tokens import generate_api_key, hash_api_key, mask_secret, strip_api_key_prefix
from core.config import get_settings
from core.errors import ApiKeyLimitReached, NotFoundOrUnauthorized

logger = logging.getLogger("identityhub.apikeys")

_DISPLAY_PREFIX_LEN = 10

# Scheduler for the last-used stamp: defer(func, *args). require_api_key runs them after the endpoint.
Defer = Callable[..., None]


class ApiKeyManager:
    def __init__(self, store: UserStore, max_keys: int | None = None) -> None:
        self.store = store
        self.max_keys = get_settings().max_api_keys_per_user if max_keys is None else max_keys

    def issue(self, user_id: int, name: str) -> IssuedApiKey:
        """Create a key for user_id. Raises ApiKeyLimitReached at the per-user cap."""
        if self.store.count_active_api_keys(user_id) >= self.max_keys:
            raise ApiKeyLimitReached(f"Maximum of {self.max_keys} API keys reached. Revoke an existing key first.")
        raw_key = generate_api_key()
        record = self.store.create_api_key(
            ApiKey(
                user_id=user_id,
                name=name,
                key_hash=hash_api_key(strip_api_key_prefix(raw_key)),
                key_prefix=raw_key[:_DISPLAY_PREFIX_LEN],
            )
        )
        logger.info("API key issued: user_id=%s key_id=%s prefix=%s", user_id, record.id, record.key_prefix)
        return IssuedApiKey(plaintext_key=raw_key, record=record)

    def validate(self, presented_key: str | None, defer: Defer | None = None) -> ApiKeyIdentity | None:
        """Return the identity for a presented key, or None.

        The prefix is optional on input. On a hit, the last_used_at stamp is
        handed to ``defer`` when given (request path) and run inline otherwise.
        """
        if not presented_key or not isinstance(presented_key, str):
            return None
        secret = strip_api_key_prefix(presented_key.strip())
        if not secret:
            return None
        record = self.store.get_api_key_by_hash(hash_api_key(secret))
        if record is None:
            logger.info("API key rejected: prefix=%s", mask_secret(presented_key, keep=_DISPLAY_PREFIX_LEN))
            return None
        if defer is not None:
            defer(self._touch, record.id)
        else:
            self._touch(record.id)
        return ApiKeyIdentity(user_id=record.user_id, key_id=record.id)

    def _touch(self, key_id: int) -> None:
        # A failed stamp must never fail the request that used the key.
        try:
            self.store.update_api_key_last_used(key_id)
        except SQLAlchemyError:
            logger.exception("Failed to update last_used_at for key_id=%s", key_id)

    def list(self, user_id: int) -> list[ApiKey]:
        return self.store.list_api_keys(user_id)

    def revoke(self, key_id: int, user_id: int) -> None:
        """Delete the caller's key. Unknown and foreign keys raise the same error."""
        if not self.store.delete_api_key(key_id, user_id):
            raise NotFoundOrUnauthorized("API key not found.")
        logger.info("API key revoked: user_id=%s key_id=%s", user_id, key_id)
