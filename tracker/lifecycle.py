"""
tracker/lifecycle.py -- Keep a user's Jira access token usable.

Every tracker-bound call goes through TokenLifecycleManager.call(), which
loads the stored connection, decrypts it, refreshes it if expired, and then
hands a known-fresh token to the operation. Refresh is proactive: it happens
before the call, never as a retry after a 401.

Failure mapping:
  no connection              -> TrackerNotConnected
  undecryptable ciphertext   -> TrackerReauthRequired (SECRET_KEY rotated / tampering)
  refresh rejected or failed -> TrackerReauthRequired (no automatic retry)

There is no lock around refresh. Two concurrent refreshes for the same user
both write; the last write wins.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from auth.codec import SecretCodec
from auth.models import TrackerConnection
from auth.store import UserStore
from core.errors import CorruptedSecret, TrackerNotConnected, TrackerReauthRequired, UpstreamTrackerError
from tracker.client import JiraClient

logger = logging.getLogger("identityhub.tracker")

T = TypeVar("T")


class TokenLifecycleManager:
    def __init__(
        self,
        store: UserStore,
        client: JiraClient,
        codec: SecretCodec,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.client = client
        self.codec = codec
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def access_token_for(self, user_id: int) -> tuple[str, TrackerConnection]:
        """Return a usable access token and the connection it belongs to."""
        connection = self.store.get_tracker_connection(user_id)
        if connection is None:
            raise TrackerNotConnected()

        try:
            access_token = self.codec.decrypt(connection.encrypted_access_token)
            refresh_token = self.codec.decrypt(connection.encrypted_refresh_token)
        except CorruptedSecret as exc:
            logger.warning("Stored Jira tokens undecryptable for user_id=%s", user_id)
            raise TrackerReauthRequired() from exc

        if self._now_ms() < connection.expires_at:
            return access_token, connection

        logger.info("Refreshing Jira token for user_id=%s", user_id)
        try:
            tokens = self.client.refresh(refresh_token)
        except UpstreamTrackerError as exc:
            logger.warning("Jira token refresh failed for user_id=%s: %s", user_id, exc.message)
            raise TrackerReauthRequired() from exc

        new_refresh = tokens.refresh_token or refresh_token
        connection.encrypted_access_token = self.codec.encrypt(tokens.access_token)
        connection.encrypted_refresh_token = self.codec.encrypt(new_refresh)
        connection.expires_at = self._now_ms() + tokens.expires_in * 1000
        if not self.store.update_tracker_tokens(
            user_id,
            connection.encrypted_access_token,
            connection.encrypted_refresh_token,
            connection.expires_at,
        ):
            # Disconnected while the refresh was in flight.
            raise TrackerNotConnected()
        return tokens.access_token, connection

    def call(self, user_id: int, operation: Callable[[str, TrackerConnection], T]) -> T:
        """Run ``operation(access_token, connection)`` with a freshly checked token."""
        access_token, connection = self.access_token_for(user_id)
        return operation(access_token, connection)
