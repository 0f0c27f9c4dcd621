"""
tracker/handshake.py -- The Jira connect / disconnect flow.

Connection states per user:

    Disconnected --start()--> AwaitingCallback --complete()--> Connected
    Connected --disconnect()--> Disconnected

complete() order matters: the CSRF state is consumed before the
authorization code is exchanged, so a forged callback never reaches
Atlassian. Nothing is written to the store until the exchange and the
workspace lookup have both succeeded; any failure leaves the previous
connection (or its absence) untouched.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from auth.codec import SecretCodec
from auth.ledger import OAuthStateLedger
from auth.models import TrackerConnection
from auth.store import UserStore
from core.errors import CsrfValidationFailure, HandshakeFailure, UpstreamTrackerError
from tracker.client import JiraClient

logger = logging.getLogger("identityhub.handshake")


class OAuthHandshake:
    def __init__(
        self,
        store: UserStore,
        ledger: OAuthStateLedger,
        client: JiraClient,
        codec: SecretCodec,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.client = client
        self.codec = codec
        self._clock = clock

    def start(self, user_id: int) -> str:
        """Return the Atlassian authorization URL carrying a fresh state."""
        state = self.ledger.create(user_id)
        return self.client.build_authorization_url(state)

    def complete(self, user_id: int, code: str | None, state: str | None) -> TrackerConnection:
        if not code:
            raise HandshakeFailure("Authorization code missing")

        if not self.ledger.validate_and_consume(user_id, state or ""):
            self.ledger.invalidate(user_id)
            raise CsrfValidationFailure()

        try:
            tokens = self.client.exchange_code(code)
        except UpstreamTrackerError as exc:
            raise UpstreamTrackerError(
                f"Failed to exchange authorization code: {exc.message}",
                remote_status=exc.remote_status,
                detail=exc.detail,
            ) from exc
        if not tokens.refresh_token:
            raise HandshakeFailure("Jira did not return a refresh token. Check the offline_access scope.")

        workspace = self.client.resolve_workspace(tokens.access_token)

        now = self._clock()
        connection = TrackerConnection(
            cloud_id=workspace.cloud_id,
            site_url=workspace.site_url,
            encrypted_access_token=self.codec.encrypt(tokens.access_token),
            encrypted_refresh_token=self.codec.encrypt(tokens.refresh_token),
            expires_at=int(now * 1000) + tokens.expires_in * 1000,
            connected_at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        )
        self.store.set_tracker_connection(user_id, connection)
        logger.info("Jira connected: user_id=%s cloud_id=%s", user_id, workspace.cloud_id)
        return connection

    def disconnect(self, user_id: int) -> None:
        self.store.clear_tracker_connection(user_id)
        logger.info("Jira disconnected: user_id=%s", user_id)

    def status(self, user_id: int) -> dict:
        connection = self.store.get_tracker_connection(user_id)
        if connection is None:
            return {"is_connected": False, "connected_at": None, "site_url": None}
        return {
            "is_connected": True,
            "connected_at": connection.connected_at,
            "site_url": connection.site_url,
        }
