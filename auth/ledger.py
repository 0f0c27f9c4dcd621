"""
auth/ledger.py -- Durable, single-use OAuth CSRF state tokens.

Protocol:
  create(user_id)                 -> replaces any live state for the user
  validate_and_consume(uid, s)    -> True exactly once, and only before expiry
  invalidate(user_id)             -> drops leftovers after a failed callback
  purge_expired()                 -> passive garbage collection

Atomicity:
  create() runs DELETE + INSERT inside one engine.begin() transaction, so a
  user never holds two live states.

  validate_and_consume() is a single filtered DELETE. rowcount == 1 is the
  only success signal; two racing callbacks carrying the same state cannot
  both see rowcount == 1. Expiry is checked in the same WHERE clause, not by
  relying on the purge loop.

The specific failure cause (absent / mismatch / expired) is determined by a
read *after* the delete and is only logged. Callers get a plain False.

Time comes from an injectable clock (epoch seconds) so tests never sleep.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable

from sqlalchemy import Column, Float, Integer, MetaData, String, Table

from auth.models import OAuthState
from auth.store import make_engine
from auth.tokens import mask_secret
from core.config import get_settings

logger = logging.getLogger("identityhub.ledger")

_metadata = MetaData()

_oauth_states = Table(
    "oauth_states",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("state", String(128), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)


class OAuthStateLedger:
    """SQLite-backed ledger of outstanding OAuth authorization requests.

    Usage:
        ledger = OAuthStateLedger()
        state = ledger.create(user_id)
        ...
        if not ledger.validate_and_consume(user_id, state_from_callback):
            ledger.invalidate(user_id)
    """

    def __init__(
        self,
        db_url: str | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self.engine = make_engine(db_url or settings.database_url)
        self.ttl_seconds = settings.oauth_state_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        _metadata.create_all(self.engine)

    def create(self, user_id: int) -> str:
        """Issue a fresh state for the user, invalidating any previous one.

        secrets.token_hex(32) gives 256 bits of entropy.
        """
        state = secrets.token_hex(32)
        now = self._clock()
        with self.engine.begin() as conn:
            conn.execute(_oauth_states.delete().where(_oauth_states.c.user_id == user_id))
            conn.execute(
                _oauth_states.insert().values(
                    user_id=user_id,
                    state=state,
                    created_at=now,
                    expires_at=now + self.ttl_seconds,
                )
            )
        logger.info("OAuth state issued: user_id=%s state=%s", user_id, mask_secret(state))
        return state

    def validate_and_consume(self, user_id: int, state: str) -> bool:
        """Return True iff a matching unexpired state existed; it is deleted either way."""
        if not state:
            logger.warning("OAuth state rejected: user_id=%s cause=absent", user_id)
            return False
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                _oauth_states.delete().where(
                    (_oauth_states.c.user_id == user_id)
                    & (_oauth_states.c.state == state)
                    & (_oauth_states.c.expires_at > now)
                )
            )
        if result.rowcount == 1:
            return True
        logger.warning(
            "OAuth state rejected: user_id=%s state=%s cause=%s",
            user_id,
            mask_secret(state),
            self._failure_cause(user_id, state, now),
        )
        return False

    def _failure_cause(self, user_id: int, state: str, now: float) -> str:
        with self.engine.connect() as conn:
            rows = conn.execute(_oauth_states.select().where(_oauth_states.c.user_id == user_id)).fetchall()
        if not rows:
            return "absent"
        for row in rows:
            if row.state == state and row.expires_at <= now:
                return "expired"
        return "mismatch"

    def invalidate(self, user_id: int) -> int:
        """Delete every state the user holds. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_oauth_states.delete().where(_oauth_states.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete states past their expiry. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_oauth_states.delete().where(_oauth_states.c.expires_at <= self._clock()))
            conn.commit()
        return result.rowcount

    def get_for_user(self, user_id: int) -> list[OAuthState]:
        """Return the user's outstanding states (expired ones included)."""
        with self.engine.connect() as conn:
            rows = conn.execute(_oauth_states.select().where(_oauth_states.c.user_id == user_id)).fetchall()
        return [
            OAuthState(
                id=r.id,
                user_id=r.user_id,
                state=r.state,
                created_at=r.created_at,
                expires_at=r.expires_at,
            )
            for r in rows
        ]

    def close(self) -> None:
        self.engine.dispose()
