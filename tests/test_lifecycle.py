"""
tests/test_lifecycle.py -- Unit tests for TokenLifecycleManager.

Covers:
  - unexpired token: no refresh, stored token handed to the operation
  - expired token: exactly one refresh, operation runs with the new token,
    binding (cloud_id, site_url, connected_at) preserved
  - refresh response without refresh_token keeps the old one
  - refresh failure -> TrackerReauthRequired, stored connection unchanged
  - undecryptable tokens -> TrackerReauthRequired
  - no connection -> TrackerNotConnected, operation never called
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from auth.codec import SecretCodec
from auth.models import TrackerConnection, User
from auth.store import UserStore
from core.errors import TrackerNotConnected, TrackerReauthRequired, UpstreamTrackerError
from tracker.client import JiraClient, TokenSet
from tracker.lifecycle import TokenLifecycleManager

CODEC = SecretCodec("k" * 48)


@pytest.fixture
def jira() -> MagicMock:
    return MagicMock(spec=JiraClient)


@pytest.fixture
def uid(user_store: UserStore) -> int:
    return user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password="h"))


@pytest.fixture
def manager(user_store: UserStore, jira: MagicMock, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(user_store, jira, CODEC, clock=clock)


def _connect(store: UserStore, uid: int, expires_at: int, access: str = "old-at", refresh: str = "old-rt") -> None:
    store.set_tracker_connection(
        uid,
        TrackerConnection(
            cloud_id="cloud-1",
            site_url="https://acme.atlassian.net",
            encrypted_access_token=CODEC.encrypt(access),
            encrypted_refresh_token=CODEC.encrypt(refresh),
            expires_at=expires_at,
            connected_at="2026-01-01T00:00:00+00:00",
        ),
    )


def _now_ms(clock) -> int:
    return int(clock() * 1000)


class TestFreshToken:
    def test_no_refresh_when_unexpired(self, manager, user_store, uid, jira, clock) -> None:
        _connect(user_store, uid, expires_at=_now_ms(clock) + 60_000)
        op = MagicMock(return_value="result")
        assert manager.call(uid, op) == "result"
        jira.refresh.assert_not_called()
        token, connection = op.call_args.args
        assert token == "old-at"
        assert connection.cloud_id == "cloud-1"


class TestRefresh:
    def test_expired_token_refreshed_once(self, manager, user_store, uid, jira, clock) -> None:
        _connect(user_store, uid, expires_at=_now_ms(clock))  # now >= expires_at
        jira.refresh.return_value = TokenSet(access_token="new-at", refresh_token="new-rt", expires_in=3600)
        op = MagicMock(return_value="ok")

        manager.call(uid, op)

        jira.refresh.assert_called_once_with("old-rt")
        assert op.call_args.args[0] == "new-at"
        stored = user_store.get_tracker_connection(uid)
        assert CODEC.decrypt(stored.encrypted_access_token) == "new-at"
        assert CODEC.decrypt(stored.encrypted_refresh_token) == "new-rt"
        assert stored.expires_at == _now_ms(clock) + 3_600_000
        assert (stored.cloud_id, stored.site_url, stored.connected_at) == (
            "cloud-1",
            "https://acme.atlassian.net",
            "2026-01-01T00:00:00+00:00",
        )

    def test_second_call_does_not_refresh_again(self, manager, user_store, uid, jira, clock) -> None:
        _connect(user_store, uid, expires_at=_now_ms(clock) - 1)
        jira.refresh.return_value = TokenSet(access_token="new-at", refresh_token="new-rt", expires_in=3600)
        manager.call(uid, MagicMock())
        manager.call(uid, MagicMock())
        assert jira.refresh.call_count == 1

    def test_missing_refresh_token_keeps_old(self, manager, user_store, uid, jira, clock) -> None:
        _connect(user_store, uid, expires_at=0)
        jira.refresh.return_value = TokenSet(access_token="new-at", refresh_token=None, expires_in=3600)
        manager.access_token_for(uid)
        stored = user_store.get_tracker_connection(uid)
        assert CODEC.decrypt(stored.encrypted_refresh_token) == "old-rt"

    def test_refresh_failure_requires_reauth(self, manager, user_store, uid, jira) -> None:
        _connect(user_store, uid, expires_at=0)
        before = user_store.get_tracker_connection(uid)
        jira.refresh.side_effect = UpstreamTrackerError("invalid_grant", remote_status=400)
        op = MagicMock()
        with pytest.raises(TrackerReauthRequired):
            manager.call(uid, op)
        op.assert_not_called()
        assert jira.refresh.call_count == 1
        assert user_store.get_tracker_connection(uid) == before


class TestFailures:
    def test_not_connected(self, manager, uid) -> None:
        op = MagicMock()
        with pytest.raises(TrackerNotConnected):
            manager.call(uid, op)
        op.assert_not_called()

    def test_undecryptable_tokens(self, manager, user_store, uid, clock) -> None:
        user_store.set_tracker_connection(
            uid,
            TrackerConnection(
                cloud_id="cloud-1",
                site_url="https://acme.atlassian.net",
                encrypted_access_token=SecretCodec("z" * 48).encrypt("at"),
                encrypted_refresh_token=SecretCodec("z" * 48).encrypt("rt"),
                expires_at=_now_ms(clock) + 60_000,
                connected_at="2026-01-01T00:00:00+00:00",
            ),
        )
        with pytest.raises(TrackerReauthRequired):
            manager.access_token_for(uid)
