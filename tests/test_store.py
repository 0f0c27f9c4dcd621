"""
tests/test_store.py -- Unit tests for UserStore (SQLAlchemy Core, in-memory SQLite).

Covers:
  - email is lowercased and UNIQUE -> EmailTaken on duplicate (any case)
  - tracker connection set / get / clear (idempotent)
  - update_tracker_tokens preserves cloud_id, site_url, connected_at
  - update_tracker_tokens does nothing for a disconnected user
  - API key ownership check on delete
"""

from __future__ import annotations

import pytest

from auth.models import ApiKey, TrackerConnection, User
from auth.store import UserStore
from core.errors import EmailTaken


def _conn(**overrides) -> TrackerConnection:
    data = dict(
        cloud_id="cloud-1",
        site_url="https://acme.atlassian.net",
        encrypted_access_token="enc-access",
        encrypted_refresh_token="enc-refresh",
        expires_at=1_700_000_000_000,
        connected_at="2026-01-01T00:00:00+00:00",
    )
    data.update(overrides)
    return TrackerConnection(**data)


class TestUsers:
    def test_create_and_lookup(self, user_store: UserStore) -> None:
        uid = user_store.create_user(User(name="Ada", email="Ada@Example.com", hashed_password="h"))
        user = user_store.get_by_id(uid)
        assert user.email == "ada@example.com"
        assert user.created_at
        assert user.tracker is None
        assert user_store.get_by_email("ADA@example.com").id == uid

    def test_duplicate_email_any_case(self, user_store: UserStore) -> None:
        user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password="h"))
        with pytest.raises(EmailTaken):
            user_store.create_user(User(name="Imposter", email="ADA@example.com", hashed_password="h"))

    def test_missing_user(self, user_store: UserStore) -> None:
        assert user_store.get_by_id(999) is None
        assert user_store.get_by_email("nobody@example.com") is None
        assert user_store.get_tracker_connection(999) is None


class TestTrackerConnection:
    def test_set_get_clear(self, user_store: UserStore) -> None:
        uid = user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password="h"))
        assert user_store.set_tracker_connection(uid, _conn()) is True
        assert user_store.get_tracker_connection(uid) == _conn()

        user_store.clear_tracker_connection(uid)
        assert user_store.get_tracker_connection(uid) is None
        user_store.clear_tracker_connection(uid)  # idempotent
        assert user_store.get_tracker_connection(uid) is None

    def test_update_tokens_preserves_binding(self, user_store: UserStore) -> None:
        uid = user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password="h"))
        user_store.set_tracker_connection(uid, _conn())
        assert user_store.update_tracker_tokens(uid, "enc-access-2", "enc-refresh-2", 1_800_000_000_000)
        assert user_store.get_tracker_connection(uid) == _conn(
            encrypted_access_token="enc-access-2",
            encrypted_refresh_token="enc-refresh-2",
            expires_at=1_800_000_000_000,
        )

    def test_update_tokens_after_disconnect_is_noop(self, user_store: UserStore) -> None:
        uid = user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password="h"))
        assert user_store.update_tracker_tokens(uid, "a", "r", 1) is False
        assert user_store.get_tracker_connection(uid) is None


class TestApiKeys:
    def test_delete_checks_owner(self, user_store: UserStore) -> None:
        record = user_store.create_api_key(ApiKey(user_id=1, name="k", key_hash="h" * 64, key_prefix="ih_abcdefg"))
        assert record.id is not None and record.created_at
        assert user_store.count_active_api_keys(1) == 1
        assert user_store.delete_api_key(record.id, user_id=2) is False
        assert user_store.delete_api_key(record.id, user_id=1) is True
        assert user_store.delete_api_key(record.id, user_id=1) is False
        assert user_store.get_api_key_by_hash("h" * 64) is None
