"""
tests/test_apikeys.py -- Unit tests for ApiKeyManager.

Covers:
  - issue/validate round trip; prefix optional on input
  - any single-character mutation of a valid key is rejected
  - revoked, unknown and garbage keys -> None, never an exception
  - only the hash is stored; plaintext never persisted
  - last_used_at: deferred when a scheduler is given, inline otherwise,
    storage failure swallowed
  - per-user cap and ownership-checked revoke
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.apikeys import ApiKeyManager
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_api_key
from core.errors import ApiKeyLimitReached, NotFoundOrUnauthorized


@pytest.fixture
def owner(user_store: UserStore) -> int:
    return user_store.create_user(User(name="Owner", email="owner@example.com", hashed_password="x"))


@pytest.fixture
def manager(user_store: UserStore) -> ApiKeyManager:
    return ApiKeyManager(user_store, max_keys=3)


class TestIssueAndValidate:
    def test_round_trip(self, manager: ApiKeyManager, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        identity = manager.validate(issued.plaintext_key)
        assert identity is not None
        assert identity.user_id == owner
        assert identity.key_id == issued.record.id

    def test_prefix_is_optional(self, manager: ApiKeyManager, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        assert manager.validate(issued.plaintext_key[3:]) is not None

    def test_only_hash_is_stored(self, manager: ApiKeyManager, user_store: UserStore, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        stored = user_store.list_api_keys(owner)[0]
        assert stored.key_hash == hash_api_key(issued.plaintext_key[3:])
        assert issued.plaintext_key not in (stored.key_hash, stored.key_prefix)
        assert stored.key_prefix == issued.plaintext_key[:10]

    def test_single_character_mutations_rejected(self, manager: ApiKeyManager, owner: int) -> None:
        key = manager.issue(owner, "scanner").plaintext_key
        for idx in range(3, len(key), 7):
            replacement = "0" if key[idx] != "0" else "1"
            mutated = key[:idx] + replacement + key[idx + 1 :]
            assert manager.validate(mutated) is None, f"mutation at {idx} accepted"

    @pytest.mark.parametrize("garbage", [None, "", "   ", "ih_", "ih_zzz", "Bearer x", "💥" * 10])
    def test_garbage_returns_none(self, manager: ApiKeyManager, garbage) -> None:
        assert manager.validate(garbage) is None

    def test_revoked_key_rejected(self, manager: ApiKeyManager, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        manager.revoke(issued.record.id, owner)
        assert manager.validate(issued.plaintext_key) is None


class TestLastUsed:
    def test_deferred_when_scheduler_given(self, manager: ApiKeyManager, user_store: UserStore, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        defer = MagicMock()
        manager.validate(issued.plaintext_key, defer=defer)
        defer.assert_called_once()
        assert user_store.list_api_keys(owner)[0].last_used_at is None
        func, key_id = defer.call_args.args
        func(key_id)
        assert user_store.list_api_keys(owner)[0].last_used_at is not None

    def test_inline_without_scheduler(self, manager: ApiKeyManager, user_store: UserStore, owner: int) -> None:
        issued = manager.issue(owner, "scanner")
        manager.validate(issued.plaintext_key)
        assert user_store.list_api_keys(owner)[0].last_used_at is not None

    def test_storage_failure_does_not_fail_validation(self, owner: int, user_store: UserStore) -> None:
        issued = ApiKeyManager(user_store).issue(owner, "scanner")
        flaky = MagicMock(wraps=user_store)
        flaky.update_api_key_last_used.side_effect = OperationalError("UPDATE", {}, Exception("locked"))
        identity = ApiKeyManager(flaky).validate(issued.plaintext_key)
        assert identity is not None


class TestCapAndRevoke:
    def test_cap_enforced(self, manager: ApiKeyManager, owner: int) -> None:
        for i in range(3):
            manager.issue(owner, f"k{i}")
        with pytest.raises(ApiKeyLimitReached):
            manager.issue(owner, "one-too-many")

    def test_revoke_frees_a_slot(self, manager: ApiKeyManager, owner: int) -> None:
        keys = [manager.issue(owner, f"k{i}") for i in range(3)]
        manager.revoke(keys[0].record.id, owner)
        assert manager.issue(owner, "replacement").record.id is not None

    def test_revoke_foreign_and_unknown_look_the_same(
        self, manager: ApiKeyManager, user_store: UserStore, owner: int
    ) -> None:
        other = user_store.create_user(User(name="Other", email="other@example.com", hashed_password="x"))
        issued = manager.issue(owner, "scanner")
        with pytest.raises(NotFoundOrUnauthorized) as foreign:
            manager.revoke(issued.record.id, other)
        with pytest.raises(NotFoundOrUnauthorized) as unknown:
            manager.revoke(99999, owner)
        assert foreign.value.message == unknown.value.message
        assert manager.validate(issued.plaintext_key) is not None

    def test_list_is_per_user(self, manager: ApiKeyManager, user_store: UserStore, owner: int) -> None:
        other = user_store.create_user(User(name="Other", email="other@example.com", hashed_password="x"))
        manager.issue(owner, "mine")
        manager.issue(other, "theirs")
        assert [k.name for k in manager.list(owner)] == ["mine"]
