"""
tests/test_tokens.py -- Unit tests for auth/tokens.py primitives.

Covers:
  - bcrypt hash/verify, malformed hash treated as mismatch
  - authenticate_user: success, wrong password, unknown email (dummy hash path)
  - session JWT: claims round trip, expired -> None (INFO), tampered -> None (WARNING)
  - API key format and HMAC hashing
"""

from __future__ import annotations

import logging
import re
from unittest.mock import patch

from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    _DUMMY_HASH,
    API_KEY_PREFIX,
    authenticate_user,
    generate_api_key,
    hash_api_key,
    hash_password,
    issue_session_token,
    mask_secret,
    strip_api_key_prefix,
    verify_password,
    verify_session_token,
)


def _user(uid: int = 7) -> User:
    return User(id=uid, name="Ada", email="ada@example.com", hashed_password="x")


class TestPasswords:
    def test_hash_verifies(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_malformed_hash_is_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAuthenticateUser:
    def test_success_and_failures(self, user_store: UserStore) -> None:
        user_store.create_user(User(name="Ada", email="ada@example.com", hashed_password=hash_password("pw123456")))
        assert authenticate_user(user_store, "ada@example.com", "pw123456").email == "ada@example.com"
        assert authenticate_user(user_store, "ADA@example.com", "pw123456") is not None
        assert authenticate_user(user_store, "ada@example.com", "nope") is None

    def test_unknown_email_still_runs_bcrypt(self, user_store: UserStore) -> None:
        """Timing equalization: the dummy hash is checked when the account is absent."""
        with patch("auth.tokens.verify_password", wraps=verify_password) as spy:
            assert authenticate_user(user_store, "ghost@example.com", "pw") is None
        spy.assert_called_once_with("pw", _DUMMY_HASH)


class TestSessionTokens:
    def test_claims_round_trip(self) -> None:
        identity = verify_session_token(issue_session_token(_user(42)))
        assert identity is not None
        assert identity.user_id == 42
        assert identity.name == "Ada"
        assert identity.email == "ada@example.com"

    def test_expired_token_rejected_and_logged_at_info(self, caplog) -> None:
        token = issue_session_token(_user(), expire_seconds=-10)
        with caplog.at_level(logging.INFO, logger="identityhub.auth"):
            assert verify_session_token(token) is None
        assert any(r.levelno == logging.INFO and "expired" in r.message for r in caplog.records)

    def test_tampered_token_rejected_and_logged_at_warning(self, caplog) -> None:
        token = issue_session_token(_user())
        header, payload, signature = token.split(".")
        forged = ".".join([header, payload, signature[::-1]])
        with caplog.at_level(logging.INFO, logger="identityhub.auth"):
            assert verify_session_token(forged) is None
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_garbage_token_rejected(self) -> None:
        assert verify_session_token("not.a.jwt") is None
        assert verify_session_token("") is None


class TestApiKeyPrimitives:
    def test_generated_key_format(self) -> None:
        key = generate_api_key()
        assert re.fullmatch(r"ih_[0-9a-f]{64}", key)
        assert generate_api_key() != key

    def test_hash_is_deterministic_hex(self) -> None:
        assert hash_api_key("abc") == hash_api_key("abc")
        assert re.fullmatch(r"[0-9a-f]{64}", hash_api_key("abc"))
        assert hash_api_key("abc") != hash_api_key("abd")

    def test_strip_prefix_is_optional(self) -> None:
        assert strip_api_key_prefix(f"{API_KEY_PREFIX}deadbeef") == "deadbeef"
        assert strip_api_key_prefix("deadbeef") == "deadbeef"

    def test_mask_secret(self) -> None:
        assert mask_secret("abcdef123456") == "abcdef****"
        assert mask_secret("") == ""
