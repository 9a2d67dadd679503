"""Tests for bearer token helpers."""

from datetime import timedelta

import pytest
from fastapi import HTTPException

from relaygate.core.security import create_access_token, verify_token

from conftest import TEST_SECRET_KEY


class TestTokens:
    def test_round_trip(self):
        token = create_access_token({"sub": "user-1"}, TEST_SECRET_KEY)

        assert verify_token(token, TEST_SECRET_KEY)["sub"] == "user-1"

    def test_wrong_key(self):
        token = create_access_token({"sub": "user-1"}, TEST_SECRET_KEY)

        with pytest.raises(HTTPException) as exc_info:
            verify_token(token, "another-secret-key-that-is-long-enough-123")

        assert exc_info.value.status_code == 401

    def test_expired(self):
        token = create_access_token(
            {"sub": "user-1"}, TEST_SECRET_KEY, expires_delta=timedelta(seconds=-5)
        )

        with pytest.raises(HTTPException):
            verify_token(token, TEST_SECRET_KEY)
