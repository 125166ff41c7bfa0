"""
Security Tests
==============

Tests for webhook secret extraction and session token decoding.
"""

import uuid
from datetime import timedelta

import pytest

from app.core.security import (
    create_access_token,
    decode_token,
    extract_webhook_token,
    looks_like_jwt,
    secrets_match,
)


class TestExtractWebhookToken:
    """Priority: query secret, signature header, then Authorization."""

    def test_query_secret_wins(self):
        token = extract_webhook_token(
            query_secret="from-query",
            signature_header="from-header",
            authorization="Bearer from-auth",
        )

        assert token == "from-query"

    def test_signature_header_before_authorization(self):
        token = extract_webhook_token(
            query_secret=None,
            signature_header=" from-header ",
            authorization="Bearer from-auth",
        )

        assert token == "from-header"

    def test_bearer_token(self):
        token = extract_webhook_token(
            query_secret=None, signature_header=None, authorization="Bearer abc123"
        )

        assert token == "abc123"

    def test_raw_authorization(self):
        token = extract_webhook_token(
            query_secret=None, signature_header=None, authorization="abc123"
        )

        assert token == "abc123"

    def test_jwt_bearer_is_ignored(self):
        token = extract_webhook_token(
            query_secret=None,
            signature_header=None,
            authorization="Bearer aaa.bbb.ccc",
        )

        assert token is None

    def test_legacy_locations_skipped_when_disabled(self):
        token = extract_webhook_token(
            query_secret="from-query",
            signature_header="from-header",
            authorization=None,
            allow_legacy=False,
        )

        assert token is None

    def test_nothing_presented(self):
        token = extract_webhook_token(query_secret=None, signature_header=None, authorization=None)

        assert token is None


class TestSecretHelpers:

    @pytest.mark.parametrize(
        "value, expected",
        [("aaa.bbb.ccc", True), ("plain-secret", False), ("a.b", False), ("a.b.c.d", False)],
    )
    def test_looks_like_jwt(self, value, expected):
        assert looks_like_jwt(value) is expected

    def test_secrets_match(self):
        assert secrets_match("s3cret", "s3cret") is True
        assert secrets_match("s3cret", "other") is False
        assert secrets_match(None, "s3cret") is False
        # An unconfigured secret never matches
        assert secrets_match("", "") is False


class TestSessionTokens:

    def test_round_trip(self):
        user_id = str(uuid.uuid4())

        payload = decode_token(create_access_token({"sub": user_id}))

        assert payload["sub"] == user_id
        assert payload["type"] == "access"

    def test_expired_token(self):
        token = create_access_token({"sub": "x"}, expires_delta=timedelta(seconds=-1))

        assert decode_token(token) is None

    def test_audience_is_not_enforced(self):
        token = create_access_token({"sub": "x", "aud": "authenticated"})

        assert decode_token(token)["aud"] == "authenticated"

    def test_garbage(self):
        assert decode_token("not-a-token") is None
