"""Unit tests for bearer token issuance."""

import logging

import pytest

from postgres_mcp.utils.tokens import TokenIssuer


@pytest.fixture
def issuer(clock):
    return TokenIssuer(expires_in=3600, clock=clock)


class TestTokenIssuer:
    """Tests for TokenIssuer."""

    def test_issue_returns_bearer_token(self, issuer):
        token = issuer.issue("client-1")
        assert token.token_type == "Bearer"
        assert token.expires_in == 3600
        assert token.client_id == "client-1"
        assert token.to_response() == {
            "access_token": token.access_token,
            "token_type": "Bearer",
            "expires_in": 3600,
        }

    def test_tokens_are_unique(self, issuer):
        tokens = {issuer.issue("client-1").access_token for _ in range(50)}
        assert len(tokens) == 50

    def test_issued_token_is_valid(self, issuer):
        token = issuer.issue("client-1")
        assert issuer.is_valid(token.access_token) is True

    def test_unknown_and_empty_tokens_are_invalid(self, issuer):
        assert issuer.is_valid("made-up") is False
        assert issuer.is_valid("") is False
        assert issuer.is_valid(None) is False

    def test_token_expires(self, issuer, clock):
        token = issuer.issue("client-1")
        clock.advance(3599)
        assert issuer.is_valid(token.access_token) is True
        clock.advance(1)
        assert issuer.is_valid(token.access_token) is False

    def test_raw_token_not_stored(self, issuer):
        token = issuer.issue("client-1")
        assert token.access_token not in issuer._issued

    def test_full_token_never_logged(self, issuer, caplog):
        with caplog.at_level(logging.DEBUG, logger="postgres-mcp"):
            token = issuer.issue("client-1")
        assert token.access_token not in caplog.text
        assert token.access_token[:8] in caplog.text
