"""Unit tests for access token signing and verification."""

import json
import time
from datetime import datetime, timezone

import pytest

from sessionguard.config import Settings
from sessionguard.service.access_tokens import AccessTokenSigner, _encode_segment


@pytest.fixture
def signer(settings):
    return AccessTokenSigner(settings)


def _forge(signer, payload, alg="HS256"):
    header = _encode_segment(json.dumps({"alg": alg, "typ": "JWT"}).encode())
    body = _encode_segment(json.dumps(payload).encode())
    signing_input = f"{header}.{body}"
    return f"{signing_input}.{signer._sign(signing_input)}"


class TestAccessTokenSigner:
    """Tests for HS256 access tokens."""

    def test_issued_token_decodes(self, signer, settings):
        """Test that a freshly issued token verifies and carries its claims."""
        token, expires_at = signer.issue("user-1", "session-1")
        claims = signer.decode(token)

        assert claims is not None
        assert claims["sub"] == "user-1"
        assert claims["sid"] == "session-1"
        assert claims["token_type"] == "access"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert expires_at > datetime.now(timezone.utc)

    def test_each_token_gets_unique_jti(self, signer):
        first, _ = signer.issue("user-1", "session-1")
        second, _ = signer.issue("user-1", "session-1")

        assert signer.decode(first)["jti"] != signer.decode(second)["jti"]

    def test_tampered_signature_rejected(self, signer):
        token, _ = signer.issue("user-1", "session-1")
        header, payload, sig = token.split(".")
        tampered = f"{header}.{payload}.{sig[:-2]}xx"

        assert signer.decode(tampered) is None

    def test_foreign_secret_rejected(self, signer, settings):
        """Test that a token signed with another secret does not verify."""
        other = AccessTokenSigner(
            settings.model_copy(update={"jwt_secret": "another-secret-entirely-0123456789"})
        )
        token, _ = other.issue("user-1", "session-1")

        assert signer.decode(token) is None

    def test_wrong_audience_rejected(self, signer):
        now = int(time.time())
        token = _forge(
            signer,
            {
                "iss": signer.settings.jwt_issuer,
                "aud": "someone-else",
                "sub": "user-1",
                "sid": "session-1",
                "token_type": "access",
                "exp": now + 600,
            },
        )

        assert signer.decode(token) is None

    def test_refresh_type_rejected(self, signer):
        now = int(time.time())
        token = _forge(
            signer,
            {
                "iss": signer.settings.jwt_issuer,
                "aud": signer.settings.jwt_audience,
                "sub": "user-1",
                "sid": "session-1",
                "token_type": "refresh",
                "exp": now + 600,
            },
        )

        assert signer.decode(token) is None

    def test_non_hs256_header_rejected(self, signer):
        token = _forge(signer, {"exp": int(time.time()) + 600}, alg="none")

        assert signer.decode(token) is None

    def test_expired_token_rejected(self, signer):
        """Test that expiry beyond the clock skew allowance fails verification."""
        token = _forge(
            signer,
            {
                "iss": signer.settings.jwt_issuer,
                "aud": signer.settings.jwt_audience,
                "sub": "user-1",
                "sid": "session-1",
                "token_type": "access",
                "exp": int(time.time()) - 120,
            },
        )

        assert signer.decode(token) is None

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, signer, garbage):
        assert signer.decode(garbage) is None

    def test_expiry_of_reads_unverified_exp(self, signer):
        """Test that the expiry can be read even from an expired token."""
        past = int(time.time()) - 3600
        token = _forge(signer, {"exp": past})

        assert AccessTokenSigner.expiry_of(token) == datetime.fromtimestamp(past, tz=timezone.utc)
        assert AccessTokenSigner.expiry_of("garbage") is None


def test_ttl_follows_settings():
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_expires_in="5m",
    )
    before = datetime.now(timezone.utc)
    _, expires_at = AccessTokenSigner(settings).issue("user-1", "session-1")

    delta = (expires_at - before).total_seconds()
    assert 240 <= delta <= 301
