from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from sessionguard.config import Settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenSigner:
    """Mint and verify short-lived HS256 access tokens.

    Access tokens are never persisted; the only state kept for them is a
    blacklist entry when a user logs out before the token expires.
    """

    def __init__(self, settings: Settings, *, clock_skew_seconds: int = 30) -> None:
        self.settings = settings
        self._leeway = clock_skew_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue(self, user_id: str, session_id: str) -> Tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.settings.access_token_expires_in)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return token, datetime.fromtimestamp(payload["exp"], tz=timezone.utc)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for anything forged, foreign, or expired."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("access_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "access_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("access_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway:
            return None
        return payload

    @staticmethod
    def expiry_of(token: str) -> Optional[datetime]:
        """Read ``exp`` without verifying, so even an expired token can be blacklisted."""
        try:
            payload = json.loads(_decode_segment(token.split(".")[1]))
            return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
