from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from levelup.config import Settings
from levelup.logging import get_logger
from levelup.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
EMAIL_VERIFICATION = "email_verification"


def token_fingerprint(token: str) -> str:
    """Stable digest of a token string; ledgers and blacklists store this, never the token."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    token_type: str
    jti: str
    expires_at: datetime
    # expires_at plus the clock-skew leeway: the last moment verify() accepts the token
    usable_until: datetime
    email: Optional[str] = None
    payload: dict = field(default_factory=dict, compare=False)

    def remaining_lifetime(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return max(self.usable_until - now, timedelta(0))


class TokenIssuer:
    """Signs and verifies HS256 JWTs.

    Access, refresh and email-verification tokens each use their own secret
    and lifetime, so a token of one kind never verifies as another. Issuing a
    token has no side effects; ledger and blacklist bookkeeping belong to the
    caller.
    """

    def __init__(self, settings: Settings, *, clock_skew_leeway: int = 120) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_access_secret,
            REFRESH: settings.jwt_refresh_secret,
            EMAIL_VERIFICATION: settings.email_verification_secret,
        }
        missing = [kind for kind, secret in self._secrets.items() if not secret]
        if missing:
            raise RuntimeError(f"token signing secrets missing for: {', '.join(missing)}")
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
            EMAIL_VERIFICATION: timedelta(hours=settings.email_verification_ttl_hours),
        }
        self._clock_skew_leeway = timedelta(seconds=clock_skew_leeway)

    @property
    def access_token_ttl_seconds(self) -> int:
        return int(self._ttls[ACCESS].total_seconds())

    def ttl_for(self, token_type: str) -> timedelta:
        return self._ttls[token_type]

    def issue_access_token(self, user_id: str) -> str:
        return self._issue(ACCESS, user_id)

    def issue_refresh_token(self, user_id: str) -> str:
        return self._issue(REFRESH, user_id)

    def issue_email_verification_token(self, user_id: str, email: str) -> str:
        return self._issue(EMAIL_VERIFICATION, user_id, email=email)

    def _issue(self, token_type: str, user_id: str, **extra: Any) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": token_type,
            # unique per token so two tokens minted in the same second differ
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[token_type]).timestamp()),
            **extra,
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    def verify(self, token: str, token_type: str) -> TokenClaims:
        """Return the claims of a valid token of ``token_type``.

        Raises:
            TokenExpiredError: signature is valid but the token is past exp
            TokenInvalidError: anything else wrong with the token
        """
        payload = self._decode_jwt(token, self._secrets[token_type])
        if payload is None or payload.get("token_type") != token_type:
            raise TokenInvalidError(_INVALID_MESSAGES[token_type])
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError(_INVALID_MESSAGES[token_type])
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub") or not payload.get("jti"):
            raise TokenInvalidError(_INVALID_MESSAGES[token_type])
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError(_INVALID_MESSAGES[token_type])
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError()
        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        return TokenClaims(
            user_id=str(payload["sub"]),
            token_type=token_type,
            jti=str(payload["jti"]),
            expires_at=expires_at,
            usable_until=expires_at + self._clock_skew_leeway,
            email=payload.get("email"),
            payload=payload,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None


_INVALID_MESSAGES = {
    ACCESS: "Token is not valid",
    REFRESH: "Invalid refresh token",
    EMAIL_VERIFICATION: "Invalid or expired verification token",
}
