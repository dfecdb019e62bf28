from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    BAD_ALGORITHM = "bad_algorithm"
    BAD_SIGNATURE = "bad_signature"
    BAD_CLAIMS = "bad_claims"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of verifying a token: either ``claims`` or an ``error`` kind."""

    claims: Optional[dict[str, Any]] = None
    error: Optional[TokenErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.claims is not None

    @property
    def subject(self) -> Optional[str]:
        return self.claims.get("sub") if self.claims else None

    @classmethod
    def failure(cls, kind: TokenErrorKind) -> "DecodeResult":
        return cls(error=kind)


@dataclass
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"


class TokenCodec:
    """HS256 JWTs for access and refresh tokens, signed with separate secrets."""

    def __init__(self, settings: Settings) -> None:
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self._leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _claims_for(self, user: User, token_type: str, now: datetime, ttl: timedelta) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "username": user.username,
            "email": user.email,
            "token_type": token_type,
            # Distinguishes tokens minted for the same user within one second
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def mint_access(self, user: User, now: Optional[datetime] = None) -> tuple[str, datetime]:
        now = now or self._now()
        claims = self._claims_for(user, ACCESS, now, self.access_ttl)
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return self._encode(claims, ACCESS), expires_at

    def mint_pair(self, user: User, now: Optional[datetime] = None) -> TokenPair:
        now = now or self._now()
        access_token, access_expires_at = self.mint_access(user, now)
        refresh_claims = self._claims_for(user, REFRESH, now, self.refresh_ttl)
        return TokenPair(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=self._encode(refresh_claims, REFRESH),
            refresh_expires_at=datetime.fromtimestamp(
                refresh_claims["exp"], tz=timezone.utc
            ),
        )

    def decode_access(self, token: str, now: Optional[datetime] = None) -> DecodeResult:
        return self._decode(token, ACCESS, now)

    def decode_refresh(self, token: str, now: Optional[datetime] = None) -> DecodeResult:
        return self._decode(token, REFRESH, now)

    def _decode(self, token: str, token_type: str, now: Optional[datetime]) -> DecodeResult:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return DecodeResult.failure(TokenErrorKind.MALFORMED)
        # base64url segments are ASCII; anything else cannot be signed or compared
        if not token.isascii():
            return DecodeResult.failure(TokenErrorKind.MALFORMED)

        # Only HS256 is accepted, to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return DecodeResult.failure(TokenErrorKind.MALFORMED)
        if not isinstance(header, dict):
            return DecodeResult.failure(TokenErrorKind.MALFORMED)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return DecodeResult.failure(TokenErrorKind.BAD_ALGORITHM)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return DecodeResult.failure(TokenErrorKind.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return DecodeResult.failure(TokenErrorKind.MALFORMED)
        if not isinstance(payload, dict):
            return DecodeResult.failure(TokenErrorKind.MALFORMED)

        if payload.get("iss") != self.issuer or not payload.get("sub"):
            return DecodeResult.failure(TokenErrorKind.BAD_CLAIMS)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return DecodeResult.failure(TokenErrorKind.BAD_CLAIMS)
        if payload.get("token_type") != token_type:
            return DecodeResult.failure(TokenErrorKind.WRONG_TYPE)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return DecodeResult.failure(TokenErrorKind.BAD_CLAIMS)
        current = now or self._now()
        if exp_ts <= (current - self._leeway).timestamp():
            return DecodeResult.failure(TokenErrorKind.EXPIRED)
        return DecodeResult(claims=payload)
