"""Unit tests for the JWT codec used for access and refresh tokens."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from tasktrack.config import Settings
from tasktrack.service.tokens import ACCESS, REFRESH, TokenCodec, TokenErrorKind
from tasktrack.storage.models import User

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _settings(**overrides) -> Settings:
    values = {
        "jwt_secret": "access-secret-for-codec-tests-0123456789abcdef",
        "jwt_refresh_secret": "refresh-secret-for-codec-tests-0123456789abcdef",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def codec():
    return TokenCodec(_settings())


@pytest.fixture
def user():
    return User(id="user-1", username="alice", email="alice@example.com", role_ids=["role-1"])


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestMinting:
    def test_pair_carries_identity_claims(self, codec, user):
        pair = codec.mint_pair(user, NOW)

        access = codec.decode_access(pair.access_token, NOW)
        refresh = codec.decode_refresh(pair.refresh_token, NOW)

        assert access.ok and refresh.ok
        assert access.subject == user.id
        assert refresh.subject == user.id
        assert access.claims["iss"] == "jira-clone"
        assert access.claims["aud"] == "jira-clone-users"
        assert access.claims["username"] == "alice"
        assert access.claims["token_type"] == ACCESS
        assert refresh.claims["token_type"] == REFRESH

    def test_expiry_windows_follow_settings(self, codec, user):
        pair = codec.mint_pair(user, NOW)

        assert pair.access_expires_at == NOW + timedelta(minutes=15)
        assert pair.refresh_expires_at == NOW + timedelta(days=7)
        assert pair.token_type == "bearer"

    def test_tokens_minted_in_same_instant_differ(self, codec, user):
        first = codec.mint_pair(user, NOW)
        second = codec.mint_pair(user, NOW)

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_mint_access_returns_token_and_expiry(self, codec, user):
        token, expires_at = codec.mint_access(user, NOW)

        assert codec.decode_access(token, NOW).subject == user.id
        assert expires_at == NOW + timedelta(minutes=15)


class TestDecoding:
    """Decoding reports failures as values instead of raising."""

    def test_expired_token(self, codec, user):
        pair = codec.mint_pair(user, NOW)

        result = codec.decode_refresh(pair.refresh_token, NOW + timedelta(days=7, seconds=1))

        assert not result.ok
        assert result.error is TokenErrorKind.EXPIRED
        assert result.subject is None

    def test_token_is_expired_exactly_at_exp(self, codec, user):
        pair = codec.mint_pair(user, NOW)

        result = codec.decode_access(pair.access_token, pair.access_expires_at)

        assert result.error is TokenErrorKind.EXPIRED

    def test_clock_skew_leeway(self, user):
        codec = TokenCodec(_settings(jwt_clock_skew_seconds=30))
        pair = codec.mint_pair(user, NOW)

        result = codec.decode_access(pair.access_token, pair.access_expires_at + timedelta(seconds=10))

        assert result.ok

    def test_access_token_rejected_as_refresh(self, codec, user):
        pair = codec.mint_pair(user, NOW)

        # Separate secrets mean the signature check fails first
        assert codec.decode_refresh(pair.access_token, NOW).error is TokenErrorKind.BAD_SIGNATURE
        assert codec.decode_access(pair.refresh_token, NOW).error is TokenErrorKind.BAD_SIGNATURE

    def test_wrong_type_with_shared_secret(self, user):
        shared = "shared-secret-for-both-token-types-0123456789"
        codec = TokenCodec(_settings(jwt_secret=shared, jwt_refresh_secret=shared))
        pair = codec.mint_pair(user, NOW)

        assert codec.decode_refresh(pair.access_token, NOW).error is TokenErrorKind.WRONG_TYPE

    def test_tampered_payload(self, codec, user):
        header, _, signature = codec.mint_pair(user, NOW).access_token.split(".")
        forged = _b64({"sub": "admin", "iss": "jira-clone", "aud": "jira-clone-users"})

        result = codec.decode_access(f"{header}.{forged}.{signature}", NOW)

        assert result.error is TokenErrorKind.BAD_SIGNATURE

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed(self, codec, token):
        assert codec.decode_access(token, NOW).error is TokenErrorKind.MALFORMED

    def test_non_ascii_signature_is_malformed(self, codec, user):
        header, payload, _ = codec.mint_pair(user, NOW).refresh_token.split(".")

        result = codec.decode_refresh(f"{header}.{payload}.sig\u00e9", NOW)

        assert result.error is TokenErrorKind.MALFORMED

    def test_non_ascii_payload_is_malformed(self, codec, user):
        header, _, signature = codec.mint_pair(user, NOW).access_token.split(".")

        result = codec.decode_access(f"{header}.\u00fc\u00f1\u00ee.{signature}", NOW)

        assert result.error is TokenErrorKind.MALFORMED

    def test_none_algorithm_rejected(self, codec):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64({"sub": "user-1", "iss": "jira-clone", "aud": "jira-clone-users"})

        result = codec.decode_access(f"{header}.{payload}.", NOW)

        assert result.error is TokenErrorKind.BAD_ALGORITHM

    def test_foreign_issuer(self, user):
        secrets = {
            "jwt_secret": "access-secret-for-codec-tests-0123456789abcdef",
            "jwt_refresh_secret": "refresh-secret-for-codec-tests-0123456789abcdef",
        }
        foreign = TokenCodec(_settings(jwt_issuer="someone-else", **secrets))
        local = TokenCodec(_settings(**secrets))

        token, _ = foreign.mint_access(user, NOW)

        assert local.decode_access(token, NOW).error is TokenErrorKind.BAD_CLAIMS

    def test_audience_list_accepted(self, codec):
        payload = {
            "iss": "jira-clone",
            "aud": ["other", "jira-clone-users"],
            "sub": "user-1",
            "token_type": ACCESS,
            "exp": int((NOW + timedelta(minutes=5)).timestamp()),
        }
        token = codec._encode(payload, ACCESS)

        assert codec.decode_access(token, NOW).subject == "user-1"

    def test_missing_subject(self, codec):
        payload = {
            "iss": "jira-clone",
            "aud": "jira-clone-users",
            "token_type": ACCESS,
            "exp": int((NOW + timedelta(minutes=5)).timestamp()),
        }
        token = codec._encode(payload, ACCESS)

        assert codec.decode_access(token, NOW).error is TokenErrorKind.BAD_CLAIMS
