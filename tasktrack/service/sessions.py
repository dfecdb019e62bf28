from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, NamedTuple, Optional, Protocol, Tuple, TypeVar

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.account_guard import AccountGuard
from tasktrack.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidTokenError,
    MissingTokenError,
    ServerError,
    TokenAlreadyRotatedError,
    UserExistsError,
)
from tasktrack.service.passwords import CredentialVerifier
from tasktrack.service.retry import retry_on_rotation_conflict
from tasktrack.service.tokens import DecodeResult, TokenCodec, TokenErrorKind, TokenPair
from tasktrack.service.validation import (
    normalize_email,
    validate_name,
    validate_password,
    validate_username,
)
from tasktrack.storage.errors import ConstraintViolation, DuplicateTokenError
from tasktrack.storage.models import RefreshTokenRecord, Role, User

logger = get_logger(__name__)

T = TypeVar("T")

# Fresh pairs minted after a token string collision before giving up
MAX_TOKEN_COLLISION_RETRIES = 3


class RotationTransaction(Protocol):
    def revoke_if_live(self, record_id: str, now: Optional[datetime] = None) -> bool: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...


class SessionStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        role_ids: Optional[List[str]] = None,
        is_active: bool = True,
        credential: Optional[Tuple[str, str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def find_refresh_token(
        self,
        token: str,
        *,
        user_id: Optional[str] = None,
        revoked: Optional[bool] = None,
    ) -> Optional[RefreshTokenRecord]: ...

    def find_successor(self, record_id: str) -> Optional[RefreshTokenRecord]: ...

    def find_latest_live_refresh_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(
        self, record_id: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def with_transaction(self, fn: Callable[[RotationTransaction], T]) -> T: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    email: str
    role_ids: List[str] = field(default_factory=list)


class SessionResult(NamedTuple):
    user: User
    tokens: TokenPair
    # False when the grace window answered with an access token only
    rotated: bool


class SessionManager:
    """Login, logout and refresh-token rotation over a transactional store.

    The manager keeps no in-process locks: the store's compare-and-swap on a
    record's ``revoked`` flag is the only arbiter when several requests
    present the same refresh token. The losers of that race either land in
    the grace window on retry, which answers with an access token bound to
    the owner's current chain, or see ``TokenAlreadyRotatedError``.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        verifier: CredentialVerifier,
        guard: AccountGuard,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.verifier = verifier
        self.guard = guard
        self.settings = settings
        self.grace_window = timedelta(seconds=settings.refresh_grace_seconds)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Registration and login

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        fingerprint: Optional[Dict[str, Optional[str]]] = None,
    ) -> SessionResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        try:
            username = validate_username(username)
            email = normalize_email(email)
            password = validate_password(password)
            first_name = validate_name(first_name, "first name")
            last_name = validate_name(last_name, "last name")
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        if self.store.get_user_by_email(email):
            raise UserExistsError("user with this email already exists", detail={"field": "email"})
        if self.store.get_user_by_username(username):
            raise UserExistsError(
                "user with this username already exists", detail={"field": "username"}
            )

        role = self.store.get_role_by_name(self.settings.default_role_name)
        if role is None:
            self.logger.warning("default_role_missing", role=self.settings.default_role_name)
        # Hash before the row exists so a failure leaves no credential-less account
        credential = await asyncio.to_thread(self.verifier.hash_password, password)
        try:
            user = self.store.create_user(
                username,
                email,
                first_name=first_name,
                last_name=last_name,
                role_ids=[role.id] if role else [],
                credential=credential,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same identity
            raise UserExistsError(exc.message, detail=exc.detail) from exc

        now = self._now()
        tokens = self._issue_pair(user, now, fingerprint)
        self.logger.info("user_registered", user_id=user.id, username=user.username)
        return SessionResult(user, tokens, True)

    async def login(
        self,
        email: str,
        password: str,
        *,
        fingerprint: Optional[Dict[str, Optional[str]]] = None,
    ) -> SessionResult:
        try:
            email = normalize_email(email)
        except ValueError as exc:
            raise InvalidInputError(str(exc), detail={"field": "email"}) from exc
        if not password or not isinstance(password, str):
            raise InvalidInputError("password is required", detail={"field": "password"})

        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("invalid email or password")

        now = self._now()
        if await self.guard.is_locked(user, now):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            locked_until = user.lock_until.isoformat() if user.is_locked(now) else None
            raise AccountLockedError(
                "account is temporarily locked due to too many failed login attempts",
                detail={"locked_until": locked_until},
            )
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="inactive")
            raise AccountInactiveError("account is deactivated")

        # argon2 is CPU bound; keep it off the event loop
        verified = await asyncio.to_thread(self.verifier.verify, user.id, password)
        if not verified:
            updated = await self.guard.record_failure(user.id, now)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                reason="bad_password",
                attempts=updated.failed_login_attempts if updated else None,
            )
            raise InvalidCredentialsError("invalid email or password")

        user = await self.guard.reset(user.id, now) or user
        tokens = self._issue_pair(user, now, fingerprint)
        self.logger.info("login_succeeded", user_id=user.id)
        return SessionResult(user, tokens, True)

    def _issue_pair(
        self,
        user: User,
        now: datetime,
        fingerprint: Optional[Dict[str, Optional[str]]],
    ) -> TokenPair:
        for attempt in range(1, MAX_TOKEN_COLLISION_RETRIES + 1):
            tokens = self.codec.mint_pair(user, now)
            record = RefreshTokenRecord.new(
                user.id,
                tokens.refresh_token,
                tokens.refresh_expires_at,
                fingerprint=fingerprint,
                issued_at=now,
            )
            try:
                self.store.insert_refresh_token(record)
            except DuplicateTokenError:
                self.logger.warning("refresh_token_collision", user_id=user.id, attempt=attempt)
                continue
            except ConstraintViolation as exc:
                raise ServerError("failed to persist refresh token") from exc
            return tokens
        raise ServerError("could not issue a unique refresh token")

    # Logout

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke ``refresh_token`` if it is live. Unknown or revoked tokens are a no-op."""
        if not refresh_token:
            return False
        record = self.store.find_refresh_token(refresh_token)
        if record is None:
            return False
        revoked = self.store.revoke_refresh_token(record.id, now=self._now())
        if revoked:
            self.logger.info("logout_revoked", user_id=record.user_id, token_id=record.id)
        return revoked

    # Refresh

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        fingerprint: Optional[Dict[str, Optional[str]]] = None,
    ) -> SessionResult:
        """Rotate ``refresh_token``, retrying a bounded number of rotation conflicts."""
        return await retry_on_rotation_conflict(
            lambda: self.refresh_once(refresh_token, fingerprint=fingerprint),
            retries=self.settings.refresh_retry_attempts,
            backoff_seconds=self.settings.refresh_retry_backoff_ms / 1000.0,
        )

    async def refresh_once(
        self,
        refresh_token: Optional[str],
        *,
        fingerprint: Optional[Dict[str, Optional[str]]] = None,
    ) -> SessionResult:
        if not refresh_token:
            raise MissingTokenError("refresh token is required")
        now = self._now()

        rotated = self.store.find_refresh_token(refresh_token, revoked=True)
        if rotated is not None:
            if self.grace_window > timedelta(0) and rotated.revoked_within(self.grace_window, now):
                # Only rotation leaves a successor; a logged-out token has none
                successor = self.store.find_successor(rotated.id)
                if successor is not None:
                    return self._grace_reissue(rotated, successor, now)
            self.logger.warning(
                "refresh_token_reuse_detected", user_id=rotated.user_id, token_id=rotated.id
            )
            raise InvalidTokenError("refresh token has been revoked")

        decoded = self.codec.decode_refresh(refresh_token, now)
        if not decoded.ok:
            raise self._token_error(decoded)

        record = self.store.find_refresh_token(
            refresh_token, user_id=decoded.subject, revoked=False
        )
        if record is None or record.expires_at <= now:
            raise InvalidTokenError("invalid or expired refresh token")
        user = self._active_user(record.user_id)

        for attempt in range(1, MAX_TOKEN_COLLISION_RETRIES + 1):
            tokens = self.codec.mint_pair(user, now)
            successor = RefreshTokenRecord.new(
                user.id,
                tokens.refresh_token,
                tokens.refresh_expires_at,
                fingerprint=fingerprint if fingerprint is not None else record.client_fingerprint,
                parent_id=record.id,
                issued_at=now,
            )
            try:
                self.store.with_transaction(
                    lambda txn: self._rotate(txn, record, successor, now)
                )
            except DuplicateTokenError:
                self.logger.warning("refresh_token_collision", user_id=user.id, attempt=attempt)
                continue
            except ConstraintViolation as exc:
                if exc.detail.get("parent_id"):
                    self.logger.info(
                        "refresh_rotation_conflict", user_id=user.id, token_id=record.id
                    )
                    raise TokenAlreadyRotatedError(
                        "refresh token was already rotated by a concurrent request"
                    ) from exc
                raise ServerError("failed to persist refresh token") from exc
            self.logger.info(
                "refresh_rotated",
                user_id=user.id,
                token_id=record.id,
                successor_id=successor.id,
            )
            return SessionResult(user, tokens, True)
        raise ServerError("could not issue a unique refresh token")

    def _rotate(
        self,
        txn: RotationTransaction,
        record: RefreshTokenRecord,
        successor: RefreshTokenRecord,
        now: datetime,
    ) -> RefreshTokenRecord:
        if not txn.revoke_if_live(record.id, now):
            self.logger.info(
                "refresh_rotation_conflict", user_id=record.user_id, token_id=record.id
            )
            raise TokenAlreadyRotatedError(
                "refresh token was already rotated by a concurrent request"
            )
        return txn.insert_refresh_token(successor)

    def _live_descendant(
        self, successor: RefreshTokenRecord, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Follow the rotation chain from ``successor`` to its live record, if any."""
        record: Optional[RefreshTokenRecord] = successor
        while record is not None and not record.is_live(now):
            record = self.store.find_successor(record.id)
        return record

    def _grace_reissue(
        self, rotated: RefreshTokenRecord, successor: RefreshTokenRecord, now: datetime
    ) -> SessionResult:
        current = self._live_descendant(successor, now)
        if current is None:
            raise InvalidTokenError("refresh token has been revoked")
        user = self._active_user(current.user_id)
        access_token, access_expires_at = self.codec.mint_access(user, now)
        self.logger.info(
            "refresh_grace_reuse",
            user_id=user.id,
            token_id=rotated.id,
            current_token_id=current.id,
        )
        return SessionResult(
            user,
            TokenPair(access_token=access_token, access_expires_at=access_expires_at),
            False,
        )

    def _active_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise InvalidTokenError("token owner is unavailable")
        return user

    @staticmethod
    def _token_error(decoded: DecodeResult) -> InvalidTokenError:
        if decoded.error is TokenErrorKind.EXPIRED:
            return InvalidTokenError("token expired", detail={"reason": decoded.error.value})
        return InvalidTokenError("invalid token", detail={"reason": decoded.error.value})

    # Access tokens and profile

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise MissingTokenError("access token is required")
        decoded = self.codec.decode_access(access_token, self._now())
        if not decoded.ok:
            raise self._token_error(decoded)
        user = self._active_user(decoded.subject)
        return AuthContext(
            user_id=user.id,
            username=user.username,
            email=user.email,
            role_ids=list(user.role_ids),
        )

    async def profile(self, user_id: str) -> Tuple[User, List[Role]]:
        """Load ``user_id`` and resolve its role ids to role records."""
        user = self._active_user(user_id)
        roles = [role for role in map(self.store.get_role, user.role_ids) if role]
        return user, roles
