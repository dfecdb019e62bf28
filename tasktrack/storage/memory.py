from __future__ import annotations

import contextlib
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation, DuplicateTokenError
from tasktrack.storage.models import RefreshTokenRecord, Role, User, utcnow

T = TypeVar("T")


def _copy_user(user: User) -> User:
    return replace(user, role_ids=list(user.role_ids))


def _copy_record(record: RefreshTokenRecord) -> RefreshTokenRecord:
    return replace(record, client_fingerprint=dict(record.client_fingerprint))


class _MemoryTransaction:
    """Writes staged while the store lock is held; applied only on commit."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._revocations: Dict[str, datetime] = {}
        self._inserts: List[RefreshTokenRecord] = []

    def revoke_if_live(self, record_id: str, now: Optional[datetime] = None) -> bool:
        record = self._store.refresh_tokens.get(record_id)
        if record is None or record.revoked or record_id in self._revocations:
            return False
        self._revocations[record_id] = now or utcnow()
        return True

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        staged_tokens = {r.token for r in self._inserts}
        if record.token in self._store._token_index or record.token in staged_tokens:
            raise DuplicateTokenError()
        if record.parent_id:
            staged_parents = {r.parent_id for r in self._inserts}
            if record.parent_id in self._store._parent_index or record.parent_id in staged_parents:
                raise ConstraintViolation(
                    "refresh token already has a successor", {"parent_id": record.parent_id}
                )
        self._inserts.append(_copy_record(record))
        return record

    def _commit(self) -> None:
        for record_id, revoked_at in self._revocations.items():
            self._store._mark_revoked(self._store.refresh_tokens[record_id], revoked_at)
        for record in self._inserts:
            self._store._index_refresh_token(record)


class MemoryStore:
    """In-memory backing store with JSON state persistence under ``fs_root``.

    A single re-entrant lock serializes every operation, so a transaction
    holding it for its whole body is isolated from concurrent callers.
    """

    def __init__(self, fs_root: str = "/tmp/tasktrack") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._token_index: Dict[str, str] = {}
        self._parent_index: Dict[str, str] = {}
        # RLock so store methods can be called from inside a transaction body
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # Roles

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(existing.name == name for existing in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    # Users

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
        credential: Optional[tuple[str, str]] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                first_name=first_name,
                last_name=last_name,
                avatar=avatar,
                is_active=is_active,
                role_ids=list(role_ids or []),
            )
            self.users[user.id] = user
            if credential is not None:
                self.credentials[user.id] = credential
            self._persist_state()
            return _copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return _copy_user(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return _copy_user(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return _copy_user(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # Login attempt tracking

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.lock_until is not None and user.lock_until <= now:
                # Previous lock ran out; this failure starts a new streak
                user.failed_login_attempts = 1
                user.lock_until = None
            else:
                user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts and not user.is_locked(now):
                user.lock_until = now + lockout
            user.updated_at = now
            self._persist_state()
            return _copy_user(user)

    def reset_login_failures(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.lock_until = None
            user.last_login = now
            user.updated_at = now
            self._persist_state()
            return _copy_user(user)

    # Refresh tokens

    def _index_refresh_token(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens[record.id] = record
        self._token_index[record.token] = record.id
        if record.parent_id:
            self._parent_index[record.parent_id] = record.id

    @staticmethod
    def _mark_revoked(record: RefreshTokenRecord, revoked_at: datetime) -> None:
        record.revoked = True
        record.revoked_at = revoked_at
        record.updated_at = revoked_at

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        return self.with_transaction(lambda txn: txn.insert_refresh_token(record))

    def find_refresh_token(
        self,
        token: str,
        *,
        user_id: Optional[str] = None,
        revoked: Optional[bool] = None,
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._token_index.get(token)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if record is None:
                return None
            if user_id is not None and record.user_id != user_id:
                return None
            if revoked is not None and record.revoked != revoked:
                return None
            return _copy_record(record)

    def find_successor(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            successor_id = self._parent_index.get(record_id)
            record = self.refresh_tokens.get(successor_id) if successor_id else None
            return _copy_record(record) if record else None

    def find_latest_live_refresh_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        now = now or utcnow()
        with self._data_lock:
            live = [
                r for r in self.refresh_tokens.values() if r.user_id == user_id and r.is_live(now)
            ]
            if not live:
                return None
            return _copy_record(max(live, key=lambda r: r.issued_at))

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [r for r in self.refresh_tokens.values() if r.user_id == user_id]
            return [_copy_record(r) for r in sorted(records, key=lambda r: r.issued_at)]

    def revoke_refresh_token(
        self, record_id: str, *, now: Optional[datetime] = None
    ) -> bool:
        return self.with_transaction(lambda txn: txn.revoke_if_live(record_id, now))

    def purge_expired_refresh_tokens(self, before: Optional[datetime] = None) -> int:
        cutoff = before or utcnow()
        with self._data_lock:
            stale = [r for r in self.refresh_tokens.values() if r.expires_at <= cutoff]
            for record in stale:
                self.refresh_tokens.pop(record.id, None)
                self._token_index.pop(record.token, None)
                if record.parent_id:
                    self._parent_index.pop(record.parent_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_MemoryTransaction]:
        with self._data_lock:
            txn = _MemoryTransaction(self)
            yield txn
            txn._commit()
            self._persist_state()

    def with_transaction(self, fn: Callable[[_MemoryTransaction], T]) -> T:
        """Run ``fn`` with exclusive access; nothing it staged survives an exception."""
        with self.transaction() as txn:
            return fn(txn)

    # Persistence

    def _persist_state(self) -> None:
        state = {
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {}
        self._token_index = {}
        self._parent_index = {}
        for raw in data.get("refresh_tokens", []):
            self._index_refresh_token(self._deserialize_refresh_token(raw))
        return True

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "description": role.description,
            "created_at": self._serialize_datetime(role.created_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "avatar": user.avatar,
            "is_active": user.is_active,
            "role_ids": user.role_ids,
            "failed_login_attempts": user.failed_login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            avatar=data.get("avatar"),
            is_active=data.get("is_active", True),
            role_ids=list(data.get("role_ids") or []),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "token": record.token,
            "user_id": record.user_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "client_fingerprint": record.client_fingerprint,
            "parent_id": record.parent_id,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            token=data["token"],
            user_id=data["user_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            client_fingerprint=data.get("client_fingerprint") or {},
            parent_id=data.get("parent_id"),
        )
