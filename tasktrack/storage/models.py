from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    """The authenticated principal. Roles are referenced by id only."""

    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool = True
    role_ids: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.lock_until is not None and self.lock_until > (now or utcnow())


@dataclass
class RefreshTokenRecord:
    id: str
    token: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Opaque audit metadata (user_agent, ip_address); never enforced
    client_fingerprint: Dict[str, Optional[str]] = field(default_factory=dict)
    # Record this one replaced during rotation
    parent_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        fingerprint: Optional[Dict[str, Optional[str]]] = None,
        parent_id: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        now = issued_at or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            issued_at=now,
            expires_at=expires_at,
            updated_at=now,
            client_fingerprint=dict(fingerprint or {}),
            parent_id=parent_id,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())

    def revoked_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when this record was revoked no longer than ``window`` ago."""
        if not self.revoked or self.revoked_at is None:
            return False
        return self.revoked_at >= (now or utcnow()) - window
