from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Roles a user can hold, highest privilege first."""

    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    CLEANER = "cleaner"


_ROLE_RANK = {
    UserRole.OWNER: 4,
    UserRole.ADMIN: 3,
    UserRole.MANAGER: 2,
    UserRole.CLEANER: 1,
}

DEFAULT_ROLE = UserRole.CLEANER


def parse_roles(values: Iterable[str]) -> List[UserRole]:
    """Convert stored role keys into ``UserRole`` values.

    Raises ``ValueError`` on an unknown key.
    """
    return [UserRole(value) for value in values]


def resolve_highest_role(roles: Iterable[UserRole]) -> UserRole:
    ranked = sorted(roles, key=lambda r: _ROLE_RANK[r], reverse=True)
    return ranked[0] if ranked else DEFAULT_ROLE


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    INVITED = "invited"


class RevokeReason(str, Enum):
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_CHANGE = "password_change"
    ADMIN_ACTION = "admin_action"
    SECURITY = "security"


@dataclass
class User:
    id: str
    email: str
    full_name: str = ""
    status: UserStatus = UserStatus.ACTIVE
    roles: List[UserRole] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def primary_role(self) -> UserRole:
        return resolve_highest_role(self.roles)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass(frozen=True)
class UserInfo:
    """Public projection of a user returned to callers."""

    id: str
    email: str
    full_name: str
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.primary_role,
        )


@dataclass(frozen=True)
class TokenMetadata:
    """Request provenance captured at issuance; audit only."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevokeReason] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)
