from __future__ import annotations

import json
import math
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, DuplicateRefreshTokenId
from sessionguard.storage.models import (
    RefreshTokenRecord,
    RevokeReason,
    TokenMetadata,
    User,
    UserRole,
    UserStatus,
    parse_roles,
    utcnow,
)


class MemoryStore:
    """In-process user directory and refresh token store.

    All mutations happen under one RLock so conditional revokes behave like
    the single-statement updates of the Postgres store. When ``fs_root`` is
    given, state is written to ``<fs_root>/state/memory_store.json`` after
    each mutation and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # user directory
    def create_user(
        self,
        email: str,
        *,
        full_name: str = "",
        roles: Optional[Iterable[UserRole]] = None,
        status: UserStatus = UserStatus.ACTIVE,
        password_hash: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                full_name=full_name,
                status=status,
                roles=list(roles or []),
            )
            self.users[user.id] = user
            if password_hash:
                self.credentials[user.id] = password_hash
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.credentials[user_id] = password_hash
            self._persist_state()
            return True

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at or utcnow()
            self._persist_state()

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def set_user_roles(self, user_id: str, roles: Iterable[UserRole]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(dict.fromkeys(roles))
            self._persist_state()
            return user

    # refresh tokens
    def record_refresh_token(
        self,
        refresh_id: str,
        user_id: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        metadata: Optional[TokenMetadata] = None,
    ) -> RefreshTokenRecord:
        meta = metadata or TokenMetadata()
        with self._data_lock:
            if refresh_id in self.refresh_tokens:
                raise DuplicateRefreshTokenId(refresh_id)
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            record = RefreshTokenRecord(
                id=refresh_id,
                user_id=user_id,
                issued_at=issued_at,
                expires_at=expires_at,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            self.refresh_tokens[refresh_id] = record
            self._persist_state()
            return record

    def get_refresh_token(self, refresh_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(refresh_id)

    def is_refresh_token_revoked(
        self, refresh_id: str, *, unknown_is_revoked: bool = False
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(refresh_id)
            if record is None:
                return unknown_is_revoked
            return record.is_revoked

    def revoke_refresh_token(self, refresh_id: str, reason: RevokeReason) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(refresh_id)
            if record is None or record.is_revoked:
                return False
            record.revoked_at = utcnow()
            record.revoked_reason = RevokeReason(reason)
            self._persist_state()
            return True

    def bulk_revoke_refresh_tokens(self, user_id: str, reason: RevokeReason) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or not record.is_active(now):
                    continue
                record.revoked_at = now
                record.revoked_reason = RevokeReason(reason)
                count += 1
            if count:
                self._persist_state()
        return count

    def list_active_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        now = utcnow()
        with self._data_lock:
            return sorted(
                (
                    r
                    for r in self.refresh_tokens.values()
                    if r.user_id == user_id and r.is_active(now)
                ),
                key=lambda r: r.issued_at,
            )

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                rid for rid, r in self.refresh_tokens.items() if r.expires_at < cutoff
            ]
            for rid in expired:
                del self.refresh_tokens[rid]
            if expired:
                self._persist_state()
        return len(expired)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "status": user.status.value,
            "roles": [role.value for role in user.roles],
            "created_at": self._serialize_datetime(user.created_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            full_name=data.get("full_name", ""),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            roles=parse_roles(data.get("roles", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_reason": record.revoked_reason.value if record.revoked_reason else None,
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        reason = data.get("revoked_reason")
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=RevokeReason(reason) if reason else None,
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": password_hash}
                for user_id, password_hash in self.credentials.items()
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
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True


class MemoryCache:
    """Process-local stand-in for the Redis revocation cache.

    Entries carry their own expiry, matching Redis key TTL semantics. Rate
    limit windows are counted per process only.
    """

    def __init__(
        self,
        prefix: str = "token:revoked:",
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.prefix = prefix
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _key(self, refresh_id: str) -> str:
        return f"{self.prefix}{refresh_id}"

    async def is_marked_revoked(self, refresh_id: str) -> bool:
        key = self._key(refresh_id)
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[key]
                return False
            return True

    async def mark_revoked(self, refresh_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[self._key(refresh_id)] = self._clock() + ttl_seconds

    async def mark_revoked_bulk(self, pairs: Sequence[Tuple[str, int]]) -> None:
        now = self._clock()
        with self._lock:
            for refresh_id, ttl_seconds in pairs:
                self._entries[self._key(refresh_id)] = now + ttl_seconds

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            count, window_ends = self._windows.get(key, (0, 0.0))
            if window_ends <= now:
                count, window_ends = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, window_ends)
        # Rounded first so float error never adds a whole second
        reset = max(1, int(math.ceil(round(window_ends - now, 3))))
        return count <= limit, max(0, limit - count), reset

    def ttl(self, refresh_id: str) -> Optional[float]:
        with self._lock:
            expires_at = self._entries.get(self._key(refresh_id))
        if expires_at is None:
            return None
        return max(0.0, expires_at - self._clock())

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._windows.clear()
