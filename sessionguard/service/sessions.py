from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from sessionguard.config import Settings
from sessionguard.logging import get_logger, log_auth_event
from sessionguard.service.errors import (
    AccountInactiveError,
    InvalidTokenError,
    ValidationError,
)
from sessionguard.service.passwords import PasswordVerifier
from sessionguard.service.tokens import IssuedTokens, TokenIssuer, TokenSubject
from sessionguard.storage.models import (
    RefreshTokenRecord,
    RevokeReason,
    TokenMetadata,
    User,
    UserInfo,
    UserRole,
    utcnow,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

T = TypeVar("T")


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...


class RevocationStore(Protocol):
    def record_refresh_token(
        self,
        refresh_id: str,
        user_id: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        metadata: Optional[TokenMetadata] = None,
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(self, refresh_id: str) -> Optional[RefreshTokenRecord]: ...

    def is_refresh_token_revoked(
        self, refresh_id: str, *, unknown_is_revoked: bool = False
    ) -> bool: ...

    def revoke_refresh_token(self, refresh_id: str, reason: RevokeReason) -> bool: ...

    def bulk_revoke_refresh_tokens(self, user_id: str, reason: RevokeReason) -> int: ...

    def list_active_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class RevocationCache(Protocol):
    async def is_marked_revoked(self, refresh_id: str) -> bool: ...

    async def mark_revoked(self, refresh_id: str, ttl_seconds: int) -> None: ...

    async def mark_revoked_bulk(self, pairs: Sequence[Tuple[str, int]]) -> None: ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    role: UserRole


@dataclass(frozen=True)
class LoginResult:
    user: UserInfo
    tokens: IssuedTokens


class SessionService:
    """Session token lifecycle: login, rotation on refresh, and revocation.

    Refresh token state lives in the durable store. The cache only ever holds
    positive "revoked" markers, so a cache miss, timeout or error always
    falls through to the store and a cache outage can never turn a revoked
    token back into a valid one.
    """

    def __init__(
        self,
        directory: UserDirectory,
        store: RevocationStore,
        cache: Optional[RevocationCache],
        issuer: TokenIssuer,
        passwords: PasswordVerifier,
        settings: Settings,
    ) -> None:
        self.directory = directory
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.passwords = passwords
        self.settings = settings
        self._cache_timeout = settings.cache_operation_timeout_seconds
        self._cache_ttl = int(
            settings.revocation_cache_ttl_seconds or settings.refresh_token_ttl_seconds
        )

    async def login(
        self,
        email: str,
        password: str,
        metadata: Optional[TokenMetadata] = None,
    ) -> Optional[LoginResult]:
        normalized = (email or "").strip().lower()
        user = self.directory.get_user_by_email(normalized) if normalized else None
        if user is None:
            # Spend the same hashing work as a wrong password
            self.passwords.verify(password, None)
            log_auth_event("login_failed", logger, reason="unknown_user")
            return None
        if not self.passwords.verify(password, self.directory.get_password_hash(user.id)):
            log_auth_event("login_failed", logger, reason="bad_password", user_id=user.id)
            return None
        if not user.is_active:
            log_auth_event("login_failed", logger, reason="inactive", user_id=user.id)
            raise AccountInactiveError()

        tokens = self._issue_and_record(user, metadata)
        self.directory.record_login(user.id, tokens.issued_at)
        log_auth_event("login_succeeded", logger, user_id=user.id, role=user.primary_role.value)
        return LoginResult(user=UserInfo.from_user(user), tokens=tokens)

    async def refresh(
        self, refresh_token: str, metadata: Optional[TokenMetadata] = None
    ) -> Optional[IssuedTokens]:
        try:
            claims = self.issuer.verify_refresh(refresh_token)
        except InvalidTokenError:
            log_auth_event("refresh_rejected", logger, reason="invalid_token")
            return None
        if await self.is_refresh_revoked(claims.refresh_id):
            log_auth_event(
                "refresh_rejected",
                logger,
                reason="revoked",
                refresh_id=claims.refresh_id,
                user_id=claims.user_id,
            )
            return None
        user = self.directory.get_user(claims.user_id)
        if user is None or not user.is_active:
            log_auth_event(
                "refresh_rejected",
                logger,
                reason="user_unavailable",
                user_id=claims.user_id,
            )
            return None

        # New record lands before the old one is revoked
        tokens = self._issue_and_record(user, metadata)
        if self.store.revoke_refresh_token(claims.refresh_id, RevokeReason.LOGOUT):
            await self._cache_mark(claims.refresh_id)
            log_auth_event(
                "refresh_token_revoked",
                logger,
                refresh_id=claims.refresh_id,
                user_id=user.id,
                reason=RevokeReason.LOGOUT.value,
                rotated_to=tokens.refresh_id,
            )
        elif self.store.get_refresh_token(claims.refresh_id) is not None:
            # A concurrent refresh of the same token won the conditional revoke
            self.store.revoke_refresh_token(tokens.refresh_id, RevokeReason.SECURITY)
            await self._cache_mark_many([claims.refresh_id, tokens.refresh_id])
            log_auth_event(
                "refresh_rejected",
                logger,
                reason="concurrent_rotation",
                refresh_id=claims.refresh_id,
                user_id=user.id,
            )
            return None
        return tokens

    async def logout(self, refresh_token: str, *, user_id: Optional[str] = None) -> bool:
        """Revoke the presented refresh token. Always reports success."""
        try:
            claims = self.issuer.verify_refresh(refresh_token)
        except InvalidTokenError:
            return True
        if user_id is not None and claims.user_id != user_id:
            logger.warning(
                "logout_token_owner_mismatch",
                user_id=user_id,
                refresh_id=claims.refresh_id,
            )
            return True
        if self.store.revoke_refresh_token(claims.refresh_id, RevokeReason.LOGOUT):
            await self._cache_mark(claims.refresh_id)
            log_auth_event(
                "refresh_token_revoked",
                logger,
                refresh_id=claims.refresh_id,
                user_id=claims.user_id,
                reason=RevokeReason.LOGOUT.value,
            )
        return True

    async def logout_all(self, user_id: str) -> int:
        return await self.revoke_all(user_id, RevokeReason.LOGOUT_ALL)

    async def revoke_all(self, user_id: str, reason: RevokeReason) -> int:
        active = self.store.list_active_refresh_tokens(user_id)
        count = self.store.bulk_revoke_refresh_tokens(user_id, reason)
        if active:
            await self._cache_mark_many(record.id for record in active)
        log_auth_event(
            "all_user_tokens_revoked",
            logger,
            user_id=user_id,
            reason=RevokeReason(reason).value,
            count=count,
        )
        return count

    async def set_password(
        self,
        user_id: str,
        new_password: str,
        *,
        current_password: Optional[str] = None,
    ) -> bool:
        """Replace a user's password and end every session they hold.

        When ``current_password`` is given it must match the stored hash,
        otherwise nothing changes and ``False`` is returned.
        """
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if self.directory.get_user(user_id) is None:
            return False
        if current_password is not None and not self.passwords.verify(
            current_password, self.directory.get_password_hash(user_id)
        ):
            log_auth_event("password_change_rejected", logger, user_id=user_id)
            return False
        if not self.directory.set_password_hash(user_id, self.passwords.hash(new_password)):
            return False
        await self.revoke_all(user_id, RevokeReason.PASSWORD_CHANGE)
        log_auth_event("password_changed", logger, user_id=user_id)
        return True

    async def is_refresh_revoked(self, refresh_id: str) -> bool:
        if await self._cache_lookup(refresh_id):
            return True
        revoked = self.store.is_refresh_token_revoked(
            refresh_id,
            unknown_is_revoked=self.settings.treat_unknown_refresh_as_revoked,
        )
        if revoked:
            await self._cache_mark(refresh_id)
        return revoked

    async def cleanup_expired(self) -> int:
        count = self.store.sweep_expired_refresh_tokens(utcnow())
        if count:
            log_auth_event("expired_tokens_cleaned", logger, count=count)
        return count

    def get_user_by_id(self, user_id: str) -> Optional[UserInfo]:
        user = self.directory.get_user(user_id)
        return UserInfo.from_user(user) if user else None

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.issuer.verify_access(token)
        except InvalidTokenError:
            return None
        user = self.directory.get_user(claims.subject)
        if user is None or not user.is_active:
            return None
        # Roles may have changed since issuance; the directory wins
        return AuthContext(user_id=user.id, email=user.email, role=user.primary_role)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return value.strip() or None

    def _issue_and_record(
        self, user: User, metadata: Optional[TokenMetadata]
    ) -> IssuedTokens:
        tokens = self.issuer.issue(
            TokenSubject(user_id=user.id, email=user.email, role=user.primary_role)
        )
        self.store.record_refresh_token(
            tokens.refresh_id,
            user.id,
            issued_at=tokens.issued_at,
            expires_at=tokens.refresh_expires_at,
            metadata=metadata,
        )
        log_auth_event(
            "refresh_token_created",
            logger,
            refresh_id=tokens.refresh_id,
            user_id=user.id,
            expires_at=tokens.refresh_expires_at.isoformat(),
        )
        return tokens

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> Optional[T]:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._cache_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "revocation_cache_unavailable", operation=operation, error="timeout"
            )
        except Exception as exc:
            logger.warning(
                "revocation_cache_unavailable", operation=operation, error=str(exc)
            )
        return None

    async def _cache_lookup(self, refresh_id: str) -> bool:
        if self.cache is None:
            return False
        return bool(await self._bounded("lookup", self.cache.is_marked_revoked(refresh_id)))

    async def _cache_mark(self, refresh_id: str) -> None:
        if self.cache is None:
            return
        await self._bounded("mark", self.cache.mark_revoked(refresh_id, self._cache_ttl))

    async def _cache_mark_many(self, refresh_ids: Iterable[str]) -> None:
        if self.cache is None:
            return
        pairs = [(refresh_id, self._cache_ttl) for refresh_id in refresh_ids]
        if pairs:
            await self._bounded("mark_bulk", self.cache.mark_revoked_bulk(pairs))
