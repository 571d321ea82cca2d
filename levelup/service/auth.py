from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from levelup.config import Settings
from levelup.logging import get_logger
from levelup.service.blacklist import TokenBlacklist
from levelup.service.email import EmailService
from levelup.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    TokenInvalidatedError,
    TokenInvalidError,
    ValidationError,
    VerificationRequiredError,
)
from levelup.service.tokens import (
    ACCESS,
    EMAIL_VERIFICATION,
    REFRESH,
    TokenClaims,
    TokenIssuer,
    token_fingerprint,
)
from levelup.storage.errors import ConstraintViolation
from levelup.storage.models import EXPERIENCE_LEVELS, User
from levelup.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        is_admin: bool = False,
        is_email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def set_email_verification(
        self, user_id: str, token_fingerprint: str, expires_at: datetime, sent_at: datetime
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str, token_fingerprint: str) -> Optional[User]: ...

    def reset_refresh_tokens(self, user_id: str, token_fingerprint: str, limit: int = ...) -> bool: ...

    def remove_refresh_token(self, user_id: str, token_fingerprint: str) -> bool: ...

    def clear_refresh_tokens(self, user_id: str) -> None: ...

    def rotate_refresh_token(
        self, user_id: str, old_fingerprint: str, new_fingerprint: str, limit: int = ...
    ) -> bool: ...

    def blacklist_token(self, token_fingerprint: str, expires_at: datetime) -> None: ...

    def is_token_blacklisted(self, token_fingerprint: str, now: Optional[datetime] = None) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass
class AuthContext:
    """What a protected handler learns about the caller."""

    user_id: str
    username: str
    is_admin: bool = False
    access_token: str = field(default="", repr=False)
    claims: Optional[TokenClaims] = field(default=None, repr=False)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


def user_projection(user: User) -> dict:
    """Public view of a user; never includes the password hash or token ledger."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "is_admin": user.is_admin,
        "experience_level": user.experience_level,
        "has_seen_guide": user.has_seen_guide,
        "deleted_workout_plans": list(user.deleted_workout_plans),
    }


class AuthService:
    """Account lifecycle and the access/refresh token session machinery.

    Refresh tokens move through ISSUED -> ACTIVE -> ROTATED | REVOKED. A token
    is ACTIVE while its fingerprint sits in the owner's ledger; rotation and
    logout remove it from the ledger and blacklist it for its remaining life.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache | SyncRedisCache],
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        blacklist: Optional[TokenBlacklist] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.issuer = issuer or TokenIssuer(settings)
        self.blacklist = blacklist or TokenBlacklist(store, cache)
        self.email = email
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _naive(dt: datetime) -> datetime:
        """Store timestamps are naive UTC."""
        return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    # -- registration and email verification --------------------------------

    async def register(self, username: str, email: str, password: str) -> User:
        """Create an unverified account and send the verification email.

        Raises:
            ForbiddenError: signups are disabled
            ValidationError: username or email already taken
        """
        if not self.settings.allow_signup:
            raise ForbiddenError("Signups are disabled")
        if self.store.get_user_by_username(username) or self.store.get_user_by_email(email):
            raise ValidationError("User with this email or username already exists")
        try:
            user = self.store.create_user(username, email, self.hash_password(password))
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            raise ValidationError(
                "User with this email or username already exists", detail=exc.detail
            ) from exc
        self.logger.info("user_registered", user_id=user.id)
        await self._issue_verification(user)
        return user

    async def _issue_verification(self, user: User) -> Optional[User]:
        """Mint and persist a fresh verification token, then email it best-effort."""
        token = self.issuer.issue_email_verification_token(user.id, user.email)
        now = self._naive(self._now())
        updated = self.store.set_email_verification(
            user.id,
            token_fingerprint(token),
            now + self.issuer.ttl_for(EMAIL_VERIFICATION),
            now,
        )
        await self._send_email("send_email_verification", user.email, token)
        return updated

    async def _send_email(self, method: str, *args: Any) -> bool:
        if not self.email:
            self.logger.info("email_service_missing", method=method)
            return False
        # smtplib blocks; keep it off the event loop
        sent = await asyncio.to_thread(getattr(self.email, method), *args)
        if not sent:
            self.logger.warning("email_delivery_failed", method=method)
        return sent

    async def verify_email(self, token: str) -> User:
        """Mark the token's user verified.

        Raises:
            ValidationError: the token is expired, malformed, or superseded
        """
        try:
            claims = self.issuer.verify(token, EMAIL_VERIFICATION)
        except AuthenticationError as exc:
            message = (
                "Verification link has expired"
                if exc.error_code == "token_expired"
                else "Invalid verification token"
            )
            raise ValidationError(message) from exc
        user = self.store.get_user(claims.user_id)
        if (
            not user
            or user.email != claims.email
            or not user.email_verification_expires
            or user.email_verification_expires <= self._naive(self._now())
        ):
            raise ValidationError("Invalid or expired verification token")
        verified = self.store.mark_email_verified(user.id, token_fingerprint(token))
        if not verified:
            raise ValidationError("Invalid or expired verification token")
        self.logger.info("email_verified", user_id=user.id)
        await self._send_email("send_welcome", verified.email, verified.username)
        return verified

    async def resend_verification(self, email: str) -> User:
        """Send a fresh verification email unless one went out recently.

        Raises:
            NotFoundError: no account uses ``email``
            ValidationError: the address is already verified
            RateLimitedError: still inside the resend cooldown; nothing is changed
        """
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("No account found with this email")
        if user.is_email_verified:
            raise ValidationError("Email is already verified")
        cooldown = timedelta(seconds=self.settings.verification_resend_cooldown_seconds)
        sent_at = user.email_verification_sent_at
        if sent_at and self._naive(self._now()) - sent_at < cooldown:
            minutes = max(1, int(cooldown.total_seconds() // 60))
            raise RateLimitedError(
                f"Please wait {minutes} minutes before requesting another verification email"
            )
        await self._issue_verification(user)
        self.logger.info("email_verification_resent", user_id=user.id)
        return user

    # -- sessions ----------------------------------------------------------

    def _issue_pair(self, user_id: str) -> TokenPair:
        return TokenPair(
            access_token=self.issuer.issue_access_token(user_id),
            refresh_token=self.issuer.issue_refresh_token(user_id),
            expires_in=self.issuer.access_token_ttl_seconds,
        )

    async def login(self, username: str, password: str) -> tuple[User, TokenPair]:
        """Authenticate and start the user's only active session.

        Every successful login wipes the ledger, ending all earlier sessions.

        Raises:
            InvalidCredentialsError: unknown username or wrong password
            VerificationRequiredError: email not verified; a new link was sent
        """
        user = self.store.get_user_by_username(username)
        if not user:
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not user.is_email_verified:
            await self._issue_verification(user)
            self.logger.info("login_verification_required", user_id=user.id)
            raise VerificationRequiredError(
                "Please verify your email before logging in. "
                "A new verification email has been sent."
            )
        if not self.verify_password(user, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        pair = self._issue_pair(user.id)
        if not self.store.reset_refresh_tokens(
            user.id,
            token_fingerprint(pair.refresh_token),
            self.settings.max_active_refresh_tokens,
        ):
            # deleted between lookup and ledger write
            raise InvalidCredentialsError()
        self.logger.info("login_succeeded", user_id=user.id)
        return self.store.get_user(user.id) or user, pair

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """Exchange a refresh token for a new pair; the old one is retired.

        The old token is blacklisted before the ledger swap, and the swap is
        conditional on the old token still being in the ledger, so one refresh
        token yields at most one new pair.

        Raises:
            ValidationError: no token supplied
            TokenInvalidatedError: token was blacklisted
            TokenExpiredError: token is past its expiry
            TokenInvalidError: bad token, or no longer in the ledger
            NotFoundError: the account is gone
        """
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        # fail closed: a refresh token must never be honored on an unknown blacklist state
        if await self.blacklist.contains(refresh_token, fail_closed=True):
            raise TokenInvalidatedError()
        claims = self.issuer.verify(refresh_token, REFRESH)
        user = self.store.get_user(claims.user_id)
        if not user:
            raise NotFoundError("User not found")
        old_fingerprint = token_fingerprint(refresh_token)
        if not user.has_refresh_token(old_fingerprint):
            self.logger.warning("refresh_token_not_in_ledger", user_id=user.id)
            raise TokenInvalidError("Invalid refresh token")

        pair = self._issue_pair(user.id)
        await self.blacklist.add(refresh_token, claims.remaining_lifetime(self._now()))
        rotated = self.store.rotate_refresh_token(
            user.id,
            old_fingerprint,
            token_fingerprint(pair.refresh_token),
            self.settings.max_active_refresh_tokens,
        )
        if not rotated:
            # a concurrent refresh consumed the same token first
            self.logger.warning("refresh_token_reuse_detected", user_id=user.id)
            raise TokenInvalidError("Invalid refresh token")
        self.logger.info("refresh_rotated", user_id=user.id)
        return pair

    async def logout(self, ctx: AuthContext, refresh_token: Optional[str] = None) -> None:
        """End the caller's session.

        The supplied refresh token (if any) leaves the ledger and is
        blacklisted; the presented access token is always blacklisted.

        Raises:
            NotFoundError: the account is gone
        """
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("User not found")
        if refresh_token:
            self.store.remove_refresh_token(user.id, token_fingerprint(refresh_token))
            await self.blacklist.add(refresh_token, self._refresh_blacklist_ttl(refresh_token))
        if ctx.access_token:
            ttl = (
                ctx.claims.remaining_lifetime(self._now())
                if ctx.claims
                else self.issuer.ttl_for(ACCESS)
            )
            await self.blacklist.add(ctx.access_token, ttl)
        self.logger.info("logout", user_id=user.id, refresh_revoked=bool(refresh_token))

    def _refresh_blacklist_ttl(self, refresh_token: str) -> timedelta:
        try:
            return self.issuer.verify(refresh_token, REFRESH).remaining_lifetime(self._now())
        except AuthenticationError:
            # unverifiable or expired: no replay window remains, but keep a full-lifetime entry
            return self.issuer.ttl_for(REFRESH)

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """Validate an access token presented on a protected request.

        Raises:
            AuthenticationError: no token
            TokenInvalidatedError: token was blacklisted (e.g. after logout)
            TokenExpiredError: token is past its expiry
            TokenInvalidError: token fails verification
            NotFoundError: the account is gone
        """
        if not token:
            raise AuthenticationError("No token, authorization denied")
        # an unknown blacklist state rejects the token
        if await self.blacklist.contains(token):
            self.logger.info("access_token_blacklisted")
            raise TokenInvalidatedError()
        claims = self.issuer.verify(token, ACCESS)
        user = self.store.get_user(claims.user_id)
        if not user:
            raise NotFoundError("User not found")
        return AuthContext(
            user_id=user.id,
            username=user.username,
            is_admin=user.is_admin,
            access_token=token,
            claims=claims,
        )

    # -- account management ------------------------------------------------

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        experience_level: Optional[str] = None,
        has_seen_guide: Optional[bool] = None,
    ) -> User:
        """Apply profile changes.

        Raises:
            NotFoundError: the account is gone
            ValidationError: username or email taken, or unknown level
        """
        user = self.get_user(user_id)
        changes: dict[str, Any] = {}
        if username is not None and username != user.username:
            if self.store.get_user_by_username(username):
                raise ValidationError("Username is already taken")
            changes["username"] = username
        if email is not None and email != user.email:
            if self.store.get_user_by_email(email):
                raise ValidationError("Email is already taken")
            changes["email"] = email
        if experience_level is not None:
            if experience_level not in EXPERIENCE_LEVELS:
                raise ValidationError("Invalid experience level")
            changes["experience_level"] = experience_level
        if has_seen_guide is not None:
            changes["has_seen_guide"] = has_seen_guide
        if not changes:
            return user
        try:
            updated = self.store.update_user(user_id, **changes)
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "username")
            raise ValidationError(
                f"{field_name.capitalize()} is already taken", detail=exc.detail
            ) from exc
        if not updated:
            raise NotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return updated

    def set_experience_level(self, user_id: str, experience_level: str) -> User:
        return self.update_profile(user_id, experience_level=experience_level)

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> None:
        """Replace the password and end every refresh session.

        Raises:
            NotFoundError: the account is gone
            ValidationError: ``current_password`` is wrong
        """
        user = self.get_user(ctx.user_id)
        if not self.verify_password(user, current_password):
            raise ValidationError("Current password is incorrect")
        self.store.update_user(user.id, password_hash=self.hash_password(new_password))
        self.store.clear_refresh_tokens(user.id)
        self.logger.info("password_changed", user_id=user.id)

    async def delete_account(self, ctx: AuthContext) -> None:
        """Delete the account and everything it owns; the access token stops working."""
        if not self.store.delete_user(ctx.user_id):
            raise NotFoundError("User not found")
        if ctx.access_token:
            ttl = (
                ctx.claims.remaining_lifetime(self._now())
                if ctx.claims
                else self.issuer.ttl_for(ACCESS)
            )
            await self.blacklist.add(ctx.access_token, ttl)
        self.logger.info("account_deleted", user_id=ctx.user_id)

    def create_admin(self, username: str, email: str, password: str) -> User:
        """Create a verified admin, or promote the existing user with that username."""
        existing = self.store.get_user_by_username(username)
        if existing:
            updated = self.store.update_user(existing.id, is_admin=True, is_email_verified=True)
            return updated or existing
        return self.store.create_user(
            username,
            email,
            self.hash_password(password),
            is_admin=True,
            is_email_verified=True,
        )
