"""
Accounts, session tokens and profiles

Session tokens have the form ``<user_id>.<issued_at>.<signature>`` where the
signature is HMAC-SHA256 over the first two parts keyed with SECRET_KEY.
Logged out tokens are kept in a revocation registry until they expire.
"""

import hashlib
import hmac
import secrets
import time
from typing import Dict, Optional

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from rafflehub.config import settings
from rafflehub.database import crud
from rafflehub.database.session import get_session
from rafflehub.records import CreatorProfile

PBKDF2_ITERATIONS = 200_000
MIN_PASSWORD_LENGTH = 6


class AuthError(Exception):
    """Authentication error"""
    pass


class EmailTakenError(AuthError):
    pass


class InvalidCredentialsError(AuthError):
    pass


class InvalidTokenError(AuthError):
    pass


class CurrentUser(BaseModel):
    id: str
    email: str


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, expected = stored.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TokenRevocations:
    """
    Logged out tokens of this process

    Each token is only remembered until it would have expired anyway, so the
    registry never outgrows the set of live sessions.
    """

    def __init__(self):
        self._revoked: Dict[str, Optional[float]] = {}

    def __len__(self) -> int:
        return len(self._revoked)

    async def revoke(self, token: str, expires_at: Optional[float]):
        self.prune()
        self._revoked[token] = expires_at

    async def is_revoked(self, token: str) -> bool:
        self.prune()
        return token in self._revoked

    def prune(self, now: Optional[float] = None):
        now = time.time() if now is None else now
        expired = [token for token, expires_at in self._revoked.items() if expires_at is not None and expires_at <= now]
        for token in expired:
            del self._revoked[token]

    async def close(self):
        pass


class RedisTokenRevocations(TokenRevocations):
    """
    Revocations shared by every worker through Redis keys that expire with the token

    The local registry still answers first, so a worker keeps honouring its
    own logouts while Redis is unreachable.
    """

    def __init__(self, redis_client: aioredis.Redis, key_prefix: str = "rafflehub:revoked:"):
        super().__init__()
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{hashlib.sha256(token.encode()).hexdigest()}"

    async def revoke(self, token: str, expires_at: Optional[float]):
        await super().revoke(token, expires_at)
        try:
            if expires_at is None:
                await self.redis.set(self._key(token), "1")
            else:
                ttl = int(expires_at - time.time()) + 1
                if ttl > 0:
                    await self.redis.setex(self._key(token), ttl, "1")
        except RedisError as e:
            logger.warning(f"Failed to share token revocation, other workers may still accept it: {e}")

    async def is_revoked(self, token: str) -> bool:
        if await super().is_revoked(token):
            return True
        try:
            return bool(await self.redis.exists(self._key(token)))
        except RedisError as e:
            logger.warning(f"Failed to check shared token revocations: {e}")
            return False

    async def close(self):
        await self.redis.aclose()


def build_token_revocations() -> TokenRevocations:
    """Redis-backed when REDIS_URL is set, process-local otherwise"""
    if settings.REDIS_URL:
        return RedisTokenRevocations(aioredis.from_url(settings.REDIS_URL, decode_responses=True))
    return TokenRevocations()


class AuthService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        secret_key: Optional[str] = None,
        token_ttl: Optional[int] = None,
        revocations: Optional[TokenRevocations] = None,
    ):
        self.session_factory = session_factory
        self.secret_key = (secret_key or settings.SECRET_KEY).encode()
        self.token_ttl = settings.TOKEN_TTL_SECONDS if token_ttl is None else token_ttl
        self.revocations = revocations or build_token_revocations()

    async def close(self):
        await self.revocations.close()

    # ==================== ACCOUNTS ====================

    async def sign_up(self, email: str, password: str) -> str:
        """Create an account and return a session token for it"""
        email = normalize_email(email)
        if "@" not in email:
            raise InvalidCredentialsError("Please enter a valid email address")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidCredentialsError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")

        try:
            async with get_session(self.session_factory) as session:
                if await crud.get_account_by_email(session, email):
                    raise EmailTakenError("Email is already in use")
                account = await crud.create_account(session, email, hash_password(password))
                user_id = account.id
        except IntegrityError as e:
            raise EmailTakenError("Email is already in use") from e

        logger.info(f"Account {user_id} signed up")
        return self.issue_token(user_id)

    async def login(self, email: str, password: str) -> str:
        async with get_session(self.session_factory) as session:
            account = await crud.get_account_by_email(session, normalize_email(email))

        if account is None or not verify_password(password, account.password_hash):
            raise InvalidCredentialsError("Invalid email or password")

        logger.info(f"Account {account.id} logged in")
        return self.issue_token(account.id)

    async def logout(self, token: Optional[str]):
        """Revoke a session token until it would have expired"""
        try:
            user_id = self.verify_token(token or "")
        except InvalidTokenError:
            return

        _, issued_at, _ = token.split(".")
        expires_at = int(issued_at) + self.token_ttl if self.token_ttl else None
        await self.revocations.revoke(token, expires_at)
        logger.info(f"Account {user_id} logged out")

    async def current_user(self, token: Optional[str]) -> Optional[CurrentUser]:
        """User behind a session token, None if the token is missing or invalid"""
        if not token:
            return None
        try:
            user_id = self.verify_token(token)
        except InvalidTokenError as e:
            logger.debug(f"Rejected session token: {e}")
            return None

        if await self.revocations.is_revoked(token):
            logger.debug(f"Rejected revoked session token of {user_id}")
            return None

        async with get_session(self.session_factory) as session:
            account = await crud.get_account_by_id(session, user_id)

        if account is None:
            return None
        return CurrentUser(id=account.id, email=account.email)

    # ==================== TOKENS ====================

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret_key, payload.encode(), hashlib.sha256).hexdigest()

    def issue_token(self, user_id: str, issued_at: Optional[int] = None) -> str:
        issued_at = int(time.time()) if issued_at is None else issued_at
        payload = f"{user_id}.{issued_at}"
        return f"{payload}.{self._sign(payload)}"

    def verify_token(self, token: str) -> str:
        """Return the user id of a correctly signed, unexpired token"""
        try:
            user_id, issued_at, signature = token.split(".")
            issued_at = int(issued_at)
        except ValueError as e:
            raise InvalidTokenError("Malformed token") from e

        if not hmac.compare_digest(self._sign(f"{user_id}.{issued_at}"), signature):
            raise InvalidTokenError("Invalid signature")

        if self.token_ttl and time.time() - issued_at > self.token_ttl:
            raise InvalidTokenError("Token expired")

        return user_id

    # ==================== PROFILES ====================

    async def get_profile(self, user: CurrentUser) -> CreatorProfile:
        """Profile of the user, created with defaults on first access"""
        async with get_session(self.session_factory) as session:
            profile = await crud.get_profile(session, user.id)
            if profile is None:
                profile = await crud.set_profile(session, user.id, user.email, settings.DEFAULT_BIO)
                logger.info(f"Default profile created for {user.id}")
            return CreatorProfile(display_name=profile.display_name, bio=profile.bio)

    async def update_profile(self, user_id: str, display_name: str, bio: str) -> CreatorProfile:
        async with get_session(self.session_factory) as session:
            profile = await crud.set_profile(session, user_id, display_name, bio)
            return CreatorProfile(display_name=profile.display_name, bio=profile.bio)
