import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from rafflehub.services.auth_service import (
    AuthService,
    EmailTakenError,
    InvalidCredentialsError,
    InvalidTokenError,
    RedisTokenRevocations,
    TokenRevocations,
    hash_password,
    verify_password,
)


@pytest.fixture
def auth(session_factory):
    return AuthService(session_factory, secret_key="unit-test-key", token_ttl=3600)


def test_password_hash_roundtrip():
    stored = hash_password("hunter22")

    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("hunter22", stored)
    assert not verify_password("hunter23", stored)
    assert not verify_password("hunter22", "garbage")


async def test_sign_up_then_login(auth):
    token = await auth.sign_up("Dana@Example.com ", "secret1")
    user = await auth.current_user(token)

    assert user.email == "dana@example.com"
    assert auth.verify_token(await auth.login("dana@example.com", "secret1")) == user.id


async def test_duplicate_email_is_rejected(auth):
    await auth.sign_up("dana@example.com", "secret1")

    with pytest.raises(EmailTakenError):
        await auth.sign_up("DANA@example.com", "another1")


@pytest.mark.parametrize("email,password", [("not-an-email", "secret1"), ("dana@example.com", "short")])
async def test_sign_up_validation(auth, email, password):
    with pytest.raises(InvalidCredentialsError):
        await auth.sign_up(email, password)


async def test_wrong_password(auth):
    await auth.sign_up("dana@example.com", "secret1")

    with pytest.raises(InvalidCredentialsError):
        await auth.login("dana@example.com", "secret2")


def test_tampered_and_expired_tokens(auth):
    token = auth.issue_token("user-1")
    user_id, issued_at, signature = token.split(".")

    assert auth.verify_token(token) == "user-1"
    with pytest.raises(InvalidTokenError):
        auth.verify_token(f"user-2.{issued_at}.{signature}")
    with pytest.raises(InvalidTokenError):
        auth.verify_token(auth.issue_token("user-1", issued_at=int(issued_at) - 7200))
    with pytest.raises(InvalidTokenError):
        auth.verify_token("not-a-token")


async def test_logout_revokes_token(auth):
    token = await auth.sign_up("dana@example.com", "secret1")

    await auth.logout(token)

    assert await auth.current_user(token) is None


async def test_default_profile_then_update(auth):
    user = await auth.current_user(await auth.sign_up("dana@example.com", "secret1"))

    profile = await auth.get_profile(user)
    assert profile.display_name == "dana@example.com"
    assert profile.bio == "New RaffleHub user!"

    await auth.update_profile(user.id, "Dana", "Collects vinyl")
    profile = await auth.get_profile(user)
    assert (profile.display_name, profile.bio) == ("Dana", "Collects vinyl")


async def test_logout_of_invalid_token_is_ignored(auth):
    await auth.logout(None)
    await auth.logout("not-a-token")

    assert len(auth.revocations) == 0


async def test_revocations_are_dropped_once_tokens_expire():
    revocations = TokenRevocations()
    now = time.time()

    await revocations.revoke("old-token", now - 1)
    await revocations.revoke("live-token", now + 3600)

    assert not await revocations.is_revoked("old-token")
    assert await revocations.is_revoked("live-token")
    assert len(revocations) == 1

    revocations.prune(now=now + 7200)
    assert len(revocations) == 0


async def test_logout_remembers_token_until_its_expiry(auth):
    token = await auth.sign_up("dana@example.com", "secret1")
    issued_at = int(token.split(".")[1])

    await auth.logout(token)

    assert auth.revocations._revoked == {token: issued_at + 3600}


class FakeRedis:
    """Keys with expiry, enough of redis.asyncio.Redis for revocations"""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    async def set(self, key, value):
        self.values[key] = value

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl

    async def exists(self, key):
        return int(key in self.values)

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):
    async def setex(self, key, ttl, value):
        raise RedisConnectionError("Connection refused")

    async def exists(self, key):
        raise RedisConnectionError("Connection refused")


async def test_logout_is_shared_between_workers(session_factory):
    redis = FakeRedis()
    first = AuthService(
        session_factory, secret_key="unit-test-key", token_ttl=3600, revocations=RedisTokenRevocations(redis),
    )
    second = AuthService(
        session_factory, secret_key="unit-test-key", token_ttl=3600, revocations=RedisTokenRevocations(redis),
    )
    token = await first.sign_up("dana@example.com", "secret1")
    assert await second.current_user(token) is not None

    await first.logout(token)

    assert await second.current_user(token) is None
    assert len(second.revocations) == 0
    [(key, ttl)] = redis.ttls.items()
    assert key.startswith("rafflehub:revoked:")
    assert token not in key
    assert 0 < ttl <= 3601

    await first.close()
    assert redis.closed


async def test_unreachable_redis_keeps_local_revocations():
    revocations = RedisTokenRevocations(BrokenRedis())

    await revocations.revoke("token", time.time() + 60)

    assert await revocations.is_revoked("token")
    assert not await revocations.is_revoked("other-token")
