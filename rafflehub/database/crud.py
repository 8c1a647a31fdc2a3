from typing import Optional, List, Any, Dict
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Raffle, Account, Profile

# Fields a partial update may touch; name, description and price are fixed at creation
UPDATABLE_RAFFLE_FIELDS = frozenset({"entries", "winner", "random_result", "image_url"})


# ==================== RAFFLE OPERATIONS ====================

async def create_raffle(
    session: AsyncSession,
    name: str,
    description: str,
    ticket_price: Decimal,
    creator_id: str,
    creator_profile: Optional[dict] = None,
    image_url: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Raffle:
    """Create new raffle with an empty entry list"""
    raffle = Raffle(
        name=name,
        description=description,
        ticket_price=ticket_price,
        creator_id=creator_id,
        creator_profile=creator_profile,
        image_url=image_url,
        entries=[],
        winner=None,
    )
    if created_at is not None:
        raffle.created_at = created_at
    session.add(raffle)
    await session.flush()
    return raffle


async def get_raffle_by_id(session: AsyncSession, raffle_id: str) -> Optional[Raffle]:
    """Get raffle by ID"""
    result = await session.execute(
        select(Raffle).where(Raffle.id == raffle_id)
    )
    return result.scalar_one_or_none()


async def list_raffles(session: AsyncSession) -> List[Raffle]:
    """Get all raffles in arrival order"""
    result = await session.execute(
        select(Raffle).order_by(Raffle.created_at, Raffle.id)
    )
    return list(result.scalars().all())


async def update_raffle(
    session: AsyncSession,
    raffle_id: str,
    fields: Dict[str, Any],
    expected_version: Optional[int] = None,
    require_open: bool = False,
) -> bool:
    """
    Merge the given fields into a raffle

    Args:
        session: Database session
        raffle_id: Raffle to update
        fields: Partial field values, untouched fields keep their value
        expected_version: Only apply if the stored version still matches
        require_open: Only apply while the raffle has no winner

    Returns:
        True if a row was updated, False if the raffle is missing or a guard failed
    """
    unknown = set(fields) - UPDATABLE_RAFFLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    stmt = update(Raffle).where(Raffle.id == raffle_id)
    if expected_version is not None:
        stmt = stmt.where(Raffle.version == expected_version)
    if require_open:
        stmt = stmt.where(Raffle.winner.is_(None))

    result = await session.execute(
        stmt.values(**fields, version=Raffle.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def delete_raffle(session: AsyncSession, raffle_id: str) -> bool:
    """Delete raffle, returns False if it did not exist"""
    result = await session.execute(
        delete(Raffle)
        .where(Raffle.id == raffle_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


# ==================== ACCOUNT OPERATIONS ====================

async def create_account(session: AsyncSession, email: str, password_hash: str) -> Account:
    """Create new account"""
    account = Account(email=email, password_hash=password_hash)
    session.add(account)
    await session.flush()
    return account


async def get_account_by_email(session: AsyncSession, email: str) -> Optional[Account]:
    """Get account by email"""
    result = await session.execute(
        select(Account).where(Account.email == email)
    )
    return result.scalar_one_or_none()


async def get_account_by_id(session: AsyncSession, user_id: str) -> Optional[Account]:
    """Get account by ID"""
    return await session.get(Account, user_id)


# ==================== PROFILE OPERATIONS ====================

async def get_profile(session: AsyncSession, user_id: str) -> Optional[Profile]:
    """Get profile by user ID"""
    return await session.get(Profile, user_id)


async def set_profile(
    session: AsyncSession,
    user_id: str,
    display_name: str,
    bio: str,
) -> Profile:
    """Create or overwrite a user's profile"""
    profile = await session.get(Profile, user_id)

    if profile:
        profile.display_name = display_name
        profile.bio = bio
    else:
        profile = Profile(user_id=user_id, display_name=display_name, bio=bio)
        session.add(profile)

    await session.flush()
    return profile
