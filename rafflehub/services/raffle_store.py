from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from rafflehub.database import crud
from rafflehub.database.session import get_session
from rafflehub.records import CreatorProfile, RaffleRecord
from rafflehub.services.raffle_feed import Predicate, RaffleFeed, Subscription


class RaffleStore:
    """
    Durable keyed storage for raffle records

    Every committed write is announced to the snapshot feed after the
    transaction closes, so subscribers never see uncommitted state.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory
        self.feed = RaffleFeed(self.list_raffles)

    async def create(
        self,
        name: str,
        description: str,
        ticket_price: Decimal,
        creator_id: str,
        creator_profile: Optional[CreatorProfile] = None,
        image_url: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        async with get_session(self.session_factory) as session:
            raffle = await crud.create_raffle(
                session,
                name=name,
                description=description,
                ticket_price=ticket_price,
                creator_id=creator_id,
                creator_profile=creator_profile.model_dump() if creator_profile else None,
                image_url=image_url,
                created_at=created_at,
            )
            raffle_id = raffle.id

        logger.info(f"Raffle {raffle_id} created by {creator_id}")
        await self.feed.notify_changed([raffle_id])
        return raffle_id

    async def get(self, raffle_id: str) -> Optional[RaffleRecord]:
        async with get_session(self.session_factory) as session:
            raffle = await crud.get_raffle_by_id(session, raffle_id)
            return RaffleRecord.model_validate(raffle) if raffle else None

    async def list_raffles(self, predicate: Optional[Predicate] = None) -> List[RaffleRecord]:
        async with get_session(self.session_factory) as session:
            raffles = await crud.list_raffles(session)
            records = [RaffleRecord.model_validate(raffle) for raffle in raffles]

        if predicate:
            records = [record for record in records if predicate(record)]
        return records

    async def update(
        self,
        raffle_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        require_open: bool = False,
    ) -> bool:
        """Merge fields into a raffle; False when missing or a guard rejected the write"""
        async with get_session(self.session_factory) as session:
            updated = await crud.update_raffle(
                session,
                raffle_id,
                fields,
                expected_version=expected_version,
                require_open=require_open,
            )

        if updated:
            logger.debug(f"Raffle {raffle_id} updated: {', '.join(sorted(fields))}")
            await self.feed.notify_changed([raffle_id])
        return updated

    async def delete(self, raffle_id: str) -> bool:
        async with get_session(self.session_factory) as session:
            deleted = await crud.delete_raffle(session, raffle_id)

        if deleted:
            logger.info(f"Raffle {raffle_id} deleted")
            await self.feed.notify_changed([raffle_id])
        return deleted

    async def subscribe(self, predicate: Optional[Predicate] = None) -> Subscription:
        return await self.feed.subscribe(predicate)
