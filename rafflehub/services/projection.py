"""
Read-only raffle views

Pure derivations over a snapshot of the raffle collection, plus the explicit
view state object that keeps the last snapshot delivered by the store feed.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional

from loguru import logger
from pydantic import BaseModel

from rafflehub.records import CreatorProfile, Entry, RaffleRecord
from rafflehub.services.payment_service import format_amount, quote


class RaffleSummary(BaseModel):
    id: str
    name: str
    description: str
    image_url: Optional[str] = None
    ticket_price: str
    creator_name: str
    entrant_count: int
    winner_name: Optional[str] = None
    created_at: Optional[datetime] = None


class RaffleDetail(BaseModel):
    id: str
    name: str
    description: str
    image_url: Optional[str] = None
    ticket_price: str
    platform_fee: str
    total_price: str
    currency: str
    creator_id: str
    creator_profile: CreatorProfile
    entries: List[Entry]
    entrant_count: int
    winner: Optional[Entry] = None
    can_enter: bool
    can_manage: bool
    can_draw: bool
    created_at: Optional[datetime] = None


def _created_key(record: RaffleRecord):
    # Records without a timestamp sort as the oldest
    created_at = record.created_at
    if created_at is None:
        return (0, datetime.min)
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    return (1, created_at)


def entrant_count(record: RaffleRecord) -> int:
    return len(record.entries)


def active_list(snapshot: List[RaffleRecord]) -> List[RaffleRecord]:
    """Newest first; equal timestamps keep their snapshot order"""
    return sorted(snapshot, key=_created_key, reverse=True)


def summarize(record: RaffleRecord) -> RaffleSummary:
    creator = record.creator_profile
    return RaffleSummary(
        id=record.id,
        name=record.name,
        description=record.description,
        image_url=record.image_url,
        ticket_price=format_amount(record.ticket_price),
        creator_name=(creator.display_name if creator else "") or "Unknown Creator",
        entrant_count=entrant_count(record),
        winner_name=record.winner.name if record.winner else None,
        created_at=record.created_at,
    )


def active_summaries(snapshot: List[RaffleRecord]) -> List[RaffleSummary]:
    return [summarize(record) for record in active_list(snapshot)]


def detail(
    snapshot: List[RaffleRecord],
    raffle_id: str,
    viewer_id: Optional[str] = None,
) -> Optional[RaffleDetail]:
    """Detail view of one raffle, None if it is not in the snapshot"""
    record = next((r for r in snapshot if r.id == raffle_id), None)
    if record is None:
        return None

    prices = quote(record.ticket_price)
    is_owner = viewer_id is not None and viewer_id == record.creator_id
    return RaffleDetail(
        id=record.id,
        name=record.name,
        description=record.description,
        image_url=record.image_url,
        ticket_price=prices["ticket_price"],
        platform_fee=prices["platform_fee"],
        total_price=prices["total"],
        currency=prices["currency"],
        creator_id=record.creator_id,
        creator_profile=record.creator_profile or CreatorProfile(),
        entries=list(record.entries),
        entrant_count=entrant_count(record),
        winner=record.winner,
        can_enter=not record.is_closed,
        can_manage=is_owner,
        can_draw=is_owner and not record.is_closed and bool(record.entries),
        created_at=record.created_at,
    )


class RaffleViewState:
    """
    Client-side state fed by a store subscription

    Holds the last delivered snapshot and the selected raffle. When the store
    cannot be read the feed skips delivery, so the state simply keeps serving
    the previous snapshot.
    """

    def __init__(self, store, viewer_id: Optional[str] = None):
        self.store = store
        self.viewer_id = viewer_id
        self.snapshot: List[RaffleRecord] = []
        self.selected_id: Optional[str] = None
        self.generation = 0
        self._listeners: List[Callable[["RaffleViewState"], None]] = []
        self._subscription = None
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, listener: Callable[["RaffleViewState"], None]):
        self._listeners.append(listener)

    def apply(self, snapshot: List[RaffleRecord]):
        self.snapshot = snapshot
        self.generation += 1
        for listener in list(self._listeners):
            listener(self)

    def select(self, raffle_id: Optional[str]):
        self.selected_id = raffle_id

    @property
    def active(self) -> List[RaffleSummary]:
        return active_summaries(self.snapshot)

    @property
    def selected(self) -> Optional[RaffleDetail]:
        if self.selected_id is None:
            return None
        return detail(self.snapshot, self.selected_id, self.viewer_id)

    async def start(self):
        """Subscribe and keep applying snapshots in the background"""
        self._subscription = await self.store.subscribe()
        self._task = asyncio.create_task(self._drain())

    async def stop(self):
        if self._subscription:
            self._subscription.close()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _drain(self):
        async for snapshot in self._subscription:
            self.apply(snapshot)
        logger.debug("Raffle view subscription closed")
