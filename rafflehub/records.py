"""Plain raffle records shared by the services, detached from the ORM session"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Entry(BaseModel):
    """One purchased ticket"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    name: str
    payment_id: Optional[str] = None  # Payment that bought this ticket


class Payer(BaseModel):
    """Identity of a user whose payment succeeded"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str


class CreatorProfile(BaseModel):
    display_name: str = ""
    bio: str = ""


class RaffleRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str = ""
    image_url: Optional[str] = None
    ticket_price: Decimal
    entries: List[Entry] = Field(default_factory=list)
    winner: Optional[Entry] = None
    random_result: Optional[dict] = None
    creator_id: str
    creator_profile: Optional[CreatorProfile] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_closed(self) -> bool:
        return self.winner is not None

    def entries_payload(self) -> List[dict]:
        return [entry.model_dump() for entry in self.entries]
