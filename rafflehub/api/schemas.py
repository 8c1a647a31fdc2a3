from pydantic import BaseModel, Field
from typing import Optional

from rafflehub.records import Entry


class CredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)


class TokenResponse(BaseModel):
    token: str
    user_id: str


class ProfileResponse(BaseModel):
    user_id: str
    email: str
    display_name: str
    bio: str


class ProfileUpdateRequest(BaseModel):
    display_name: str = Field(..., max_length=200)
    bio: str = Field("", max_length=2000)


class CreateRaffleResponse(BaseModel):
    id: str


class QuoteResponse(BaseModel):
    ticket_price: str
    platform_fee: str
    total: str
    currency: str


class PurchaseRequest(BaseModel):
    payment_token: Optional[str] = None  # Missing token means card entry was cancelled
    idempotence_key: Optional[str] = Field(None, min_length=1, max_length=64)  # Resume an earlier attempt


class PurchaseResponse(BaseModel):
    status: str
    message: str
    idempotence_key: str
    payment_id: Optional[str] = None
    amount_charged: Optional[str] = None
    entry: Optional[Entry] = None


class DrawResponse(BaseModel):
    winner: Entry
