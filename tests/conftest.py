import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["PAYMENT_PROVIDER"] = "simulated"
os.environ.pop("REDIS_URL", None)
os.environ.pop("RANDOM_ORG_API_KEY", None)

from decimal import Decimal
from typing import List, Optional

import pytest
import pytest_asyncio

from rafflehub.database.models import Base
from rafflehub.database.session import build_engine, build_session_factory
from rafflehub.records import CreatorProfile, Payer
from rafflehub.services.payment_service import PaymentGateway, PaymentReceipt
from rafflehub.services.raffle_store import RaffleStore

CREATOR_ID = "creator-1"


class ScriptedRandom:
    """Random source returning preset indices, records every range it was asked for"""

    name = "scripted"

    def __init__(self, *indices: int):
        self.indices = list(indices)
        self.sizes: List[int] = []

    async def pick_index(self, size: int):
        self.sizes.append(size)
        index = self.indices.pop(0) if self.indices else 0
        return index, None


class RecordingGateway(PaymentGateway):
    """Gateway double that records charges and optionally fails"""

    name = "recording"

    def __init__(self, error: Optional[Exception] = None):
        super().__init__(timeout=None)
        self.error = error
        self.charges = []
        self.idempotence_keys = []

    async def _charge(self, amount, payment_token, description, metadata, idempotence_key):
        self.charges.append((amount, payment_token, metadata))
        self.idempotence_keys.append(idempotence_key)
        if self.error:
            raise self.error
        return PaymentReceipt(
            payment_id=f"pay_{len(self.charges)}",
            payer_token=payment_token,
            amount=amount,
            idempotence_key=idempotence_key,
        )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rafflehub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return RaffleStore(session_factory)


@pytest.fixture
def make_raffle(store):
    async def _make(ticket_price="5.00", creator_id=CREATOR_ID, name="Signed guitar", created_at=None):
        return await store.create(
            name=name,
            description="Played live once",
            ticket_price=Decimal(ticket_price),
            creator_id=creator_id,
            creator_profile=CreatorProfile(display_name="Creator", bio="Makes raffles"),
            image_url="/media/raffles/guitar.png",
            created_at=created_at,
        )
    return _make


@pytest.fixture
def alice():
    return Payer(user_id="alice", name="alice@example.com")


@pytest.fixture
def bob():
    return Payer(user_id="bob", name="bob@example.com")


@pytest.fixture
def carol():
    return Payer(user_id="carol", name="carol@example.com")
