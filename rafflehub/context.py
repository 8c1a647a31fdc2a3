"""Explicit application state shared by the API routes"""
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from rafflehub.config import settings
from rafflehub.services.admission_service import EntryAdmission
from rafflehub.services.auth_service import AuthService
from rafflehub.services.draw_service import WinnerSelection
from rafflehub.services.payment_service import PaymentGateway, build_payment_gateway
from rafflehub.services.projection import RaffleViewState
from rafflehub.services.purchase_service import PurchaseService
from rafflehub.services.raffle_feed import RedisChangeBridge
from rafflehub.services.raffle_service import RaffleService
from rafflehub.services.raffle_store import RaffleStore
from rafflehub.services.storage_service import LocalImageStorage


@dataclass
class AppContext:
    store: RaffleStore
    auth: AuthService
    raffles: RaffleService
    admission: EntryAdmission
    draws: WinnerSelection
    purchases: PurchaseService
    view_state: RaffleViewState
    bridge: Optional[RedisChangeBridge] = None

    async def start(self):
        """Begin consuming the raffle feed (and other workers' changes)"""
        if settings.REDIS_URL:
            self.bridge = RedisChangeBridge(self.store.feed, settings.REDIS_URL, settings.REDIS_CHANNEL)
            try:
                await self.bridge.start()
            except Exception as e:
                logger.warning(f"Redis unavailable, raffle changes stay local to this worker: {e}")
                self.bridge = None
        await self.view_state.start()

    async def stop(self):
        await self.view_state.stop()
        if self.bridge:
            await self.bridge.stop()
        await self.auth.close()


def build_context(
    session_factory: Optional[async_sessionmaker] = None,
    gateway: Optional[PaymentGateway] = None,
    random_source=None,
    storage: Optional[LocalImageStorage] = None,
) -> AppContext:
    store = RaffleStore(session_factory)
    admission = EntryAdmission(store)
    return AppContext(
        store=store,
        auth=AuthService(session_factory),
        raffles=RaffleService(store, storage or LocalImageStorage()),
        admission=admission,
        draws=WinnerSelection(store, random_source=random_source),
        purchases=PurchaseService(store, gateway or build_payment_gateway(), admission),
        view_state=RaffleViewState(store),
    )
