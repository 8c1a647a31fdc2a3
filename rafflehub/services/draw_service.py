from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from rafflehub.config import settings
from rafflehub.records import Entry, RaffleRecord
from rafflehub.services.raffle_store import RaffleStore
from rafflehub.services.random_service import RandomOrgError, build_random_source

STORE_ERRORS = (SQLAlchemyError, OSError)


class DrawError(Exception):
    """Winner draw or owner action error"""
    pass


class RaffleNotFoundError(DrawError):
    pass


class DrawForbiddenError(DrawError):
    """Only the raffle creator may draw or delete"""
    pass


class AlreadyDrawnError(DrawError):
    pass


class NoEntriesError(DrawError):
    pass


class DrawPersistenceFailedError(DrawError):
    """The draw could not be saved, the raffle stays open"""
    pass


class RandomnessUnavailableError(DrawError):
    pass


class WinnerSelection:
    """Owner-only actions that finish a raffle: drawing the winner and deleting it"""

    def __init__(self, store: RaffleStore, random_source=None, max_retries: Optional[int] = None):
        self.store = store
        self.random_source = random_source or build_random_source()
        self.max_retries = settings.DRAW_MAX_RETRIES if max_retries is None else max_retries

    async def draw_winner(self, raffle_id: str, requester: str) -> Entry:
        """
        Pick one of the current entries uniformly at random and close the raffle

        Nothing is observable until the winner write commits. If it fails the
        raffle stays open and a retry draws again, possibly a different entry.

        Raises:
            RaffleNotFoundError, DrawForbiddenError, AlreadyDrawnError,
            NoEntriesError, RandomnessUnavailableError, DrawPersistenceFailedError
        """
        attempt = 0

        while True:
            attempt += 1
            raffle = await self._load_owned(raffle_id, requester)

            if raffle.is_closed:
                raise AlreadyDrawnError(f"Raffle {raffle_id} already has a winner")
            if not raffle.entries:
                raise NoEntriesError(f"Raffle {raffle_id} has no entries")

            try:
                index, proof = await self.random_source.pick_index(len(raffle.entries))
            except RandomOrgError as e:
                raise RandomnessUnavailableError(f"Could not get a random number: {e}") from e

            winner = raffle.entries[index]

            try:
                updated = await self.store.update(
                    raffle_id,
                    {"winner": winner.model_dump(), "random_result": proof},
                    expected_version=raffle.version,
                    require_open=True,
                )
            except STORE_ERRORS as e:
                logger.error(f"Failed to save winner of raffle {raffle_id}: {e}")
                raise DrawPersistenceFailedError(f"Could not save winner of raffle {raffle_id}") from e

            if updated:
                logger.success(
                    f"Raffle {raffle_id} winner: entry {winner.id} ({winner.name}), "
                    f"index {index} of {len(raffle.entries)}"
                )
                return winner

            if attempt > self.max_retries:
                raise DrawPersistenceFailedError(f"Raffle {raffle_id} kept changing during the draw")

            logger.warning(f"Raffle {raffle_id} changed during the draw, drawing again")

    async def delete_raffle(self, raffle_id: str, requester: str):
        """Delete a raffle in any state"""
        await self._load_owned(raffle_id, requester)

        try:
            deleted = await self.store.delete(raffle_id)
        except STORE_ERRORS as e:
            logger.error(f"Failed to delete raffle {raffle_id}: {e}")
            raise DrawPersistenceFailedError(f"Could not delete raffle {raffle_id}") from e

        if not deleted:
            raise RaffleNotFoundError(f"Raffle {raffle_id} not found")

    async def _load_owned(self, raffle_id: str, requester: str) -> RaffleRecord:
        try:
            raffle = await self.store.get(raffle_id)
        except STORE_ERRORS as e:
            logger.error(f"Failed to read raffle {raffle_id}: {e}")
            raise DrawPersistenceFailedError(f"Could not read raffle {raffle_id}") from e

        if raffle is None:
            raise RaffleNotFoundError(f"Raffle {raffle_id} not found")

        if requester != raffle.creator_id:
            logger.warning(f"User {requester} tried to manage raffle {raffle_id} owned by {raffle.creator_id}")
            raise DrawForbiddenError("Only the raffle creator can do this")

        return raffle
