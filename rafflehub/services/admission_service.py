"""
Entry admission

Appends an entry to a raffle once a payment has already succeeded. The gateway
is never called from here, so retrying admission can never charge twice.

The append is a read-modify-write on the shared entry list guarded by the
raffle's version column: a concurrent writer makes the guarded update miss,
and the append is replayed on top of the fresh list.
"""

from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from rafflehub.config import settings
from rafflehub.records import Entry, Payer
from rafflehub.services.raffle_store import RaffleStore

STORE_ERRORS = (SQLAlchemyError, OSError)


class AdmissionError(Exception):
    """Entry admission error"""
    pass


class RaffleClosedError(AdmissionError):
    """The raffle is gone or already has a winner"""
    pass


class EntryNotRecordedError(AdmissionError):
    """Payment went through but the entry could not be stored"""
    pass


class EntryAdmission:
    def __init__(self, store: RaffleStore, max_retries: Optional[int] = None):
        self.store = store
        self.max_retries = settings.ADMISSION_MAX_RETRIES if max_retries is None else max_retries

    async def admit(self, raffle_id: str, payer: Payer, payment_id: Optional[str] = None) -> Entry:
        """
        Record a paid entry

        Args:
            raffle_id: Raffle the ticket was bought for
            payer: User whose payment succeeded
            payment_id: Payment that bought the ticket; a payment already
                admitted returns its existing entry instead of a second one

        Returns:
            The stored entry

        Raises:
            RaffleClosedError: Raffle deleted or winner already drawn
            EntryNotRecordedError: Store failure or too many write conflicts
        """
        entry = Entry(user_id=payer.user_id, name=payer.name, payment_id=payment_id)
        attempt = 0

        while True:
            attempt += 1

            try:
                raffle = await self.store.get(raffle_id)
            except STORE_ERRORS as e:
                logger.error(f"Failed to read raffle {raffle_id} during admission: {e}")
                raise EntryNotRecordedError(f"Could not read raffle {raffle_id}") from e

            if raffle is None:
                raise RaffleClosedError(f"Raffle {raffle_id} no longer exists")

            if payment_id:
                admitted = next((e for e in raffle.entries if e.payment_id == payment_id), None)
                if admitted:
                    logger.info(f"Payment {payment_id} already admitted as entry {admitted.id}")
                    return admitted

            if raffle.is_closed:
                raise RaffleClosedError(f"Raffle {raffle_id} already has a winner")

            existing_ids = {existing.id for existing in raffle.entries}
            while entry.id in existing_ids:
                entry = Entry(user_id=payer.user_id, name=payer.name, payment_id=payment_id)

            entries = raffle.entries_payload() + [entry.model_dump()]

            try:
                updated = await self.store.update(
                    raffle_id,
                    {"entries": entries},
                    expected_version=raffle.version,
                    require_open=True,
                )
            except STORE_ERRORS as e:
                logger.error(f"Failed to save entry for {payer.user_id} in raffle {raffle_id}: {e}")
                raise EntryNotRecordedError(f"Could not save entry in raffle {raffle_id}") from e

            if updated:
                logger.success(
                    f"Entry {entry.id} admitted to raffle {raffle_id} for {payer.user_id} "
                    f"({len(entries)} entries)"
                )
                return entry

            if attempt > self.max_retries:
                logger.error(f"Giving up admission to raffle {raffle_id} after {attempt} conflicting writes")
                raise EntryNotRecordedError(f"Raffle {raffle_id} kept changing, entry not saved")

            logger.warning(f"Raffle {raffle_id} changed during admission, retrying ({attempt}/{self.max_retries})")
