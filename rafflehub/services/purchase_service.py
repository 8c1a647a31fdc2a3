"""
Ticket purchase flow

Charge first, then admit. The entry is only ever written after the gateway
reported success, and a failed write after a successful charge is returned as
its own outcome so callers can tell the user their money and their entry
diverged.

Every purchase carries an idempotence key. Repeating a purchase with the key
of an earlier attempt returns that attempt's payment from the gateway and, if
it was already admitted, its entry, so a retry never charges or enters twice.
"""

from enum import Enum
from typing import Optional
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel

from rafflehub.records import Entry, Payer
from rafflehub.services.admission_service import (
    EntryAdmission,
    EntryNotRecordedError,
    RaffleClosedError,
    STORE_ERRORS,
)
from rafflehub.services.payment_service import (
    PaymentGateway,
    PaymentReceipt,
    PaymentStateUnknownError,
    charge_amount,
    format_amount,
)
from rafflehub.services.raffle_store import RaffleStore


class PurchaseStatus(str, Enum):
    ENTERED = "entered"
    PAYMENT_CAPTURED_ENTRY_NOT_RECORDED = "payment_captured_entry_not_recorded"
    PAYMENT_STATE_UNKNOWN = "payment_state_unknown"


class PurchaseOutcome(BaseModel):
    status: PurchaseStatus
    raffle_id: str
    idempotence_key: str
    receipt: Optional[PaymentReceipt] = None
    entry: Optional[Entry] = None
    message: str


class PurchaseService:
    def __init__(self, store: RaffleStore, gateway: PaymentGateway, admission: Optional[EntryAdmission] = None):
        self.store = store
        self.gateway = gateway
        self.admission = admission or EntryAdmission(store)

    async def purchase(
        self,
        raffle_id: str,
        payer: Payer,
        payment_token: Optional[str],
        idempotence_key: Optional[str] = None,
    ) -> PurchaseOutcome:
        """
        Buy one ticket

        Args:
            idempotence_key: Key of an earlier attempt to resume; a fresh key
                is generated when omitted

        Raises:
            RaffleClosedError: Raffle missing, or drawn on a first attempt; nothing was charged
            EntryNotRecordedError: Raffle could not be read, nothing was charged
            PaymentError: Charge failed, no entry was created
        """
        is_retry = idempotence_key is not None
        idempotence_key = idempotence_key or str(uuid4())

        try:
            raffle = await self.store.get(raffle_id)
        except STORE_ERRORS as e:
            raise EntryNotRecordedError(f"Could not read raffle {raffle_id}") from e

        if raffle is None:
            raise RaffleClosedError(f"Raffle {raffle_id} no longer exists")
        # A retried attempt may already be paid for, let the gateway and admission tell
        if raffle.is_closed and not is_retry:
            raise RaffleClosedError(f"Raffle {raffle_id} already has a winner")

        amount = charge_amount(raffle.ticket_price)
        try:
            receipt = await self.gateway.charge(
                amount,
                payment_token,
                description=f"Ticket for raffle {raffle.name}",
                metadata={"raffle_id": raffle_id, "user_id": payer.user_id},
                idempotence_key=idempotence_key,
            )
        except PaymentStateUnknownError as e:
            logger.error(
                f"Payment of {format_amount(amount)} for user {payer.user_id} in raffle {raffle_id} "
                f"has unknown state, idempotence key {e.idempotence_key}: {e}"
            )
            return PurchaseOutcome(
                status=PurchaseStatus.PAYMENT_STATE_UNKNOWN,
                raffle_id=raffle_id,
                idempotence_key=e.idempotence_key,
                message="We could not confirm your payment yet. Try again in a moment to finish your entry.",
            )

        try:
            entry = await self.admission.admit(raffle_id, payer, payment_id=receipt.payment_id)
        except (EntryNotRecordedError, RaffleClosedError) as e:
            # Needs manual reconciliation, the charge is not reversed here
            logger.error(
                f"Payment {receipt.payment_id} of {format_amount(receipt.amount)} captured for "
                f"user {payer.user_id} but entry in raffle {raffle_id} not recorded "
                f"(idempotence key {idempotence_key}): {e}"
            )
            return PurchaseOutcome(
                status=PurchaseStatus.PAYMENT_CAPTURED_ENTRY_NOT_RECORDED,
                raffle_id=raffle_id,
                idempotence_key=idempotence_key,
                receipt=receipt,
                message="Payment succeeded, but failed to save entry.",
            )

        return PurchaseOutcome(
            status=PurchaseStatus.ENTERED,
            raffle_id=raffle_id,
            idempotence_key=idempotence_key,
            receipt=receipt,
            entry=entry,
            message="You're in! Good luck.",
        )
