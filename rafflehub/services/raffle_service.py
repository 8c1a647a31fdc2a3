from decimal import Decimal, InvalidOperation
from typing import Optional

from loguru import logger

from rafflehub.records import CreatorProfile
from rafflehub.services.payment_service import TWO_PLACES, to_decimal
from rafflehub.services.raffle_store import RaffleStore
from rafflehub.services.storage_service import LocalImageStorage


class RaffleValidationError(ValueError):
    """Raffle form is incomplete or invalid"""
    pass


def parse_ticket_price(value) -> Decimal:
    """Positive price with at most two decimal places"""
    try:
        price = to_decimal(value)
    except (InvalidOperation, ValueError) as e:
        raise RaffleValidationError("Ticket price must be a number") from e

    if not price.is_finite() or price <= 0:
        raise RaffleValidationError("Ticket price must be positive")
    if price != price.quantize(TWO_PLACES):
        raise RaffleValidationError("Ticket price can have at most two decimal places")
    return price.quantize(TWO_PLACES)


class RaffleService:
    """Creates raffles from the owner's form input"""

    def __init__(self, store: RaffleStore, storage: LocalImageStorage):
        self.store = store
        self.storage = storage

    async def create_raffle(
        self,
        creator_id: str,
        creator_profile: CreatorProfile,
        name: str,
        description: str,
        ticket_price,
        image: Optional[bytes],
        image_filename: str = "image",
    ) -> str:
        """
        Validate the form, upload the cover image and store the raffle

        Returns:
            ID of the new raffle

        Raises:
            RaffleValidationError: Missing name or image, or non-positive price
            StorageError: Image upload failed
        """
        name = (name or "").strip()
        if not name:
            raise RaffleValidationError("Raffle name is required")
        price = parse_ticket_price(ticket_price)
        if not image:
            raise RaffleValidationError("Raffle image is required")

        image_url = await self.storage.upload(image, image_filename)

        raffle_id = await self.store.create(
            name=name,
            description=description or "",
            ticket_price=price,
            creator_id=creator_id,
            creator_profile=creator_profile,
            image_url=image_url,
        )
        logger.success(f"Raffle {raffle_id} '{name}' is open, ticket price {price}")
        return raffle_id
