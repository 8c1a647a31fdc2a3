import asyncio
from functools import partial
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from yookassa import Configuration, Payment
from yookassa.domain.exceptions.bad_request_error import BadRequestError
from yookassa.domain.exceptions.forbidden_error import ForbiddenError
from yookassa.domain.exceptions.unauthorized_error import UnauthorizedError
from loguru import logger

from rafflehub.config import settings

TWO_PLACES = Decimal("0.01")

Amount = Union[Decimal, str, int, float]


class PaymentError(Exception):
    """Payment processing error"""
    pass


class PaymentDeclinedError(PaymentError):
    """The card or the gateway refused the charge"""
    pass


class PaymentCancelledError(PaymentError):
    """The user abandoned card entry before a payment method existed"""
    pass


class GatewayUnavailableError(PaymentError):
    """The gateway refused the request before any payment existed"""
    pass


class PaymentStateUnknownError(PaymentError):
    """The charge may have been captured; retry with the same idempotence key to find out"""

    def __init__(self, message: str, idempotence_key: str):
        super().__init__(message)
        self.idempotence_key = idempotence_key


class PaymentReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    payer_token: str  # Opaque, only proves the charge went through
    amount: Decimal
    status: str = "succeeded"
    idempotence_key: Optional[str] = None


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def platform_fee(ticket_price: Amount, fee_rate: Optional[Decimal] = None) -> Decimal:
    """Platform fee for one ticket, unrounded"""
    rate = settings.fee_rate if fee_rate is None else fee_rate
    return to_decimal(ticket_price) * rate


def charge_amount(ticket_price: Amount, fee_rate: Optional[Decimal] = None) -> Decimal:
    """
    Total charged for one ticket: price plus platform fee

    The value is not rounded; use format_amount for display and for the
    gateway wire value.
    """
    price = to_decimal(ticket_price)
    return price + platform_fee(price, fee_rate)


def format_amount(amount: Amount) -> str:
    """Round half-up to two decimal places"""
    return str(to_decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def quote(ticket_price: Amount) -> Dict[str, str]:
    """Price breakdown shown before paying"""
    price = to_decimal(ticket_price)
    return {
        "ticket_price": format_amount(price),
        "platform_fee": format_amount(platform_fee(price)),
        "total": format_amount(charge_amount(price)),
        "currency": settings.PAYMENT_CURRENCY,
    }


class PaymentGateway:
    """
    Boundary to the card processor

    Subclasses implement _charge. charge() adds the checks every provider
    shares: a missing payment token means the user cancelled, and every call
    carries an idempotence key so a retried purchase never charges twice.
    """

    name = "base"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    async def charge(
        self,
        amount: Amount,
        payment_token: Optional[str],
        description: str = "",
        metadata: Optional[Dict[str, str]] = None,
        idempotence_key: Optional[str] = None,
    ) -> PaymentReceipt:
        """
        Charge the given amount using a token produced by the card widget

        Args:
            idempotence_key: Reuse the key of an earlier attempt to get its
                payment back instead of a new charge

        Raises:
            PaymentCancelledError: No payment token was provided
            PaymentDeclinedError: The charge was refused
            GatewayUnavailableError: The gateway refused the request, nothing was charged
            PaymentStateUnknownError: The charge may or may not have been captured
        """
        if not payment_token:
            raise PaymentCancelledError("Card entry was cancelled before a payment method was created")

        amount = to_decimal(amount)
        idempotence_key = idempotence_key or str(uuid4())
        logger.info(
            f"Charging {format_amount(amount)} {settings.PAYMENT_CURRENCY} via {self.name} "
            f"(idempotence key {idempotence_key})"
        )
        return await self._charge(amount, payment_token, description, metadata or {}, idempotence_key)

    async def _charge(
        self,
        amount: Decimal,
        payment_token: str,
        description: str,
        metadata: Dict[str, str],
        idempotence_key: str,
    ) -> PaymentReceipt:
        raise NotImplementedError


class SimulatedGateway(PaymentGateway):
    """Accepts every token except "decline"; nothing is actually charged"""

    name = "simulated"

    DECLINE_TOKEN = "decline"

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout=timeout)
        self._receipts: Dict[str, PaymentReceipt] = {}

    async def _charge(self, amount, payment_token, description, metadata, idempotence_key) -> PaymentReceipt:
        if idempotence_key in self._receipts:
            return self._receipts[idempotence_key]
        if payment_token == self.DECLINE_TOKEN:
            raise PaymentDeclinedError("Your card was declined")

        logger.info(f"Simulating charge for: {format_amount(amount)} ({description})")
        receipt = PaymentReceipt(
            payment_id=f"sim_{uuid4().hex}",
            payer_token=payment_token,
            amount=amount,
            idempotence_key=idempotence_key,
        )
        self._receipts[idempotence_key] = receipt
        return receipt


class YooKassaGateway(PaymentGateway):
    """
    Charges card tokens produced by the YooKassa checkout widget

    The SDK call blocks without any HTTP timeout and cannot be cancelled once
    it runs in a worker thread. When it outlives ``timeout`` the caller gets
    PaymentStateUnknownError right away while the call keeps running, and its
    late result is logged against the idempotence key. YooKassa answers a
    repeated key with the payment it already created, so retrying with the
    same key is how the state gets resolved.
    """

    name = "yookassa"

    def __init__(
        self,
        shop_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout=timeout)
        shop_id = shop_id or settings.YOOKASSA_SHOP_ID
        secret_key = secret_key or settings.YOOKASSA_SECRET_KEY
        self.currency = currency or settings.PAYMENT_CURRENCY

        if shop_id and secret_key:
            Configuration.account_id = shop_id
            Configuration.secret_key = secret_key
            self.enabled = True
            logger.info("YooKassa payment service initialized")
        else:
            self.enabled = False
            logger.warning("YooKassa credentials not provided, card payments disabled")

    async def _charge(self, amount, payment_token, description, metadata, idempotence_key) -> PaymentReceipt:
        if not self.enabled:
            raise GatewayUnavailableError("YooKassa payment service is not configured")

        params = {
            "amount": {
                "value": format_amount(amount),
                "currency": self.currency,
            },
            "payment_token": payment_token,
            "capture": True,
            "description": description,
            "metadata": metadata,
        }

        try:
            payment = await self._create(params, idempotence_key)
        except PaymentError:
            raise
        except Exception as e:
            # The request may have reached YooKassa, ask again with the same key
            logger.warning(f"Payment {idempotence_key} failed in flight ({e!r}), checking its state")
            try:
                payment = await self._create(params, idempotence_key)
            except PaymentError:
                raise
            except Exception as retry_error:
                logger.error(f"Payment {idempotence_key} state unknown: {retry_error!r}")
                raise PaymentStateUnknownError(
                    f"Could not confirm payment: {retry_error}", idempotence_key
                ) from retry_error

        return self._interpret(payment, amount, payment_token, idempotence_key)

    async def _create(self, params: Dict[str, Any], idempotence_key: str):
        """Payment.create in a worker thread, bounded by timeout without abandoning the call"""
        task = asyncio.ensure_future(asyncio.to_thread(Payment.create, params, idempotence_key))
        done, _ = await asyncio.wait({task}, timeout=self.timeout)

        if not done:
            task.add_done_callback(partial(self._log_late_result, idempotence_key))
            logger.error(
                f"Payment {idempotence_key} did not answer within {self.timeout}s, "
                f"it may still be captured"
            )
            raise PaymentStateUnknownError("Payment gateway did not answer in time", idempotence_key)

        try:
            return task.result()
        except BadRequestError as e:
            logger.warning(f"YooKassa rejected payment: {e}")
            raise PaymentDeclinedError(f"Payment was rejected: {e}") from e
        except (UnauthorizedError, ForbiddenError) as e:
            logger.error(f"YooKassa refused our credentials: {e}")
            raise GatewayUnavailableError(f"Payment gateway refused the request: {e}") from e

    @staticmethod
    def _log_late_result(idempotence_key: str, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Late payment {idempotence_key} failed: {error!r}")
            return
        payment = task.result()
        logger.warning(
            f"Late payment {idempotence_key} finished as {payment.id} with status {payment.status}, "
            f"needs reconciliation"
        )

    def _interpret(self, payment: Any, amount: Decimal, payment_token: str, idempotence_key: str) -> PaymentReceipt:
        """Only a captured payment counts as success"""
        if payment.status == "succeeded":
            payment_method = getattr(payment, "payment_method", None)
            payer_token = getattr(payment_method, "id", None) or payment_token
            logger.info(f"Payment {payment.id} succeeded, amount: {format_amount(amount)} {self.currency}")
            return PaymentReceipt(
                payment_id=payment.id,
                payer_token=payer_token,
                amount=amount,
                status=payment.status,
                idempotence_key=idempotence_key,
            )

        if payment.status == "canceled":
            details = getattr(payment, "cancellation_details", None)
            reason = getattr(details, "reason", None) or "unknown"
            logger.warning(f"Payment {payment.id} canceled: {reason}")
            raise PaymentDeclinedError(f"Payment was declined ({reason})")

        # pending / waiting_for_capture: money is not captured, no entry may be granted
        logger.warning(f"Payment {payment.id} not completed, status: {payment.status}")
        raise PaymentDeclinedError(f"Payment was not completed (status: {payment.status})")


def build_payment_gateway() -> PaymentGateway:
    """Gateway selected by PAYMENT_PROVIDER"""
    if settings.PAYMENT_PROVIDER == "yookassa":
        return YooKassaGateway(timeout=settings.PAYMENT_TIMEOUT_SECONDS)
    return SimulatedGateway()
