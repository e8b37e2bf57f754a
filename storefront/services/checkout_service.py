import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from ..config.settings import settings
from ..database.db import DatabaseManager, db_instance
from ..exceptions import OrderCreationError
from ..models.khqr_model import Currency, SessionState
from ..models.order_model import (
    BakongCheckoutResponse,
    CheckoutRequest,
    PaymentMethod,
    PaymentStatus,
)
from ..utils.helpers import (
    calculate_total,
    convert_usd_to_khr,
    format_countdown,
    generate_order_id,
    sanitize_input,
)
from .payment_service import PaymentService, payment_service
from .payment_session import PaymentSessionController

logger = logging.getLogger(__name__)

# Finished checkouts stay queryable this long before they are dropped
CHECKOUT_RETENTION_SECONDS = 600


class BakongCheckout:
    """A checkout waiting on KHQR settlement before its order exists"""

    def __init__(self, checkout_id: str, request: CheckoutRequest, total: Decimal):
        self.checkout_id = checkout_id
        self.request = request
        self.total = total
        self.controller: Optional[PaymentSessionController] = None
        self.order_id: Optional[str] = None
        self.order_error: Optional[str] = None
        # Clock reading when the checkout was first seen finished
        self.finished_at: Optional[float] = None

    @property
    def is_paid(self) -> bool:
        session = self.controller.session if self.controller is not None else None
        return session is not None and session.state is SessionState.VERIFIED


class CheckoutService:
    """Places orders for cash-on-delivery and Bakong KHQR checkouts"""

    def __init__(self, payments: PaymentService, database: DatabaseManager, usd_to_khr_rate: int = 4100,
                 retention_seconds: float = CHECKOUT_RETENTION_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.payments = payments
        self.database = database
        self.usd_to_khr_rate = usd_to_khr_rate
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._checkouts: Dict[str, BakongCheckout] = {}

    def place_cash_order(self, request: CheckoutRequest) -> Dict[str, Any]:
        """Create an unpaid order to be settled on delivery"""
        order_id = request.checkout_id or generate_order_id()
        self._ensure_order_id_free(order_id)
        total = self._order_total(request)
        return self._create_order(
            order_id, request, total, PaymentMethod.CASH_ON_DELIVERY, PaymentStatus.UNPAID
        )

    async def start_bakong_checkout(self, request: CheckoutRequest) -> BakongCheckout:
        """
        Start a KHQR payment for a checkout.

        Any live session for the same checkout id is cancelled first, so only
        one payment attempt is ever awaiting settlement per checkout.
        """
        self._prune_finished()
        checkout_id = request.checkout_id or generate_order_id()
        existing = self._checkouts.get(checkout_id)
        if existing is not None:
            if existing.is_paid:
                raise ValueError(f"Checkout {checkout_id} has already been paid")
            await self._abandon_attempt(existing)
        self._ensure_order_id_free(checkout_id)

        total = self._order_total(request)
        checkout = BakongCheckout(checkout_id, request, total)
        checkout.controller = self.payments.create_session(
            total,
            currency=request.currency,
            bill_reference=checkout_id,
            on_verified=lambda transaction_id: self._on_verified(checkout, transaction_id),
            on_expired=lambda: self._on_expired(checkout),
        )

        session = await checkout.controller.start()
        self._checkouts[checkout_id] = checkout
        self._record_payment(checkout, session.payload)
        logger.info(f"Bakong checkout {checkout_id} awaiting payment of {total} {request.currency.value}")
        return checkout

    def get_bakong_checkout(self, checkout_id: str) -> Optional[BakongCheckout]:
        self._prune_finished()
        return self._checkouts.get(checkout_id)

    async def regenerate_bakong_checkout(self, checkout_id: str) -> BakongCheckout:
        """Replace an expired or still-pending QR code with a fresh one"""
        checkout = self._require(checkout_id)
        if checkout.is_paid:
            raise ValueError(f"Checkout {checkout_id} has already been paid")

        await self._abandon_attempt(checkout)
        session = await checkout.controller.regenerate()
        checkout.finished_at = None
        self._record_payment(checkout, session.payload)
        logger.info(f"Regenerated KHQR for checkout {checkout_id}, md5={session.payload.content_hash}")
        return checkout

    async def cancel_bakong_checkout(self, checkout_id: str) -> BakongCheckout:
        """Abandon a checkout, stopping its countdown and polling"""
        checkout = self._require(checkout_id)
        await self._abandon_attempt(checkout)
        logger.info(f"Bakong checkout {checkout_id} cancelled")
        return checkout

    async def shutdown(self) -> None:
        """Cancel every live payment session"""
        for checkout in list(self._checkouts.values()):
            if checkout.controller is not None:
                await checkout.controller.cancel()
        self._checkouts.clear()

    def describe(self, checkout: BakongCheckout) -> BakongCheckoutResponse:
        """Snapshot of a Bakong checkout for API responses"""
        session = checkout.controller.session
        khqr = self.payments.to_response(session.payload)
        message = None
        if session.state is SessionState.VERIFIED and checkout.order_error:
            message = (
                "Payment received, but we could not create your order. "
                f"Please contact the store with transaction {session.transaction_id}."
            )
        elif session.state is SessionState.VERIFIED:
            message = "Payment verified successfully! Your order is being processed."
        elif session.state is SessionState.EXPIRED:
            message = "QR code has expired. Please generate a new one to continue."
        elif checkout.controller.error is not None:
            message = str(checkout.controller.error)
        elif session.closed:
            message = "Payment was cancelled."

        return BakongCheckoutResponse(
            checkout_id=checkout.checkout_id,
            state=session.state,
            seconds_remaining=session.seconds_remaining,
            time_remaining=format_countdown(session.seconds_remaining),
            qr_code=khqr.qr_code,
            md5=khqr.md5,
            amount=khqr.amount,
            currency=khqr.currency,
            display_amount=khqr.display_amount,
            deep_link=khqr.deep_link,
            qr_image=khqr.qr_image,
            transaction_id=session.transaction_id,
            order_id=checkout.order_id,
            message=message,
        )

    # Internal helpers -----------------------------------------------------

    def _order_total(self, request: CheckoutRequest) -> Decimal:
        """Cart total in the checkout currency; catalog prices are in USD"""
        total = calculate_total([item.model_dump() for item in request.items])
        if request.currency is Currency.KHR:
            return Decimal(convert_usd_to_khr(total, self.usd_to_khr_rate))
        return total

    def _require(self, checkout_id: str) -> BakongCheckout:
        self._prune_finished()
        checkout = self._checkouts.get(checkout_id)
        if checkout is None:
            raise KeyError(checkout_id)
        return checkout

    def _record_payment(self, checkout: BakongCheckout, payload) -> None:
        self.database.save_khqr_payment({
            'md5': payload.content_hash,
            'checkout_id': checkout.checkout_id,
            'amount': float(payload.amount),
            'currency': payload.currency.value,
            'status': PaymentStatus.PENDING.value,
            'expires_at': payload.expires_at.isoformat(),
        })

    def _ensure_order_id_free(self, order_id: str) -> None:
        if self.database.get_order(order_id):
            raise ValueError(f"Order {order_id} already exists")

    async def _abandon_attempt(self, checkout: BakongCheckout) -> None:
        """Stop the checkout's live session and mark its payment attempt cancelled"""
        session = checkout.controller.session
        await checkout.controller.cancel()
        if session is not None and not session.is_terminal:
            self.database.update_khqr_payment_status(session.payload.content_hash, PaymentStatus.CANCELLED.value)

    def _prune_finished(self) -> None:
        now = self._clock()
        for checkout_id, checkout in list(self._checkouts.items()):
            session = checkout.controller.session
            if session is not None and session.is_active:
                continue
            if checkout.finished_at is None:
                checkout.finished_at = now
            if now - checkout.finished_at >= self.retention_seconds:
                del self._checkouts[checkout_id]
                logger.debug(f"Dropped finished checkout {checkout_id}")

    def _on_verified(self, checkout: BakongCheckout, transaction_id: str) -> None:
        md5 = checkout.controller.session.payload.content_hash
        try:
            order = self._create_order(
                checkout.checkout_id,
                checkout.request,
                checkout.total,
                PaymentMethod.BAKONG,
                PaymentStatus.PAID,
                transaction_id=transaction_id,
            )
        except OrderCreationError as e:
            # Keep the transaction id so the order can be reconciled by hand
            logger.error(f"Payment {transaction_id} for checkout {checkout.checkout_id} settled but {e}")
            checkout.order_error = str(e)
            self.database.update_khqr_payment_status(md5, PaymentStatus.ORDER_FAILED.value, transaction_id)
            return

        checkout.order_id = order['order_id']
        self.database.update_khqr_payment_status(md5, PaymentStatus.PAID.value, transaction_id)

    def _on_expired(self, checkout: BakongCheckout) -> None:
        session = checkout.controller.session
        self.database.update_khqr_payment_status(session.payload.content_hash, PaymentStatus.EXPIRED.value)

    def _create_order(self, order_id: str, request: CheckoutRequest, total: Decimal,
                      method: PaymentMethod, status: PaymentStatus,
                      transaction_id: Optional[str] = None) -> Dict[str, Any]:
        order = {
            'order_id': order_id,
            'customer_name': sanitize_input(request.customer_name),
            'customer_phone': sanitize_input(request.customer_phone),
            'delivery_address': sanitize_input(request.delivery_address),
            'items': [item.model_dump() for item in request.items],
            'total': float(total),
            'currency': request.currency.value,
            'payment_method': method.value,
            'payment_status': status.value,
            'transaction_id': transaction_id,
            'notes': sanitize_input(request.notes) if request.notes else None,
        }
        if not self.database.save_order(order):
            raise OrderCreationError(f"Failed to create order {order_id}")
        logger.info(f"Created order {order_id} via {method.value}, total={total} {request.currency.value}")
        return order

# Global service instance
checkout_service = CheckoutService(payment_service, db_instance, usd_to_khr_rate=settings.USD_TO_KHR_RATE)
