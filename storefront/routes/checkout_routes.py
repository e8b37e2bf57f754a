from fastapi import APIRouter, HTTPException
from typing import Union
import logging

from ..database.db import db_instance
from ..exceptions import ConfigurationError, InvalidAmountError, InvalidFieldError, OrderCreationError
from ..models.order_model import (
    BakongCheckoutResponse,
    CheckoutRequest,
    OrderResponse,
    PaymentMethod,
)
from ..services.checkout_service import checkout_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])

@router.post("", response_model=Union[OrderResponse, BakongCheckoutResponse])
async def checkout(checkout_request: CheckoutRequest):
    """
    Submit a cart for checkout.

    Cash-on-delivery creates the order immediately. Bakong starts a KHQR
    payment session; the order is created once the payment is verified.
    """
    try:
        if checkout_request.payment_method is PaymentMethod.CASH_ON_DELIVERY:
            return OrderResponse(**checkout_service.place_cash_order(checkout_request))

        bakong_checkout = await checkout_service.start_bakong_checkout(checkout_request)
        return checkout_service.describe(bakong_checkout)

    except (InvalidAmountError, InvalidFieldError, ValueError) as e:
        logger.warning(f"Rejected checkout: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except (ConfigurationError, OrderCreationError) as e:
        logger.error(f"Checkout failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/orders", response_model=dict)
async def get_recent_orders(limit: int = 10):
    """Retrieve recently placed orders"""
    orders = db_instance.get_recent_orders(limit)
    return {"orders": orders, "count": len(orders)}

@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str):
    """Retrieve a placed order by its ID"""
    order = db_instance.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderResponse(**order)

@router.get("/{checkout_id}/bakong", response_model=BakongCheckoutResponse)
async def get_bakong_checkout(checkout_id: str):
    """Current countdown and settlement state of a Bakong checkout"""
    bakong_checkout = checkout_service.get_bakong_checkout(checkout_id)
    if bakong_checkout is None:
        raise HTTPException(status_code=404, detail="Checkout not found")
    return checkout_service.describe(bakong_checkout)

@router.post("/{checkout_id}/bakong/regenerate", response_model=BakongCheckoutResponse)
async def regenerate_bakong_checkout(checkout_id: str):
    """Replace the checkout's QR code with a fresh one and restart the countdown"""
    try:
        bakong_checkout = await checkout_service.regenerate_bakong_checkout(checkout_id)
        return checkout_service.describe(bakong_checkout)
    except KeyError:
        raise HTTPException(status_code=404, detail="Checkout not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        logger.error(f"KHQR regeneration misconfigured: {e}")
        raise HTTPException(status_code=500, detail=str(e))

@router.delete("/{checkout_id}/bakong", response_model=BakongCheckoutResponse)
async def cancel_bakong_checkout(checkout_id: str):
    """Abandon a Bakong checkout"""
    try:
        bakong_checkout = await checkout_service.cancel_bakong_checkout(checkout_id)
        return checkout_service.describe(bakong_checkout)
    except KeyError:
        raise HTTPException(status_code=404, detail="Checkout not found")
