from fastapi import APIRouter, HTTPException
import logging

from ..database.db import db_instance
from ..exceptions import ConfigurationError, InvalidAmountError, InvalidFieldError
from ..models.payment_model import (
    BakongStatusResponse,
    GenerateKHQRRequest,
    KHQRResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from ..services.payment_service import payment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bakong", tags=["payments"])

@router.post("/generate-khqr", response_model=KHQRResponse)
async def generate_khqr(khqr_request: GenerateKHQRRequest):
    """
    Generate a Bakong KHQR code for an order amount.

    Args:
        khqr_request: Amount, optional bill number and currency

    Returns:
        KHQRResponse: Payload string, MD5 lookup hash, expiry and a rendered QR image
    """
    try:
        return payment_service.generate_qr(
            amount=khqr_request.amount,
            bill_number=khqr_request.bill_number,
            currency=khqr_request.currency
        )
    except (InvalidAmountError, InvalidFieldError) as e:
        logger.warning(f"Rejected KHQR generation request: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigurationError as e:
        logger.error(f"KHQR generation misconfigured: {e}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_khqr_payment(verify_request: VerifyPaymentRequest):
    """Check whether a KHQR payment has settled"""
    if not verify_request.md5:
        raise HTTPException(status_code=400, detail="Missing md5 hash")

    logger.info(f"Received verification request for md5: {verify_request.md5[:10]}...")
    try:
        return payment_service.verify_payment(verify_request.md5)
    except ConfigurationError as e:
        logger.error(f"Bakong verification misconfigured: {e}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/status", response_model=BakongStatusResponse)
async def bakong_status():
    """Report whether KHQR generation and verification are configured"""
    return BakongStatusResponse(
        configured=payment_service.is_configured,
        verification_configured=payment_service.verifier.is_configured
    )

@router.get("/payments/{md5}", response_model=dict)
async def get_khqr_payment(md5: str):
    """Look up a recorded KHQR payment attempt for reconciliation"""
    payment = db_instance.get_khqr_payment(md5)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment
