from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from .khqr_model import Currency

class GenerateKHQRRequest(BaseModel):
    amount: float
    bill_number: Optional[str] = Field(None, description="Order reference embedded in the QR")
    currency: Currency = Currency.USD

class KHQRResponse(BaseModel):
    qr_code: str
    md5: str
    amount: float
    currency: Currency
    display_amount: str
    expires_at: datetime
    deep_link: str
    qr_image: Optional[str] = None

class VerifyPaymentRequest(BaseModel):
    md5: Optional[str] = None

class VerifyPaymentResponse(BaseModel):
    verified: bool
    transaction_id: Optional[str] = None
    synthesized: bool = False
    error: Optional[str] = None

class BakongStatusResponse(BaseModel):
    configured: bool
    verification_configured: bool
