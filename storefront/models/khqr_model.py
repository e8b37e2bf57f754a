from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from urllib.parse import quote

class Currency(str, Enum):
    USD = "USD"
    KHR = "KHR"

    @property
    def numeric_code(self) -> str:
        """ISO 4217 numeric code embedded in tag 53"""
        return "840" if self is Currency.USD else "116"

    @property
    def minor_unit_exponent(self) -> Decimal:
        """Quantization step for the currency's minor unit"""
        return Decimal("0.01") if self is Currency.USD else Decimal("1")

class SessionState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    VERIFIED = "verified"
    EXPIRED = "expired"

class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    ERROR = "error"

class MerchantIdentity(BaseModel):
    """Merchant details embedded in every KHQR payload"""
    model_config = ConfigDict(frozen=True)

    account_id: str = Field("", description="Bakong account id, e.g. name@bank")
    merchant_name: str = Field("", description="Display name shown in the banking app")
    merchant_city: str = Field("", description="Merchant city")
    acquiring_bank: str = Field("National Bank of Cambodia", description="Acquiring bank name")
    mobile_number: Optional[str] = None
    store_label: Optional[str] = None
    terminal_label: Optional[str] = None

    def missing_fields(self) -> list:
        return [
            name for name in ("account_id", "merchant_name", "merchant_city")
            if not getattr(self, name)
        ]

class KHQRPayload(BaseModel):
    """An encoded KHQR string and the hash used to look up its settlement"""
    model_config = ConfigDict(frozen=True)

    encoded_string: str
    content_hash: str
    amount: Decimal
    currency: Currency
    bill_reference: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    @property
    def deep_link(self) -> str:
        return f"bakong://pay?data={quote(self.encoded_string, safe='')}"

class VerificationOutcome(BaseModel):
    """Result of a single settlement lookup"""
    model_config = ConfigDict(frozen=True)

    status: VerificationStatus
    transaction_id: Optional[str] = None
    synthesized: bool = False
    message: Optional[str] = None

    @classmethod
    def pending(cls, message: Optional[str] = None) -> "VerificationOutcome":
        return cls(status=VerificationStatus.PENDING, message=message)

    @classmethod
    def verified(cls, transaction_id: str, synthesized: bool = False) -> "VerificationOutcome":
        return cls(status=VerificationStatus.VERIFIED, transaction_id=transaction_id, synthesized=synthesized)

    @classmethod
    def error(cls, message: str) -> "VerificationOutcome":
        return cls(status=VerificationStatus.ERROR, message=message)

    @property
    def is_verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def is_error(self) -> bool:
        return self.status is VerificationStatus.ERROR
