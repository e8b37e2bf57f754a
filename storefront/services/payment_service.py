import qrcode
import base64
import io
import logging
from typing import Optional, Union

from ..config.settings import settings
from ..models.khqr_model import Currency, KHQRPayload
from ..models.payment_model import KHQRResponse, VerifyPaymentResponse
from ..utils.helpers import format_currency
from .khqr_encoder import AmountLike, KHQREncoder
from .bakong_verifier import BakongVerifier
from .payment_session import PaymentSessionController, VerifiedCallback, ExpiredCallback

logger = logging.getLogger(__name__)

class PaymentService:
    """Bakong KHQR generation and verification for the checkout flow"""

    def __init__(self, encoder: KHQREncoder, verifier: BakongVerifier,
                 poll_interval: float = 3.0, initial_poll_delay: float = 2.0,
                 render_images: bool = True):
        self.encoder = encoder
        self.verifier = verifier
        self.poll_interval = poll_interval
        self.initial_poll_delay = initial_poll_delay
        self.render_images = render_images

    @property
    def is_configured(self) -> bool:
        return not self.encoder.merchant.missing_fields()

    def generate_qr(self, amount: AmountLike, bill_number: Optional[str] = None,
                    currency: Union[Currency, str] = Currency.USD) -> KHQRResponse:
        """Generate a KHQR code for an order amount"""
        payload = self.encoder.encode(amount, currency, bill_number)
        return self.to_response(payload)

    def verify_payment(self, md5: str) -> VerifyPaymentResponse:
        """Check a KHQR payment by its content hash"""
        outcome = self.verifier.verify(md5)
        return VerifyPaymentResponse(
            verified=outcome.is_verified,
            transaction_id=outcome.transaction_id,
            synthesized=outcome.synthesized,
            error=None if outcome.is_verified else outcome.message,
        )

    def create_session(self, amount: AmountLike, currency: Currency = Currency.USD,
                       bill_reference: Optional[str] = None,
                       on_verified: Optional[VerifiedCallback] = None,
                       on_expired: Optional[ExpiredCallback] = None) -> PaymentSessionController:
        """Build an unstarted session controller sharing this service's encoder and verifier"""
        return PaymentSessionController(
            self.encoder,
            self.verifier,
            amount,
            currency=currency,
            bill_reference=bill_reference,
            on_verified=on_verified,
            on_expired=on_expired,
            ttl_seconds=self.encoder.ttl_seconds,
            poll_interval=self.poll_interval,
            initial_poll_delay=self.initial_poll_delay,
        )

    def to_response(self, payload: KHQRPayload) -> KHQRResponse:
        return KHQRResponse(
            qr_code=payload.encoded_string,
            md5=payload.content_hash,
            amount=float(payload.amount),
            currency=payload.currency,
            display_amount=format_currency(payload.amount, payload.currency.value),
            expires_at=payload.expires_at,
            deep_link=payload.deep_link,
            qr_image=self._generate_qr_code(payload.encoded_string) if self.render_images else None,
        )

    def _generate_qr_code(self, data: str) -> str:
        """Generate base64 encoded QR code"""
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        # Convert to base64
        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"

payment_service = PaymentService(
    encoder=KHQREncoder(settings.merchant_identity(), ttl_seconds=settings.KHQR_EXPIRY_SECONDS),
    verifier=BakongVerifier(
        settings.BAKONG_PROD_BASE_API_URL_MD5,
        settings.BAKONG_TOKEN,
        timeout=settings.BAKONG_VERIFY_TIMEOUT,
    ),
    poll_interval=settings.KHQR_POLL_INTERVAL,
    initial_poll_delay=settings.KHQR_INITIAL_POLL_DELAY,
)
