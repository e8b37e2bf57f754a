import hashlib
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import crcmod

from ..exceptions import ConfigurationError, InvalidAmountError, InvalidFieldError
from ..models.khqr_model import Currency, KHQRPayload, MerchantIdentity

logger = logging.getLogger(__name__)

QR_EXPIRY_SECONDS = 300

# Root tags
TAG_PAYLOAD_FORMAT = "00"
TAG_POINT_OF_INITIATION = "01"
TAG_INDIVIDUAL_ACCOUNT = "29"
TAG_MERCHANT_CATEGORY = "52"
TAG_CURRENCY = "53"
TAG_AMOUNT = "54"
TAG_COUNTRY = "58"
TAG_MERCHANT_NAME = "59"
TAG_MERCHANT_CITY = "60"
TAG_ADDITIONAL_DATA = "62"
TAG_CRC = "63"
TAG_TIMESTAMP = "99"

# Tags whose value is itself a TLV sequence
TEMPLATE_TAGS = frozenset({TAG_INDIVIDUAL_ACCOUNT, TAG_ADDITIONAL_DATA, TAG_TIMESTAMP})

PAYLOAD_FORMAT_INDICATOR = "01"
DYNAMIC_QR = "12"
DEFAULT_MERCHANT_CATEGORY = "5999"
COUNTRY_CODE = "KH"
CRC_HEADER = TAG_CRC + "04"
MAX_BILL_REFERENCE_LENGTH = 25
MAX_AMOUNT_LENGTH = 13

_crc16_ccitt_false = crcmod.mkCrcFun(0x11021, initCrc=0xFFFF, rev=False, xorOut=0x0000)

AmountLike = Union[Decimal, float, int, str]


def tlv(tag: str, value: str) -> str:
    """Encode one field as tag, two-digit length, value."""
    if len(value) > 99:
        raise InvalidFieldError(f"Value for tag {tag} is {len(value)} characters; the limit is 99")
    return f"{tag}{len(value):02}{value}"


def template(fields: List[Tuple[str, Optional[str]]]) -> str:
    """Encode a nested TLV template, skipping absent fields."""
    return "".join(tlv(tag, value) for tag, value in fields if value)


def crc16(data: str) -> str:
    """CRC16/CCITT-FALSE rendered as four uppercase hex digits."""
    return f"{_crc16_ccitt_false(data.encode('utf-8')):04X}"


def content_hash(encoded_string: str) -> str:
    return hashlib.md5(encoded_string.encode("utf-8")).hexdigest()


def verify_crc(payload: str) -> bool:
    """Check that a payload ends in a CRC field matching its contents."""
    if len(payload) < 8 or payload[-8:-4] != CRC_HEADER:
        return False
    return crc16(payload[:-4]) == payload[-4:].upper()


def decode_tlv(payload: str, nested: bool = True) -> Dict[str, Any]:
    """
    Split a TLV string into a tag -> value mapping.

    Template tags (merchant account, additional data, timestamp) are decoded
    into dicts of their sub-fields when ``nested`` is set.
    """
    fields: Dict[str, Any] = {}
    position = 0
    while position < len(payload):
        header = payload[position:position + 4]
        if len(header) < 4 or not header[2:].isdigit():
            raise ValueError(f"Malformed TLV header at offset {position}: {header!r}")
        tag, length = header[:2], int(header[2:])
        value = payload[position + 4:position + 4 + length]
        if len(value) != length:
            raise ValueError(f"Truncated value for tag {tag} at offset {position}")
        if nested and tag in TEMPLATE_TAGS:
            fields[tag] = decode_tlv(value, nested=False)
        else:
            fields[tag] = value
        position += 4 + length
    return fields


def round_amount(amount: AmountLike, currency: Currency) -> Decimal:
    """Round to the currency's minor unit, rejecting anything not strictly positive."""
    if isinstance(amount, bool):
        raise InvalidAmountError(f"Invalid amount: {amount!r}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {amount!r}") from e

    if not value.is_finite():
        raise InvalidAmountError(f"Amount must be a finite number, got {amount!r}")

    try:
        rounded = value.quantize(currency.minor_unit_exponent, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Amount is too large: {amount!r}") from e
    if rounded <= 0:
        raise InvalidAmountError("Amount must be greater than 0")
    if len(f"{rounded:f}") > MAX_AMOUNT_LENGTH:
        raise InvalidAmountError(
            f"Amount {rounded:f} exceeds the {MAX_AMOUNT_LENGTH}-character limit of the amount field"
        )
    return rounded


class KHQREncoder:
    """Builds dynamic KHQR payloads for a single merchant identity"""

    def __init__(self, merchant: MerchantIdentity, ttl_seconds: int = QR_EXPIRY_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.merchant = merchant
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._last_timestamp_ms = 0

    def _next_timestamp_ms(self) -> int:
        # Strictly increasing so a regenerated code never reuses a content hash
        now_ms = int(self._clock() * 1000)
        if now_ms <= self._last_timestamp_ms:
            now_ms = self._last_timestamp_ms + 1
        self._last_timestamp_ms = now_ms
        return now_ms

    def _check_merchant(self) -> None:
        missing = self.merchant.missing_fields()
        if missing:
            raise ConfigurationError(
                "Missing Bakong configuration: "
                f"{', '.join(missing)}. Please set BAKONG_ACCOUNT_ID, BAKONG_MERCHANT_NAME, "
                "and BAKONG_MERCHANT_CITY in environment variables."
            )

    def encode(self, amount: AmountLike, currency: Union[Currency, str] = Currency.USD,
               bill_reference: Optional[str] = None) -> KHQRPayload:
        """
        Encode a payment request into a KHQR payload.

        Args:
            amount: Amount in major units, rounded to the currency's precision
            currency: USD or KHR
            bill_reference: Optional order reference carried in the additional data field

        Returns:
            KHQRPayload: Encoded string, its MD5 content hash and the expiry window

        Raises:
            ConfigurationError: Merchant identity is incomplete
            InvalidAmountError: Amount is not a positive finite number
            InvalidFieldError: A value does not fit its field
        """
        self._check_merchant()
        try:
            currency = Currency(currency)
        except ValueError as e:
            raise InvalidFieldError(f"Unsupported currency: {currency!r}") from e
        rounded = round_amount(amount, currency)

        if bill_reference and len(bill_reference) > MAX_BILL_REFERENCE_LENGTH:
            raise InvalidFieldError(
                f"Bill reference must be at most {MAX_BILL_REFERENCE_LENGTH} characters"
            )

        created_ms = self._next_timestamp_ms()
        expires_ms = created_ms + self.ttl_seconds * 1000
        merchant = self.merchant

        body = "".join([
            tlv(TAG_PAYLOAD_FORMAT, PAYLOAD_FORMAT_INDICATOR),
            tlv(TAG_POINT_OF_INITIATION, DYNAMIC_QR),
            tlv(TAG_INDIVIDUAL_ACCOUNT, template([
                ("00", merchant.account_id),
                ("02", merchant.acquiring_bank),
            ])),
            tlv(TAG_MERCHANT_CATEGORY, DEFAULT_MERCHANT_CATEGORY),
            tlv(TAG_CURRENCY, currency.numeric_code),
            tlv(TAG_AMOUNT, f"{rounded:f}"),
            tlv(TAG_COUNTRY, COUNTRY_CODE),
            tlv(TAG_MERCHANT_NAME, merchant.merchant_name),
            tlv(TAG_MERCHANT_CITY, merchant.merchant_city),
        ])

        additional_data = template([
            ("01", bill_reference),
            ("02", merchant.mobile_number),
            ("03", merchant.store_label),
            ("07", merchant.terminal_label),
        ])
        if additional_data:
            body += tlv(TAG_ADDITIONAL_DATA, additional_data)

        body += tlv(TAG_TIMESTAMP, template([
            ("00", str(created_ms)),
            ("01", str(expires_ms)),
        ]))

        data_to_sign = body + CRC_HEADER
        encoded = data_to_sign + crc16(data_to_sign)
        digest = content_hash(encoded)

        logger.info(
            f"Generated KHQR amount={rounded} {currency.value} "
            f"bill_reference={bill_reference} md5={digest}"
        )
        return KHQRPayload(
            encoded_string=encoded,
            content_hash=digest,
            amount=rounded,
            currency=currency,
            bill_reference=bill_reference or None,
            created_at=datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_ms / 1000, tz=timezone.utc),
        )
