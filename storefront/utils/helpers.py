import re
import uuid
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Union

logger = logging.getLogger(__name__)

Number = Union[Decimal, float, int]

def sanitize_input(text: str) -> str:
    """
    Sanitize user input to prevent injection attacks
    and remove potentially harmful characters.
    """
    if not text:
        return ""

    # Remove potentially harmful characters
    sanitized = re.sub(r'[<>{}[\]\\]', '', text.strip())
    # Limit length to prevent abuse
    return sanitized[:500]

def convert_usd_to_khr(usd: Number, rate: int = 4100) -> int:
    """Convert USD to whole riel at a fixed approximate rate"""
    return int((Decimal(str(usd)) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def format_currency(amount: Number, currency: str) -> str:
    """Format an amount for display, e.g. $24.50 or 100,000 ៛"""
    value = Decimal(str(amount))
    if currency == "KHR":
        riel = value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return f"{int(riel):,} ៛"
    return f"${value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"

def format_countdown(seconds: int) -> str:
    """Render remaining seconds as mm:ss"""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"

def calculate_total(items: List[dict]) -> Decimal:
    """Sum quantity * unit price over cart lines, rounded to cents"""
    total = sum(
        (Decimal(str(item['unit_price'])) * int(item['quantity']) for item in items),
        Decimal("0"),
    )
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

def generate_order_id() -> str:
    """Generate a unique order ID"""
    return f"ORD-{uuid.uuid4().hex[:8].upper()}"
