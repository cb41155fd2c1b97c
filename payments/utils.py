import base64
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

from .errors import ValidationError

SUBSCRIBER_DIGITS = 9
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13


def normalize_phone(phone, country_code: str = "254", valid_prefixes: str = "17") -> str:
    """Return the canonical ``<cc>XXXXXXXXX`` form of a subscriber number.

    Accepts ``07XXXXXXXX``, ``+254 7XX XXX XXX``, ``2547XXXXXXXX`` and the bare
    ``7XXXXXXXX`` form. Anything that does not end up as a country code
    followed by a valid 9 digit national number raises ``ValidationError``.
    """
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        raise ValidationError("phoneNumber is required")

    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif not (digits.startswith(country_code) and len(digits) == len(country_code) + SUBSCRIBER_DIGITS):
        digits = country_code + digits

    pattern = rf"^{re.escape(country_code)}[{re.escape(valid_prefixes)}]\d{{{SUBSCRIBER_DIGITS - 1}}}$"
    if not re.match(pattern, digits):
        raise ValidationError(
            f"Invalid phone number format. Use {country_code}XXXXXXXXX or 07XXXXXXXX",
            phone=str(phone),
        )
    return digits


def validate_amount(amount, minimum: Decimal = Decimal("1"), maximum: Decimal = Decimal("300000")) -> Decimal:
    if amount is None or isinstance(amount, bool):
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError):
        raise ValidationError("amount must be a number")
    if not value.is_finite():
        raise ValidationError("amount must be a number")
    if value < minimum or value > maximum:
        raise ValidationError(f"Amount must be between {minimum} and {maximum}")
    return value


def gateway_amount(amount: Decimal) -> int:
    # STK push only takes whole units
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def daraja_timestamp(now=None) -> str:
    now = now or timezone.now()
    if timezone.is_aware(now):
        now = timezone.localtime(now)
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw.encode("utf-8")).decode("utf-8")


def clip(value: str, limit: int) -> str:
    return (value or "").strip()[:limit]
