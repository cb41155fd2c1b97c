from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"


def _decimal(name: str, value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ImproperlyConfigured(f"MPESA['{name}'] must be a number, got {value!r}")


@dataclass(frozen=True)
class DarajaConfig:
    """Static gateway configuration, built once and handed to each component."""

    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    callback_token: str = ""
    transaction_type: str = "CustomerPayBillOnline"
    country_code: str = "254"
    valid_prefixes: str = "17"
    min_amount: Decimal = Decimal("1")
    max_amount: Decimal = Decimal("300000")
    timeout: float = 30.0
    token_cache_seconds: int = 3000

    @classmethod
    def from_settings(cls, mpesa: dict = None) -> "DarajaConfig":
        conf = mpesa if mpesa is not None else getattr(settings, "MPESA", {})
        environment = (conf.get("ENVIRONMENT") or "sandbox").lower()
        base_url = conf.get("BASE_URL") or (PRODUCTION_URL if environment == "production" else SANDBOX_URL)
        return cls(
            base_url=base_url.rstrip("/"),
            consumer_key=conf.get("CONSUMER_KEY", ""),
            consumer_secret=conf.get("CONSUMER_SECRET", ""),
            shortcode=str(conf.get("SHORTCODE", "")),
            passkey=conf.get("PASSKEY", ""),
            callback_url=conf.get("CALLBACK_URL", ""),
            callback_token=conf.get("CALLBACK_TOKEN", "") or "",
            transaction_type=conf.get("TRANSACTION_TYPE") or "CustomerPayBillOnline",
            country_code=str(conf.get("COUNTRY_CODE") or "254"),
            valid_prefixes=str(conf.get("VALID_PREFIXES") or "17"),
            min_amount=_decimal("MIN_AMOUNT", conf.get("MIN_AMOUNT", "1")),
            max_amount=_decimal("MAX_AMOUNT", conf.get("MAX_AMOUNT", "300000")),
            timeout=float(conf.get("TIMEOUT") or 30),
            token_cache_seconds=int(conf.get("TOKEN_CACHE_SECONDS") or 3000),
        )

    @property
    def masked_shortcode(self) -> str:
        if len(self.shortcode) <= 2:
            return "**"
        return self.shortcode[:2] + "*" * (len(self.shortcode) - 2)
