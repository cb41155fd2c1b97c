import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from django.utils import timezone

from .errors import CallbackParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StkCallback:
    merchant_request_id: str
    checkout_request_id: str
    result_code: int
    result_description: str
    metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def mpesa_receipt(self) -> str:
        return str(self.metadata.get("MpesaReceiptNumber") or "")

    @property
    def phone_number(self) -> str:
        value = self.metadata.get("PhoneNumber")
        return str(value) if value is not None else ""

    @property
    def amount(self):
        value = self.metadata.get("Amount")
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    @property
    def transaction_date(self):
        # Sent as a YYYYMMDDHHMMSS number in gateway local time
        value = self.metadata.get("TransactionDate")
        if value is None:
            return None
        try:
            naive = datetime.strptime(str(value), "%Y%m%d%H%M%S")
        except ValueError:
            return None
        return timezone.make_aware(naive) if timezone.is_naive(naive) else naive


def load_body(raw):
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise CallbackParseError("Callback body is not UTF-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise CallbackParseError("Callback body is not valid JSON")
    if not isinstance(raw, dict):
        raise CallbackParseError("Callback body must be a JSON object")
    return raw


def _metadata(stk: dict) -> dict:
    meta = stk.get("CallbackMetadata")
    if meta is None:
        return {}
    items = meta.get("Item") if isinstance(meta, dict) else None
    if not isinstance(items, list):
        raise CallbackParseError("CallbackMetadata.Item must be a list")
    out = {}
    for item in items:
        if not isinstance(item, dict) or not item.get("Name"):
            logger.warning("Skipping callback metadata item without a Name: %r", item)
            continue
        out[str(item["Name"])] = item.get("Value")
    return out


def parse_stk_callback(raw) -> StkCallback:
    """Validate a ``Body.stkCallback`` notification and return it typed."""
    data = load_body(raw)
    body = data.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise CallbackParseError("Missing Body.stkCallback")

    checkout_id = stk.get("CheckoutRequestID")
    if not isinstance(checkout_id, str) or not checkout_id.strip():
        raise CallbackParseError("Missing CheckoutRequestID")

    code = stk.get("ResultCode")
    if isinstance(code, bool):
        raise CallbackParseError("ResultCode must be numeric")
    try:
        code = int(str(code).strip())
    except (TypeError, ValueError):
        raise CallbackParseError(f"ResultCode must be numeric, got {code!r}")

    return StkCallback(
        merchant_request_id=str(stk.get("MerchantRequestID") or ""),
        checkout_request_id=checkout_id.strip(),
        result_code=code,
        result_description=str(stk.get("ResultDesc") or ""),
        metadata=_metadata(stk),
    )
