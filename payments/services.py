import logging
from dataclasses import dataclass
from datetime import datetime

from django.db import DatabaseError, transaction
from django.utils import timezone

from .callbacks import StkCallback, load_body, parse_stk_callback
from .emails import send_payment_confirmation
from .errors import CallbackParseError, ValidationError
from .integrations.daraja import DarajaClient
from .models import MpesaPayment, Order, PaymentStatus, ResolutionSource
from .utils import (
    ACCOUNT_REFERENCE_MAX,
    TRANSACTION_DESC_MAX,
    clip,
    gateway_amount,
    normalize_phone,
    validate_amount,
)

logger = logging.getLogger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

# Gateway result codes
RESULT_SUCCESS = "0"
RESULT_INSUFFICIENT_FUNDS = "1"
RESULT_CANCELLED = "1032"
RESULT_TIMEOUT = "1037"

# Query answers meaning "ask again later"
PROCESSING_RESPONSE_CODES = {"1037"}
PROCESSING_ERROR_CODES = {"500.001.1001"}

REASON_INSUFFICIENT_FUNDS = "insufficient_funds"

ORDER_REFERENCE_MAX = MpesaPayment._meta.get_field("order_reference").max_length


@dataclass(frozen=True)
class PaymentStatusView:
    tracking_id: str
    status: str
    result_code: str
    result_description: str
    checked_at: datetime
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    def as_dict(self) -> dict:
        return {
            "trackingId": self.tracking_id,
            "status": str(self.status),
            "resultCode": self.result_code,
            "resultDescription": self.result_description,
            "reason": self.reason,
            "checkedAt": self.checked_at.isoformat(),
        }


def _reason(status: str, result_code: str) -> str:
    if status == PaymentStatus.FAILED and result_code == RESULT_INSUFFICIENT_FUNDS:
        return REASON_INSUFFICIENT_FUNDS
    return ""


def callback_status(result_code: int) -> str:
    code = str(result_code)
    if code == RESULT_SUCCESS:
        return PaymentStatus.COMPLETED
    if code == RESULT_CANCELLED:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


def _code(data: dict, key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value).strip()


def query_is_settled(data: dict) -> bool:
    """True when a query body carries the payment's own result, not a gateway error."""
    return _code(data, "ResponseCode") == "0" and _code(data, "ResultCode") != ""


def map_query_response(data: dict):
    """Translate an STK query body into ``(status, result_code, description)``.

    Only a settled body (see ``query_is_settled``) speaks for the payment;
    other ``failed`` answers describe the query itself.
    """
    response_code = _code(data, "ResponseCode")
    error_code = _code(data, "errorCode")
    result_code = _code(data, "ResultCode")

    if response_code == "0":
        description = str(data.get("ResultDesc") or data.get("ResponseDescription") or "")
        if not result_code:
            return PaymentStatus.PENDING, response_code, description
        if result_code == RESULT_SUCCESS:
            return PaymentStatus.COMPLETED, result_code, description
        if result_code == RESULT_CANCELLED:
            return PaymentStatus.CANCELLED, result_code, description
        if result_code == RESULT_TIMEOUT:
            return PaymentStatus.TIMEOUT, result_code, description
        return PaymentStatus.FAILED, result_code, description

    if response_code in PROCESSING_RESPONSE_CODES or error_code in PROCESSING_ERROR_CODES:
        description = str(data.get("ResponseDescription") or data.get("errorMessage") or "")
        return PaymentStatus.PENDING, response_code or error_code, description

    description = str(data.get("ResponseDescription") or data.get("errorMessage") or "")
    return PaymentStatus.FAILED, response_code or error_code, description


# ---------- Record store ----------
def get_by_tracking_id(tracking_id: str):
    return MpesaPayment.objects.filter(checkout_request_id=tracking_id).first()


def create_pending(*, tracking_id, merchant_request_id, order_reference, phone_number, amount, description=""):
    order = Order.objects.filter(order_reference=order_reference).first()
    return MpesaPayment.objects.create(
        checkout_request_id=tracking_id,
        merchant_request_id=merchant_request_id,
        order=order,
        order_reference=order_reference,
        phone_number=phone_number,
        amount=amount,
        description=description,
        status=PaymentStatus.PENDING,
    )


def resolve_if_pending(tracking_id: str, status: str, source: str, **fields) -> bool:
    """Move a pending payment to ``status``. Returns False if it was already resolved.

    A single conditional UPDATE, so concurrent callback and poll writers
    cannot both win.
    """
    if status == PaymentStatus.PENDING:
        raise ValueError("resolve_if_pending needs a terminal status")
    now = timezone.now()
    updated = MpesaPayment.objects.filter(
        checkout_request_id=tracking_id, status=PaymentStatus.PENDING,
    ).update(status=status, resolved_by=source, resolved_at=now, updated_at=now, **fields)
    return bool(updated)


# ---------- Initiator ----------
def initiate_payment(*, phone_number, amount, order_reference, description="", client: DarajaClient = None) -> MpesaPayment:
    client = client or DarajaClient.from_settings()
    config = client.config

    order_reference = (str(order_reference) if order_reference is not None else "").strip()
    if not order_reference:
        raise ValidationError("orderReference is required")
    if len(order_reference) > ORDER_REFERENCE_MAX:
        raise ValidationError(f"orderReference must be at most {ORDER_REFERENCE_MAX} characters")
    phone = normalize_phone(phone_number, config.country_code, config.valid_prefixes)
    value = validate_amount(amount, config.min_amount, config.max_amount)
    description = clip(str(description or ""), TRANSACTION_DESC_MAX) or "Payment"

    result = client.stk_push(
        phone=phone,
        amount=gateway_amount(value),
        account_reference=clip(order_reference, ACCOUNT_REFERENCE_MAX),
        description=description,
    )

    try:
        payment = create_pending(
            tracking_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            order_reference=order_reference,
            phone_number=phone,
            amount=value,
            description=description,
        )
    except DatabaseError:
        # The customer has already been prompted; keep the id for manual matching
        logger.exception(
            "STK push accepted but not recorded: tracking_id=%s reference=%s",
            result.checkout_request_id, order_reference,
        )
        raise
    logger.info("STK push accepted: tracking_id=%s reference=%s", payment.checkout_request_id, order_reference)
    return payment


# ---------- Downstream effects ----------
def confirm_order(payment: MpesaPayment) -> None:
    now = timezone.now()
    updated = Order.objects.filter(order_reference=payment.order_reference).update(
        status="confirmed",
        payment_status=PaymentStatus.COMPLETED,
        payment_completed_at=now,
        updated_at=now,
    )
    if not updated:
        logger.info("No order to confirm for reference=%s", payment.order_reference)


def _after_completion(tracking_id: str) -> None:
    payment = get_by_tracking_id(tracking_id)
    if payment is None:
        return
    try:
        confirm_order(payment)
    except Exception:
        logger.exception("Failed to confirm order for payment %s", tracking_id)
    try:
        send_payment_confirmation(payment=payment)
    except Exception:
        logger.exception("Failed to send payment notification for %s", tracking_id)


def _schedule_completion_effects(tracking_id: str) -> None:
    transaction.on_commit(lambda: _after_completion(tracking_id))


# ---------- Callback receiver ----------
def _callback_fields(callback: StkCallback, raw: dict) -> dict:
    fields = {
        "result_code": str(callback.result_code),
        "result_description": callback.result_description[:255],
        "raw_callback": raw,
    }
    if callback.succeeded:
        fields.update(
            mpesa_receipt=callback.mpesa_receipt[:32],
            paid_phone_number=callback.phone_number[:15],
            paid_amount=callback.amount,
            transaction_date=callback.transaction_date,
        )
    return fields


def apply_callback(callback: StkCallback, raw: dict = None):
    """Record a parsed notification. Returns the payment, or None if it is unknown."""
    payment = get_by_tracking_id(callback.checkout_request_id)
    if payment is None:
        logger.warning(
            "Callback for unknown tracking_id=%s (code=%s), needs manual reconciliation",
            callback.checkout_request_id, callback.result_code,
        )
        return None

    status = callback_status(callback.result_code)
    fields = _callback_fields(callback, raw)

    if resolve_if_pending(callback.checkout_request_id, status, ResolutionSource.CALLBACK, **fields):
        logger.info("Payment %s resolved by callback: %s", callback.checkout_request_id, status)
        if status == PaymentStatus.COMPLETED:
            _schedule_completion_effects(callback.checkout_request_id)
        payment.refresh_from_db()
        return payment

    payment.refresh_from_db()
    if payment.status != status:
        logger.warning(
            "Callback for %s says %s but payment is already %s (by %s); keeping stored state",
            callback.checkout_request_id, status, payment.status, payment.resolved_by,
        )
    elif callback.succeeded and not payment.mpesa_receipt and callback.mpesa_receipt:
        # Poll won the race; the push carries the receipt details the query lacks
        with transaction.atomic():
            locked = MpesaPayment.objects.select_for_update().get(pk=payment.pk)
            for name in ("mpesa_receipt", "paid_phone_number", "paid_amount", "transaction_date", "raw_callback"):
                setattr(locked, name, fields[name])
            locked.save(update_fields=[
                "mpesa_receipt", "paid_phone_number", "paid_amount", "transaction_date", "raw_callback", "updated_at",
            ])
        payment = locked
    else:
        logger.info("Duplicate callback for %s ignored", callback.checkout_request_id)
    return payment


def handle_callback(raw_body) -> dict:
    """Process a gateway notification. Always returns the acknowledgement body."""
    try:
        raw = load_body(raw_body)
        callback = parse_stk_callback(raw)
    except CallbackParseError as e:
        logger.warning("Malformed M-Pesa callback ignored: %s", e)
        return dict(CALLBACK_ACK)

    try:
        apply_callback(callback, raw)
    except Exception:
        logger.exception("Failed to process callback for %s", callback.checkout_request_id)
    return dict(CALLBACK_ACK)


# ---------- Status poller ----------
def _stored_view(payment: MpesaPayment, checked_at) -> PaymentStatusView:
    return PaymentStatusView(
        tracking_id=payment.checkout_request_id,
        status=payment.status,
        result_code=payment.result_code,
        result_description=payment.result_description,
        checked_at=checked_at,
        reason=_reason(payment.status, payment.result_code),
    )


def check_payment_status(tracking_id: str, client: DarajaClient = None) -> PaymentStatusView:
    """Return the current state of a payment, querying the gateway while it is pending.

    A resolved record is final: it is returned as stored and no query is made.
    A terminal answer from the gateway only lands through the conditional
    write, so a callback that resolved the payment first always wins. Gateway
    error answers are reported to the caller but never stored.
    """
    tracking_id = (tracking_id or "").strip()
    if not tracking_id:
        raise ValidationError("trackingId is required")

    payment = get_by_tracking_id(tracking_id)
    if payment is not None and not payment.is_pending:
        return _stored_view(payment, timezone.now())

    client = client or DarajaClient.from_settings()
    data = client.query_stk_status(tracking_id)
    status, result_code, description = map_query_response(data)
    checked_at = timezone.now()
    logger.info("Status query for %s: %s (code=%s)", tracking_id, status, result_code)

    settled = query_is_settled(data)
    if payment is not None and status == PaymentStatus.FAILED and not settled:
        logger.warning("Status query for %s answered with gateway error %s; record left pending",
                       tracking_id, result_code)

    if payment is None or status == PaymentStatus.PENDING or not settled:
        return PaymentStatusView(
            tracking_id=tracking_id,
            status=status,
            result_code=result_code,
            result_description=description,
            checked_at=checked_at,
            reason=_reason(status, result_code),
        )

    won = resolve_if_pending(
        tracking_id, status, ResolutionSource.POLL,
        result_code=result_code, result_description=description[:255],
    )
    if won and status == PaymentStatus.COMPLETED:
        _schedule_completion_effects(tracking_id)
    payment.refresh_from_db()
    if not won and payment.status != status:
        logger.info(
            "Poll for %s returned %s but payment was resolved %s by %s",
            tracking_id, status, payment.status, payment.resolved_by,
        )
    return _stored_view(payment, checked_at)
