import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # Comma-separated list via env or settings; fall back to DEFAULT_FROM_EMAIL/host user
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or getattr(settings, "ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_payment_confirmation(*, payment) -> None:
    """Notify the shop admins that an M-Pesa payment completed.

    Never raises; a mail failure must not affect the payment flow.
    """
    try:
        admins = _admin_recipients()
        if not admins:
            return
        context = {
            "tracking_id": payment.checkout_request_id,
            "order_reference": payment.order_reference,
            "amount": payment.paid_amount or payment.amount,
            "phone_number": payment.paid_phone_number or payment.phone_number,
            "mpesa_receipt": payment.mpesa_receipt,
            "status": payment.status,
            "resolved_by": payment.resolved_by,
            "description": payment.description or "Payment",
        }
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
        subject = f"M-Pesa payment received: {payment.order_reference} – KES {context['amount']}"
        html = render_to_string("emails/payment_notification_admin.html", context)
        text = render_to_string("emails/payment_notification_admin.txt", context)
        msg = EmailMultiAlternatives(subject, text, from_email, admins)
        msg.attach_alternative(html, "text/html")
        msg.send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("send_payment_confirmation crashed for payment=%s", getattr(payment, "checkout_request_id", None))
