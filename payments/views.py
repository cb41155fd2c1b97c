import hmac
import json
import logging

from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .config import DarajaConfig
from .errors import AuthError, GENERIC_GATEWAY_MESSAGE, InitiationError, PollError, ValidationError
from .integrations.daraja import DarajaClient
from .services import CALLBACK_ACK, check_payment_status, handle_callback, initiate_payment

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _error(message, status):
    return JsonResponse({"ok": False, "error": message}, status=status)


@csrf_exempt
@require_POST
def initiate_payment_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return _error("Invalid JSON body", 400)

    try:
        payment = initiate_payment(
            phone_number=body.get("phoneNumber") or body.get("phone"),
            amount=body.get("amount"),
            order_reference=body.get("orderReference") or body.get("reference"),
            description=body.get("description", ""),
            client=DarajaClient.from_settings(),
        )
    except ValidationError as e:
        return _error(str(e), 400)
    except AuthError as e:
        logger.error("M-Pesa authentication failed: %s", e)
        return _error(GENERIC_GATEWAY_MESSAGE, 500)
    except InitiationError as e:
        return JsonResponse({"ok": False, "error": str(e), "responseCode": e.response_code}, status=500)
    except DatabaseError:
        return _error("payment could not be recorded", 500)
    except ImproperlyConfigured:
        logger.exception("M-Pesa settings are invalid")
        return _error(GENERIC_GATEWAY_MESSAGE, 500)

    return JsonResponse({
        "ok": True,
        "trackingId": payment.checkout_request_id,
        "merchantRequestId": payment.merchant_request_id,
    })


def _callback_token_ok(request, config: DarajaConfig) -> bool:
    if not config.callback_token:
        return True
    supplied = request.GET.get("token", "")
    return hmac.compare_digest(supplied.encode("utf-8"), config.callback_token.encode("utf-8"))


@csrf_exempt
@require_POST
def mpesa_callback_view(request):
    """Gateway push endpoint. Answers 200 with the acknowledgement whatever happens."""
    try:
        if not _callback_token_ok(request, DarajaConfig.from_settings()):
            logger.warning("M-Pesa callback with bad token from %s ignored", request.META.get("REMOTE_ADDR"))
            return JsonResponse(CALLBACK_ACK)
        ack = handle_callback(request.body)
    except Exception:
        logger.exception("M-Pesa callback view crashed")
        ack = CALLBACK_ACK
    return JsonResponse(ack)


@require_GET
def payment_status_view(request, tracking_id: str):
    try:
        view = check_payment_status(tracking_id, client=DarajaClient.from_settings())
    except ValidationError as e:
        return _error(str(e), 400)
    except PollError as e:
        logger.warning("Status query for %s failed: %s", tracking_id, e)
        return _error(str(e), 500)
    except ImproperlyConfigured:
        logger.exception("M-Pesa settings are invalid")
        return _error(GENERIC_GATEWAY_MESSAGE, 500)
    return JsonResponse({"ok": True, **view.as_dict()})
