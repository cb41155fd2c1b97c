from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import requests
from django.core.cache import cache
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from .callbacks import parse_stk_callback
from .errors import PollError
from .integrations.daraja import DarajaClient
from .models import MpesaPayment, Order, PaymentStatus, ResolutionSource
from .services import (
    apply_callback,
    check_payment_status,
    handle_callback,
    initiate_payment,
    map_query_response,
    query_is_settled,
)
from .testing import MPESA_TEST_SETTINGS, fake_response, stk_accepted, stk_callback_body, token_response

TRACKING_ID = "ws_CO_191220191020363925"


def query_body(result_code, result_desc="", response_code="0"):
    return {
        "ResponseCode": response_code,
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": TRACKING_ID,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }


class QueryMappingTests(SimpleTestCase):
    def test_result_codes(self):
        cases = [
            ("0", PaymentStatus.COMPLETED),
            ("1032", PaymentStatus.CANCELLED),
            ("1037", PaymentStatus.TIMEOUT),
            ("1", PaymentStatus.FAILED),
            ("2001", PaymentStatus.FAILED),
        ]
        for code, expected in cases:
            status, result_code, _ = map_query_response(query_body(code, "desc"))
            self.assertEqual(status, expected, code)
            self.assertEqual(result_code, code)

    def test_still_processing(self):
        status, code, desc = map_query_response({
            "ResponseCode": "1037", "ResponseDescription": "Request is still being processed",
        })
        self.assertEqual(status, PaymentStatus.PENDING)
        self.assertEqual(code, "1037")

        status, code, desc = map_query_response({
            "requestId": "ws_CO_1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed",
        })
        self.assertEqual(status, PaymentStatus.PENDING)
        self.assertEqual(desc, "The transaction is being processed")

    def test_other_response_codes_fail_verbatim(self):
        status, code, desc = map_query_response({
            "requestId": "x", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid CheckoutRequestID",
        })
        self.assertEqual(status, PaymentStatus.FAILED)
        self.assertEqual(code, "400.002.02")
        self.assertEqual(desc, "Bad Request - Invalid CheckoutRequestID")

    def test_accepted_query_without_result_code_is_pending(self):
        body = {"ResponseCode": "0", "ResponseDescription": "The service request has been accepted successsfully"}
        status, code, _ = map_query_response(body)
        self.assertEqual(status, PaymentStatus.PENDING)
        self.assertFalse(query_is_settled(body))
        self.assertFalse(query_is_settled({**body, "ResultCode": None}))

    def test_only_result_bodies_are_settled(self):
        self.assertTrue(query_is_settled(query_body("2001")))
        self.assertTrue(query_is_settled(query_body(0)))
        self.assertFalse(query_is_settled({"errorCode": "500.003.02", "errorMessage": "System is busy"}))
        self.assertFalse(query_is_settled({"ResponseCode": "1", "ResponseDescription": "Rejected"}))


@override_settings(MPESA=MPESA_TEST_SETTINGS, PAYMENTS_ADMIN_EMAILS="admin@example.com")
class CheckPaymentStatusTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client_ = DarajaClient.from_settings()
        self.order = Order.objects.create(order_reference="ORD-1", amount=Decimal("500"))
        self.payment = MpesaPayment.objects.create(
            checkout_request_id=TRACKING_ID,
            order_reference="ORD-1",
            phone_number="254712345678",
            amount=Decimal("500"),
        )

    def _query(self, response):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=response) as post:
            view = check_payment_status(TRACKING_ID, client=self.client_)
        return view, post

    def test_query_is_signed_with_fresh_password(self):
        with patch("payments.integrations.daraja.daraja_timestamp", return_value="20240202101010"):
            view, post = self._query(fake_response(200, query_body("1032", "Request cancelled by user")))
        self.assertEqual(post.call_args.args[0], "https://daraja.test/mpesa/stkpushquery/v1/query")
        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["CheckoutRequestID"], TRACKING_ID)
        self.assertEqual(sent["Timestamp"], "20240202101010")
        self.assertEqual(view.status, PaymentStatus.CANCELLED)

    def test_completed_poll_resolves_pending_record(self):
        with self.captureOnCommitCallbacks(execute=True):
            view, _ = self._query(fake_response(200, query_body("0", "The service request is processed successfully.")))
        self.assertEqual(view.status, PaymentStatus.COMPLETED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.resolved_by, ResolutionSource.POLL)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "confirmed")

    def test_insufficient_funds_keeps_reason(self):
        view, _ = self._query(fake_response(200, query_body("1", "The balance is insufficient for the transaction.")))
        self.assertEqual(view.status, PaymentStatus.FAILED)
        self.assertEqual(view.reason, "insufficient_funds")
        self.assertEqual(view.result_description, "The balance is insufficient for the transaction.")

    def test_timeout(self):
        view, _ = self._query(fake_response(200, query_body("1037", "DS timeout user cannot be reached")))
        self.assertEqual(view.status, PaymentStatus.TIMEOUT)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.TIMEOUT)

    def test_processing_answer_leaves_record_pending(self):
        processing = fake_response(500, {
            "requestId": "ws_CO_1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed",
        })
        view, _ = self._query(processing)
        self.assertEqual(view.status, PaymentStatus.PENDING)
        self.assertFalse(view.is_terminal)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertIsNone(self.payment.resolved_at)

    def test_gateway_error_is_reported_but_not_stored(self):
        busy = fake_response(500, {"requestId": "x", "errorCode": "500.003.02", "errorMessage": "System is busy"})
        with self.assertLogs("payments.services", level="WARNING"):
            view, _ = self._query(busy)
        self.assertEqual(view.status, PaymentStatus.FAILED)
        self.assertEqual(view.result_code, "500.003.02")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertEqual(self.payment.result_code, "")

        with self.captureOnCommitCallbacks(execute=True):
            handle_callback(stk_callback_body())
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.resolved_by, ResolutionSource.CALLBACK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "confirmed")

    def test_accepted_query_without_result_code_leaves_record_pending(self):
        view, _ = self._query(fake_response(200, {"ResponseCode": "0", "ResponseDescription": "Accepted"}))
        self.assertEqual(view.status, PaymentStatus.PENDING)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertIsNone(self.payment.resolved_at)

    def test_initiate_then_poll_while_processing_is_pending(self):
        self.payment.delete()
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", side_effect=[
                    stk_accepted(),
                    fake_response(200, {"ResponseCode": "1037", "ResponseDescription": "still processing"}),
                ]):
            payment = initiate_payment(phone_number="0712345678", amount=500, order_reference="ORD-1",
                                       client=self.client_)
            view = check_payment_status(payment.checkout_request_id, client=self.client_)
        self.assertEqual(view.status, PaymentStatus.PENDING)

    def test_callback_wins_race_against_poll(self):
        def callback_lands_first(*args, **kwargs):
            apply_callback(parse_stk_callback(stk_callback_body()), stk_callback_body())
            return fake_response(200, query_body("2001", "The initiator information is invalid."))

        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", side_effect=callback_lands_first):
            view = check_payment_status(TRACKING_ID, client=self.client_)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.resolved_by, ResolutionSource.CALLBACK)
        self.assertEqual(view.status, PaymentStatus.COMPLETED)

    def test_resolved_record_is_returned_without_query(self):
        MpesaPayment.objects.filter(pk=self.payment.pk).update(
            status=PaymentStatus.COMPLETED, result_code="0", result_description="ok",
            resolved_by=ResolutionSource.CALLBACK, resolved_at=timezone.now(),
        )
        with patch("payments.integrations.daraja.requests.post") as post:
            view = check_payment_status(TRACKING_ID, client=self.client_)
        post.assert_not_called()
        self.assertEqual(view.status, PaymentStatus.COMPLETED)

    def test_unknown_tracking_id_is_reported_not_stored(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post",
                      return_value=fake_response(200, query_body("0"))):
            view = check_payment_status("ws_CO_other", client=self.client_)
        self.assertEqual(view.status, PaymentStatus.COMPLETED)
        self.assertFalse(MpesaPayment.objects.filter(checkout_request_id="ws_CO_other").exists())

    def test_transport_failure_is_poll_error(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(PollError):
                check_payment_status(TRACKING_ID, client=self.client_)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)

    def test_auth_failure_is_poll_error(self):
        with patch("payments.integrations.daraja.requests.get", return_value=fake_response(400, {})):
            with self.assertRaises(PollError):
                check_payment_status(TRACKING_ID, client=self.client_)

    def test_unreadable_body_is_poll_error(self):
        with self.assertRaises(PollError):
            self._query(fake_response(502, text="<html>Bad gateway</html>"))


@override_settings(MPESA=MPESA_TEST_SETTINGS)
class StatusViewTests(TestCase):
    def setUp(self):
        cache.clear()
        MpesaPayment.objects.create(
            checkout_request_id=TRACKING_ID, order_reference="ORD-1", phone_number="254712345678", amount=10,
        )

    def test_returns_status_body(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post",
                      return_value=fake_response(200, query_body("1032", "Request cancelled by user"))):
            resp = self.client.get(reverse("payments:status", args=[TRACKING_ID]))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "cancelled")
        self.assertEqual(data["resultCode"], "1032")
        self.assertEqual(data["resultDescription"], "Request cancelled by user")
        self.assertEqual(data["trackingId"], TRACKING_ID)
        self.assertIn("checkedAt", data)

    def test_poll_error_is_500(self):
        with patch("payments.integrations.daraja.requests.get", side_effect=requests.Timeout("slow")):
            resp = self.client.get(reverse("payments:status", args=[TRACKING_ID]))
        self.assertEqual(resp.status_code, 500)
        self.assertFalse(resp.json()["ok"])

    @override_settings(MPESA={**MPESA_TEST_SETTINGS, "MIN_AMOUNT": "abc"})
    def test_bad_settings_are_json_500(self):
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self.client.get(reverse("payments:status", args=[TRACKING_ID]))
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"ok": False, "error": "payment service unavailable"})


@override_settings(MPESA=MPESA_TEST_SETTINGS, PAYMENTS_ADMIN_EMAILS="admin@example.com")
class ReconcileCommandTests(TestCase):
    def setUp(self):
        cache.clear()

    def _payment(self, tracking_id, minutes_old):
        p = MpesaPayment.objects.create(
            checkout_request_id=tracking_id, order_reference=tracking_id, phone_number="254712345678", amount=10,
        )
        MpesaPayment.objects.filter(pk=p.pk).update(created_at=timezone.now() - timedelta(minutes=minutes_old))
        return p

    def test_polls_only_stale_pending_payments(self):
        stale = self._payment("ws_CO_stale", 10)
        fresh = self._payment("ws_CO_fresh", 0)
        out = StringIO()
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post",
                      return_value=fake_response(200, query_body("1032", "Request cancelled by user"))) as post:
            call_command("reconcile_mpesa_payments", "--sleep", "0", stdout=out)

        self.assertEqual(post.call_count, 1)
        self.assertEqual(post.call_args.kwargs["json"]["CheckoutRequestID"], "ws_CO_stale")
        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, PaymentStatus.CANCELLED)
        self.assertEqual(fresh.status, PaymentStatus.PENDING)
        self.assertIn("Checked 1, resolved 1", out.getvalue())

    def test_nothing_to_do(self):
        out = StringIO()
        call_command("reconcile_mpesa_payments", stdout=out)
        self.assertIn("No pending payments", out.getvalue())

    def test_poll_errors_are_reported(self):
        self._payment("ws_CO_stale", 10)
        out = StringIO()
        with patch("payments.integrations.daraja.requests.get", side_effect=requests.ConnectionError("down")):
            call_command("reconcile_mpesa_payments", "--sleep", "0", stdout=out)
        self.assertIn("ws_CO_stale", out.getvalue())
        self.assertIn("Checked 1, resolved 0", out.getvalue())

    def test_gateway_errors_do_not_count_as_resolved(self):
        stale = self._payment("ws_CO_stale", 10)
        out = StringIO()
        busy = fake_response(500, {"requestId": "x", "errorCode": "500.003.02", "errorMessage": "System is busy"})
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=busy):
            call_command("reconcile_mpesa_payments", "--sleep", "0", stdout=out)
        stale.refresh_from_db()
        self.assertEqual(stale.status, PaymentStatus.PENDING)
        self.assertIn("500.003.02", out.getvalue())
        self.assertIn("Checked 1, resolved 0", out.getvalue())
