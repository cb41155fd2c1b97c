import base64
import json
from decimal import Decimal
from unittest.mock import patch

import requests
from django.core.cache import cache
from django.db import DataError
from django.test import TestCase, override_settings
from django.urls import reverse

from .config import DarajaConfig, PRODUCTION_URL, SANDBOX_URL
from .errors import AuthError, InitiationError, ValidationError
from .integrations.daraja import DarajaClient
from .models import MpesaPayment, Order, PaymentStatus
from .services import initiate_payment
from .testing import MPESA_TEST_SETTINGS, fake_response, stk_accepted, token_response


class DarajaConfigTests(TestCase):
    def test_environment_picks_base_url(self):
        conf = DarajaConfig.from_settings({**MPESA_TEST_SETTINGS, "BASE_URL": "", "ENVIRONMENT": "production"})
        self.assertEqual(conf.base_url, PRODUCTION_URL)
        conf = DarajaConfig.from_settings({**MPESA_TEST_SETTINGS, "BASE_URL": ""})
        self.assertEqual(conf.base_url, SANDBOX_URL)

    def test_shortcode_is_masked(self):
        conf = DarajaConfig.from_settings(MPESA_TEST_SETTINGS)
        self.assertEqual(conf.masked_shortcode, "17****")
        self.assertEqual(conf.max_amount, Decimal("300000"))


@override_settings(MPESA=MPESA_TEST_SETTINGS)
class AccessTokenTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client_ = DarajaClient.from_settings()

    def test_fetches_with_basic_auth(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()) as get:
            self.assertEqual(self.client_.get_access_token(), "tok")

        url = get.call_args.args[0]
        self.assertEqual(url, "https://daraja.test/oauth/v1/generate?grant_type=client_credentials")
        auth = get.call_args.kwargs["auth"]
        self.assertEqual((auth.username, auth.password), ("key", "secret"))
        self.assertEqual(get.call_args.kwargs["timeout"], 5)

    def test_token_is_cached(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()) as get:
            self.client_.get_access_token()
            self.client_.get_access_token()
        self.assertEqual(get.call_count, 1)

    def test_missing_credentials(self):
        client = DarajaClient(DarajaConfig.from_settings({**MPESA_TEST_SETTINGS, "CONSUMER_SECRET": ""}))
        with patch("payments.integrations.daraja.requests.get") as get:
            with self.assertRaises(AuthError):
                client.get_access_token()
        get.assert_not_called()

    def test_rejected_credentials(self):
        with patch("payments.integrations.daraja.requests.get",
                   return_value=fake_response(400, {"errorMessage": "Invalid Authentication passed"})):
            with self.assertRaises(AuthError):
                self.client_.get_access_token()

    def test_missing_access_token_field(self):
        with patch("payments.integrations.daraja.requests.get", return_value=fake_response(200, {"expires_in": "3599"})):
            with self.assertRaises(AuthError):
                self.client_.get_access_token()

    def test_transport_failure(self):
        with patch("payments.integrations.daraja.requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(AuthError):
                self.client_.get_access_token()


@override_settings(MPESA=MPESA_TEST_SETTINGS)
class InitiatePaymentTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client_ = DarajaClient.from_settings()

    def _initiate(self, **overrides):
        kwargs = dict(phone_number="0712345678", amount=500, order_reference="ORD-1",
                      description="Order ORD-1", client=self.client_)
        kwargs.update(overrides)
        return initiate_payment(**kwargs)

    def test_successful_push_creates_pending_record(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()) as post, \
                patch("payments.integrations.daraja.daraja_timestamp", return_value="20240101120000"):
            payment = self._initiate()

        self.assertEqual(payment.checkout_request_id, "ws_CO_191220191020363925")
        self.assertEqual(payment.merchant_request_id, "29115-34620561-1")
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.phone_number, "254712345678")
        self.assertIsNone(payment.resolved_at)

        self.assertEqual(post.call_args.args[0], "https://daraja.test/mpesa/stkpush/v1/processrequest")
        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["Amount"], 500)
        self.assertEqual(sent["PartyA"], "254712345678")
        self.assertEqual(sent["PhoneNumber"], "254712345678")
        self.assertEqual(sent["PartyB"], "174379")
        self.assertEqual(sent["BusinessShortCode"], "174379")
        self.assertEqual(sent["Timestamp"], "20240101120000")
        self.assertEqual(sent["Password"], base64.b64encode(b"174379passkey20240101120000").decode())
        self.assertEqual(sent["CallBackURL"], "https://shop.example.com/payments/callback")
        self.assertEqual(sent["AccountReference"], "ORD-1")
        self.assertEqual(sent["TransactionDesc"], "Order ORD-1")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    def test_links_existing_order(self):
        order = Order.objects.create(order_reference="ORD-1", amount=Decimal("500"))
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()):
            payment = self._initiate()
        self.assertEqual(payment.order, order)

    def test_amount_rounded_for_gateway(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()) as post:
            payment = self._initiate(amount="99.50")
        self.assertEqual(post.call_args.kwargs["json"]["Amount"], 100)
        self.assertEqual(payment.amount, Decimal("99.50"))

    def test_out_of_range_amounts_make_no_network_calls(self):
        for amount in (0, "0.99", -5, 300000.01, 300001, "abc", None):
            with patch("payments.integrations.daraja.requests.get") as get, \
                    patch("payments.integrations.daraja.requests.post") as post:
                with self.assertRaises(ValidationError):
                    self._initiate(amount=amount)
            get.assert_not_called()
            post.assert_not_called()
        self.assertFalse(MpesaPayment.objects.exists())

    def test_bad_phone_and_missing_reference_rejected(self):
        with patch("payments.integrations.daraja.requests.post") as post:
            with self.assertRaises(ValidationError):
                self._initiate(phone_number="0812345678")
            with self.assertRaises(ValidationError):
                self._initiate(order_reference="  ")
        post.assert_not_called()

    def test_over_long_reference_makes_no_network_calls(self):
        with patch("payments.integrations.daraja.requests.get") as get, \
                patch("payments.integrations.daraja.requests.post") as post:
            with self.assertRaises(ValidationError):
                self._initiate(order_reference="R" * 65)
        get.assert_not_called()
        post.assert_not_called()

    def test_longest_reference_is_accepted(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()) as post:
            payment = self._initiate(order_reference="R" * 64)
        self.assertEqual(payment.order_reference, "R" * 64)
        self.assertEqual(post.call_args.kwargs["json"]["AccountReference"], "R" * 12)

    def test_storage_failure_after_push_logs_tracking_id(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()), \
                patch("payments.services.create_pending", side_effect=DataError("value too long")):
            with self.assertLogs("payments.services", level="ERROR") as cm, self.assertRaises(DataError):
                self._initiate()
        self.assertIn("ws_CO_191220191020363925", cm.output[0])

    def test_gateway_rejection_persists_nothing(self):
        rejected = fake_response(400, {
            "requestId": "1234-5678",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        })
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=rejected):
            with self.assertRaises(InitiationError) as cm:
                self._initiate()
        self.assertEqual(str(cm.exception), "Bad Request - Invalid PhoneNumber")
        self.assertEqual(cm.exception.response_code, "400.002.02")
        self.assertFalse(MpesaPayment.objects.exists())

    def test_non_zero_response_code(self):
        resp = fake_response(200, {"ResponseCode": "1", "ResponseDescription": "Rejected"})
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=resp):
            with self.assertRaises(InitiationError):
                self._initiate()
        self.assertFalse(MpesaPayment.objects.exists())

    def test_transport_failure_reports_generic_message(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", side_effect=requests.Timeout("slow")):
            with self.assertRaises(InitiationError) as cm:
                self._initiate()
        self.assertEqual(str(cm.exception), "payment service unavailable")
        self.assertFalse(MpesaPayment.objects.exists())

    def test_expired_token_refreshed_once(self):
        tokens = [token_response("old"), token_response("new")]
        with patch("payments.integrations.daraja.requests.get", side_effect=tokens) as get, \
                patch("payments.integrations.daraja.requests.post",
                      side_effect=[fake_response(401, {"errorMessage": "Invalid Access Token"}), stk_accepted()]) as post:
            payment = self._initiate()

        self.assertEqual(get.call_count, 2)
        self.assertEqual(post.call_count, 2)
        self.assertEqual(post.call_args_list[0].kwargs["headers"]["Authorization"], "Bearer old")
        self.assertEqual(post.call_args_list[1].kwargs["headers"]["Authorization"], "Bearer new")
        self.assertEqual(payment.status, PaymentStatus.PENDING)

    def test_second_401_is_not_retried_again(self):
        unauthorized = fake_response(401, {"errorMessage": "Invalid Access Token"})
        with patch("payments.integrations.daraja.requests.get", side_effect=[token_response("a"), token_response("b")]), \
                patch("payments.integrations.daraja.requests.post", return_value=unauthorized) as post:
            with self.assertRaises(InitiationError):
                self._initiate()
        self.assertEqual(post.call_count, 2)


@override_settings(MPESA=MPESA_TEST_SETTINGS)
class InitiateViewTests(TestCase):
    def setUp(self):
        cache.clear()

    def _post(self, payload):
        return self.client.post(reverse("payments:initiate"), data=json.dumps(payload), content_type="application/json")

    def test_success(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()):
            resp = self._post({"phoneNumber": "0712345678", "amount": 500, "orderReference": "ORD-1",
                               "description": "Order"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["trackingId"], "ws_CO_191220191020363925")
        self.assertEqual(resp.json()["merchantRequestId"], "29115-34620561-1")

    def test_validation_error_is_400(self):
        with patch("payments.integrations.daraja.requests.post") as post:
            resp = self._post({"phoneNumber": "0712345678", "amount": 0, "orderReference": "ORD-1"})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["ok"])
        post.assert_not_called()

    def test_invalid_json_is_400(self):
        resp = self.client.post(reverse("payments:initiate"), data="not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_gateway_failure_is_500_with_description(self):
        rejected = fake_response(200, {"ResponseCode": "2001", "ResponseDescription": "The initiator information is invalid."})
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=rejected):
            resp = self._post({"phoneNumber": "0712345678", "amount": 10, "orderReference": "ORD-2"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"], "The initiator information is invalid.")

    def test_auth_failure_is_500(self):
        with patch("payments.integrations.daraja.requests.get", return_value=fake_response(401, {})):
            resp = self._post({"phoneNumber": "0712345678", "amount": 10, "orderReference": "ORD-3"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"], "payment service unavailable")

    def test_storage_failure_is_json_500(self):
        with patch("payments.integrations.daraja.requests.get", return_value=token_response()), \
                patch("payments.integrations.daraja.requests.post", return_value=stk_accepted()), \
                patch("payments.services.create_pending", side_effect=DataError("value too long")), \
                self.assertLogs("payments.services", level="ERROR"):
            resp = self._post({"phoneNumber": "0712345678", "amount": 10, "orderReference": "ORD-4"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"ok": False, "error": "payment could not be recorded"})

    @override_settings(MPESA={**MPESA_TEST_SETTINGS, "MAX_AMOUNT": "lots"})
    def test_bad_settings_are_json_500(self):
        with patch("payments.integrations.daraja.requests.post") as post, \
                self.assertLogs("payments.views", level="ERROR"):
            resp = self._post({"phoneNumber": "0712345678", "amount": 10, "orderReference": "ORD-5"})
        self.assertEqual(resp.status_code, 500)
        self.assertFalse(resp.json()["ok"])
        post.assert_not_called()

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:initiate")).status_code, 405)
