"""Shared fixtures for the payments test modules."""
import json
from unittest.mock import Mock

MPESA_TEST_SETTINGS = {
    "ENVIRONMENT": "sandbox",
    "BASE_URL": "https://daraja.test",
    "CONSUMER_KEY": "key",
    "CONSUMER_SECRET": "secret",
    "SHORTCODE": "174379",
    "PASSKEY": "passkey",
    "CALLBACK_URL": "https://shop.example.com/payments/callback",
    "CALLBACK_TOKEN": "",
    "TRANSACTION_TYPE": "CustomerPayBillOnline",
    "COUNTRY_CODE": "254",
    "VALID_PREFIXES": "17",
    "MIN_AMOUNT": "1",
    "MAX_AMOUNT": "300000",
    "TIMEOUT": 5,
    "TOKEN_CACHE_SECONDS": 3000,
}


def fake_response(status_code=200, data=None, text=None):
    resp = Mock()
    resp.status_code = status_code
    if data is None:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    else:
        resp.json.return_value = data
        resp.text = json.dumps(data)
    return resp


def token_response(token="tok", expires_in="3599"):
    return fake_response(200, {"access_token": token, "expires_in": expires_in})


def stk_accepted(checkout_id="ws_CO_191220191020363925", merchant_id="29115-34620561-1"):
    return fake_response(200, {
        "MerchantRequestID": merchant_id,
        "CheckoutRequestID": checkout_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    })


def stk_callback_body(checkout_id="ws_CO_191220191020363925", result_code=0, result_desc=None,
                      receipt="NLJ7RT61SV", amount=500, phone=254712345678):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": stk}}
