"""Safaricom Daraja (M-Pesa Express) gateway client.

Covers the three outbound calls of the STK-push flow: the OAuth token
exchange, the push request itself and the push status query. Everything
stateful (records, status merging) lives in ``payments.services``.
"""
import hashlib
import json
import logging
from dataclasses import dataclass

import requests
from django.core.cache import cache
from requests import RequestException
from requests.auth import HTTPBasicAuth

from ..config import DarajaConfig
from ..errors import AuthError, InitiationError, PollError
from ..utils import daraja_timestamp, stk_password

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Seconds shaved off the gateway's expires_in before the cached token is dropped
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    raw: dict


def _json_or_none(resp):
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _gateway_message(data: dict) -> str:
    return str(
        (data or {}).get("ResponseDescription")
        or (data or {}).get("errorMessage")
        or (data or {}).get("ResultDesc")
        or ""
    )


class DarajaClient:
    def __init__(self, config: DarajaConfig):
        self.config = config

    @classmethod
    def from_settings(cls) -> "DarajaClient":
        return cls(DarajaConfig.from_settings())

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    def _token_cache_key(self) -> str:
        digest = hashlib.sha256(f"{self.config.base_url}|{self.config.consumer_key}".encode("utf-8")).hexdigest()
        return f"mpesa:access_token:{digest[:16]}"

    # ---------- Token provider ----------
    def get_access_token(self, refresh: bool = False) -> str:
        """Return a bearer token, served from cache unless ``refresh`` is set."""
        key = self._token_cache_key()
        if not refresh:
            token = cache.get(key)
            if token:
                return token

        token, expires_in = self._fetch_token()
        timeout = self.config.token_cache_seconds
        if expires_in:
            timeout = max(1, min(timeout, expires_in - TOKEN_EXPIRY_MARGIN))
        cache.set(key, token, timeout)
        return token

    def invalidate_token(self) -> None:
        cache.delete(self._token_cache_key())

    def _fetch_token(self):
        if not (self.config.consumer_key and self.config.consumer_secret):
            raise AuthError("M-Pesa consumer key or secret not configured")
        try:
            resp = requests.get(
                self._url(TOKEN_PATH),
                auth=HTTPBasicAuth(self.config.consumer_key, self.config.consumer_secret),
                timeout=self.config.timeout,
            )
        except RequestException as e:
            raise AuthError(f"Token request failed: {e}")

        data = _json_or_none(resp)
        if not 200 <= resp.status_code < 300:
            logger.error("Daraja token request rejected: status=%s", resp.status_code)
            raise AuthError(f"Token request rejected with HTTP {resp.status_code}", status_code=resp.status_code)
        if not data or not data.get("access_token"):
            raise AuthError("No access token in gateway response")

        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return str(data["access_token"]), expires_in

    # ---------- Signed calls ----------
    def _signed_fields(self, timestamp: str = None) -> dict:
        timestamp = timestamp or daraja_timestamp()
        return {
            "BusinessShortCode": self.config.shortcode,
            "Password": stk_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
        }

    def _authorized_post(self, path: str, payload: dict):
        """POST with the bearer token; a 401 refreshes the token and retries once."""
        token = self.get_access_token()
        resp = self._post(path, payload, token)
        if resp.status_code == 401:
            logger.info("Daraja rejected cached token on %s, refreshing once", path)
            self.invalidate_token()
            token = self.get_access_token(refresh=True)
            resp = self._post(path, payload, token)
        return resp

    def _post(self, path: str, payload: dict, token: str):
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        return requests.post(self._url(path), json=payload, headers=headers, timeout=self.config.timeout)

    def stk_push(self, *, phone: str, amount: int, account_reference: str, description: str,
                 timestamp: str = None) -> StkPushResult:
        if not (self.config.shortcode and self.config.passkey):
            raise InitiationError("M-Pesa short code or passkey not configured")
        payload = {
            **self._signed_fields(timestamp),
            "TransactionType": self.config.transaction_type,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        logger.info(
            "STK push: shortcode=%s reference=%s amount=%s",
            self.config.masked_shortcode, account_reference, amount,
        )
        try:
            resp = self._authorized_post(STK_PUSH_PATH, payload)
        except RequestException as e:
            logger.warning("STK push transport failure for reference=%s: %s", account_reference, e)
            raise InitiationError(response_code="")

        data = _json_or_none(resp)
        if data is None:
            logger.error("STK push returned non-JSON body: status=%s", resp.status_code)
            raise InitiationError()

        code = str(data.get("ResponseCode", data.get("errorCode", "")))
        if code != "0" or not data.get("CheckoutRequestID"):
            logger.warning(
                "STK push rejected for reference=%s: code=%s desc=%s",
                account_reference, code, _gateway_message(data),
            )
            raise InitiationError(_gateway_message(data), response_code=code, response=data)

        return StkPushResult(
            checkout_request_id=str(data["CheckoutRequestID"]),
            merchant_request_id=str(data.get("MerchantRequestID", "")),
            response_code=code,
            response_description=str(data.get("ResponseDescription", "")),
            customer_message=str(data.get("CustomerMessage", "")),
            raw=data,
        )

    def query_stk_status(self, checkout_request_id: str, timestamp: str = None) -> dict:
        """Ask the gateway for the state of a push and return its JSON body as is.

        The query endpoint answers "still processing" with an HTTP 500 error
        body, so any JSON object is handed back for interpretation; only
        transport failures, auth failures and unreadable bodies raise.
        """
        payload = {
            **self._signed_fields(timestamp),
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            resp = self._authorized_post(STK_QUERY_PATH, payload)
        except AuthError as e:
            raise PollError(f"Authentication failed: {e}")
        except RequestException as e:
            raise PollError(f"Gateway request failed: {e}")

        if resp.status_code == 401:
            raise PollError("Gateway refused the access token")
        data = _json_or_none(resp)
        if data is None:
            raise PollError(
                f"Unreadable status response (HTTP {resp.status_code}): {json.dumps(resp.text)[:200]}"
            )
        return data
