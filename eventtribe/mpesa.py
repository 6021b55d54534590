import base64
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from . import config
from .errors import PaymentInitiationError

logger = logging.getLogger(__name__)

# Daraja timestamps are Kenyan local time (UTC+3, no DST)
EAT = timezone(timedelta(hours=3))

MSISDN_RE = re.compile(r"^254\d{9}$")


def normalize_phone(phone: str) -> str:
    """0712345678 / +254712345678 / 254712345678 -> 254712345678"""
    formatted = re.sub(r"\s+", "", phone or "")
    formatted = re.sub(r"^0", "254", formatted)
    formatted = formatted.replace("+", "")
    if not MSISDN_RE.match(formatted):
        raise PaymentInitiationError("Invalid phone number")
    return formatted


def stk_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def callback_url() -> str:
    return f"{config.PUBLIC_BASE_URL}/payments/mpesa/callback?token={config.MPESA_CALLBACK_TOKEN}"


class DarajaClient:
    """Thin async client for the Daraja OAuth, STK push and STK query endpoints."""

    def __init__(
        self,
        base_url: str = config.MPESA_BASE_URL,
        consumer_key: str = config.MPESA_CONSUMER_KEY,
        consumer_secret: str = config.MPESA_CONSUMER_SECRET,
        shortcode: str = config.MPESA_BUSINESS_SHORTCODE,
        passkey: str = config.MPESA_PASSKEY,
        timeout: float = config.MPESA_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shortcode = shortcode
        self.passkey = passkey
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self):
        await self._client.aclose()

    async def fetch_access_token(self) -> str:
        try:
            r = await self._client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self._consumer_key, self._consumer_secret),
            )
            r.raise_for_status()
            token = r.json().get("access_token")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("mpesa token request failed: %s", e)
            raise PaymentInitiationError("Could not authenticate with payment provider")
        if not token:
            raise PaymentInitiationError("Could not authenticate with payment provider")
        return token

    def _signed_fields(self) -> dict:
        timestamp = stk_timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": stk_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def stk_push(self, *, amount: int, phone: str, account_reference: str, description: str) -> dict:
        """Submit an STK push; returns the provider's acceptance body.

        Raises PaymentInitiationError unless ResponseCode is "0".
        """
        access_token = await self.fetch_access_token()
        payload = {
            **self._signed_fields(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url(),
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        logger.info("initiating stk push amount=%s phone=%s booking_id=%s", amount, phone, account_reference)
        try:
            r = await self._client.post(
                "/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("stk push request failed: %s", e)
            raise PaymentInitiationError("Payment initiation failed")

        logger.info("stk push response: %s", data)
        if str(data.get("ResponseCode")) != "0":
            raise PaymentInitiationError(
                data.get("ResponseDescription") or data.get("errorMessage") or "Payment initiation failed"
            )
        return data

    async def stk_query(self, checkout_request_id: str) -> dict:
        """Ask the provider for the outcome of an earlier STK push.

        Returns the raw body; a "ResultCode" key is only present once the
        payer has responded or the prompt has timed out.
        """
        access_token = await self.fetch_access_token()
        r = await self._client.post(
            "/mpesa/stkpushquery/v1/query",
            json={**self._signed_fields(), "CheckoutRequestID": checkout_request_id},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return r.json()
