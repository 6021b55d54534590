import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
from jose import jwt

from eventtribe.db import SessionLocal
from eventtribe.models import Booking, Event, Profile

SECRET = "test_session_secret"
CALLBACK_TOKEN = "test_callback_token"

ORGANIZER_ID = "organizer-1"
ATTENDEE_ID = "attendee-1"

CHECKOUT_ID = "ws_CO_191220191020363925"


def auth(user_id: str = ATTENDEE_ID, role: str = "user") -> dict:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=30)).timestamp())
    token = jwt.encode({"sub": user_id, "role": role, "exp": exp}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def organizer_auth() -> dict:
    return auth(ORGANIZER_ID, "organizer")


def seed_profiles():
    db = SessionLocal()
    try:
        db.add_all([
            Profile(id=ORGANIZER_ID, username="amani", role="organizer"),
            Profile(id=ATTENDEE_ID, username="wanjiku", role="user"),
        ])
        db.commit()
    finally:
        db.close()


def seed_event(event_id: str = "e1", title: str = "Nairobi Jazz Night", price: str = "1499.50",
               organizer_id: str = ORGANIZER_ID) -> str:
    db = SessionLocal()
    try:
        db.add(Event(id=event_id, title=title, price=Decimal(price), organizer_id=organizer_id))
        db.commit()
        return event_id
    finally:
        db.close()


def seed_booking(booking_id: str = "b1", event_id: str = "e1", user_id: str = ATTENDEE_ID, **fields) -> str:
    db = SessionLocal()
    try:
        db.add(Booking(id=booking_id, event_id=event_id, user_id=user_id, **fields))
        db.commit()
        return booking_id
    finally:
        db.close()


def get_booking(booking_id: str) -> Booking:
    db = SessionLocal()
    try:
        return db.get(Booking, booking_id)
    finally:
        db.close()


def callback_payload(result_code=0, booking_id=None, checkout_id=CHECKOUT_ID, desc=None, receipt=None) -> dict:
    items = []
    if booking_id is not None:
        items.append({"Name": "AccountReference", "Value": booking_id})
    if receipt is not None:
        items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if items:
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


async def send_callback(client: httpx.AsyncClient, payload: dict, token: str = CALLBACK_TOKEN) -> httpx.Response:
    return await client.post("/payments/mpesa/callback", params={"token": token}, json=payload)


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the service; TTLs are ignored."""

    def __init__(self):
        self.kv = {}
        self.hashes = {}

    async def get(self, key):
        return self.kv.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.kv:
            return None
        self.kv[key] = str(value)
        return True

    async def setex(self, key, ttl, value):
        self.kv[key] = str(value)
        return True

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            if self.kv.pop(k, None) is not None:
                removed += 1
        return removed

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def expire(self, key, seconds):
        return True


class FakeDaraja:
    """httpx.MockTransport handler standing in for the Safaricom Daraja API."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.push_error = None
        self.push_response = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": CHECKOUT_ID,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self.query_response = {
            "ResponseCode": "0",
            "ResponseDescription": "The service request has been accepted successsfully",
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": CHECKOUT_ID,
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid Credentials"})
            return httpx.Response(200, json={"access_token": "sandbox-access-token", "expires_in": "3599"})
        if path == "/mpesa/stkpush/v1/processrequest":
            if self.push_error is not None:
                raise self.push_error
            return httpx.Response(200, json=self.push_response)
        if path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(200, json=self.query_response)
        return httpx.Response(404, json={"errorMessage": "not found"})

    def calls(self, path: str) -> list:
        return [r for r in self.requests if r.url.path == path]

    def bodies(self, path: str) -> list:
        return [json.loads(r.content) for r in self.calls(path)]
