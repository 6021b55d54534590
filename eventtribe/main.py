import logging
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .admin import router as admin_router
from .cache import get_redis
from .checkin import verify_ticket
from .db import SessionLocal, engine, Base
from .errors import CallbackAuthError, MalformedCallback, PaymentInitiationError
from .idempotency import get_cached_response, cache_response
from .models import AuditLog, Booking, Event, COMPLETED
from .mpesa import DarajaClient
from .payments import apply_payment_result, initiate_payment, parse_callback
from .rate_limit import token_bucket
from .security import Session, current_session, verify_callback_request

logger = logging.getLogger(__name__)

app = FastAPI(title="EventTribe Payments", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "idempotency-key"],
)
app.include_router(admin_router)

Base.metadata.create_all(bind=engine)

_mpesa: Optional[DarajaClient] = None


def get_mpesa() -> DarajaClient:
    global _mpesa
    if _mpesa is None:
        _mpesa = DarajaClient()
    return _mpesa


@app.exception_handler(PaymentInitiationError)
async def payment_initiation_failed(request: Request, exc: PaymentInitiationError):
    logger.warning("mpesa payment error: %s", exc)
    return JSONResponse({"success": False, "error": str(exc)}, status_code=400)


# -------------------------
# Bookings
# -------------------------
class BookingReq(BaseModel):
    event_id: str

@app.post("/bookings", status_code=201)
def create_booking(req: BookingReq, session: Session = Depends(current_session)):
    db = SessionLocal()
    try:
        if not db.get(Event, req.event_id):
            raise HTTPException(status_code=404, detail="EVENT_NOT_FOUND")
        booking = Booking(event_id=req.event_id, user_id=session.user_id)
        db.add(booking)
        db.commit()
        return {"booking_id": booking.id, "event_id": booking.event_id, "payment_status": booking.payment_status}
    finally:
        db.close()

@app.get("/bookings/{booking_id}/ticket")
def get_ticket(booking_id: str, session: Session = Depends(current_session)):
    db = SessionLocal()
    try:
        booking = db.get(Booking, booking_id)
        if not booking or (booking.user_id != session.user_id and not session.is_admin):
            raise HTTPException(status_code=404, detail="BOOKING_NOT_FOUND")
        if booking.payment_status != COMPLETED:
            raise HTTPException(status_code=409, detail="PAYMENT_NOT_COMPLETED")
        return {
            "booking_id": booking.id,
            "event_id": booking.event_id,
            "qr_code": booking.qr_code,
            "checked_in_at": str(booking.checked_in_at) if booking.checked_in_at else None,
        }
    finally:
        db.close()


# -------------------------
# M-Pesa
# -------------------------
class PaymentReq(BaseModel):
    bookingId: Optional[str] = None
    phoneNumber: Optional[str] = None

@app.post("/payments/mpesa")
async def start_payment(
    req: PaymentReq,
    session: Session = Depends(current_session),
    redis=Depends(get_redis),
    mpesa: DarajaClient = Depends(get_mpesa),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    fingerprint = (session.user_id, req.bookingId, req.phoneNumber)
    cached = await get_cached_response(redis, "payment", idempotency_key, *fingerprint)
    if cached:
        return cached

    db = SessionLocal()
    try:
        resp = await initiate_payment(db, redis, mpesa, session, req.bookingId, req.phoneNumber)
    finally:
        db.close()
    return await cache_response(redis, "payment", idempotency_key, resp, *fingerprint)

@app.post("/payments/mpesa/callback")
async def mpesa_callback(request: Request):
    try:
        verify_callback_request(request)
    except CallbackAuthError as e:
        ip = request.client.host if request.client else "unknown"
        logger.warning("rejected mpesa callback from %s: %s", ip, e)
        return JSONResponse({"error": str(e)}, status_code=403)

    try:
        payload = await request.json()
    except ValueError:
        logger.exception("unreadable mpesa callback body")
        return JSONResponse({"error": "Invalid JSON body"}, status_code=500)

    logger.info("mpesa callback received: %s", payload)

    # the provider only needs an acknowledgement; booking failures stay internal
    db = SessionLocal()
    try:
        result = parse_callback(payload)
        apply_payment_result(db, result)
    except MalformedCallback as e:
        logger.warning("dropping mpesa callback without booking reference: %s", e)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("booking update failed for checkout_request_id=%s", result.checkout_request_id)
    except Exception as e:
        logger.exception("mpesa callback handler failed")
        return JSONResponse({"error": str(e) or "Callback processing failed"}, status_code=500)
    finally:
        db.close()

    return {"success": True}


# -------------------------
# Check-in
# -------------------------
class CheckInReq(BaseModel):
    code: str
    event_id: str

@app.post("/checkin")
async def check_in(
    req: CheckInReq,
    request: Request,
    session: Session = Depends(current_session),
    redis=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    decision_id = str(uuid.uuid4())
    ip = request.client.host if request.client else "unknown"
    ua = request.headers.get("user-agent", "")

    db = SessionLocal()
    try:
        # an unknown event still gets a structured rejection, but only for scanning roles
        event = db.get(Event, req.event_id)
        if event is None and session.role not in ("organizer", "admin"):
            raise HTTPException(status_code=403, detail="NOT_EVENT_ORGANIZER")
        if event is not None and event.organizer_id != session.user_id and not session.is_admin:
            raise HTTPException(status_code=403, detail="NOT_EVENT_ORGANIZER")

        fingerprint = (session.user_id, req.event_id, req.code.strip())
        cached = await get_cached_response(redis, "checkin", idempotency_key, *fingerprint)
        if cached:
            return cached

        allowed = await token_bucket(
            redis,
            key=f"checkin:{session.user_id}:{ip}",
            capacity=config.CHECKIN_RATE_CAPACITY,
            refill_per_sec=config.CHECKIN_RATE_REFILL_PER_SEC,
        )
        if allowed:
            resp = verify_ticket(db, req.event_id, req.code).as_dict()
        else:
            resp = {
                "valid": False,
                "reason_code": "RATE_LIMITED",
                "message": "Too many scans, slow down",
                "user_name": None,
                "booking_id": None,
            }
    finally:
        db.close()

    resp["decision_id"] = decision_id
    _audit(decision_id, ip, ua, req.event_id, resp["booking_id"], resp["valid"], resp["reason_code"])
    return await cache_response(redis, "checkin", idempotency_key, resp, *fingerprint)


def _audit(decision_id: str, ip: str, ua: str, event_id: str, booking_id: str | None, valid: bool, reason: str):
    db = SessionLocal()
    try:
        db.add(AuditLog(
            decision_id=decision_id,
            ip=ip,
            user_agent=ua,
            event_id=event_id,
            booking_id=booking_id,
            status="ACCEPTED" if valid else "REJECTED",
            reason_code=reason,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit write failed decision_id=%s", decision_id)
    finally:
        db.close()
