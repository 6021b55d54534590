import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DbSession

from . import config, ticket_code
from .errors import MalformedCallback, PaymentInitiationError
from .idempotency import acquire_payment_lock, release_payment_lock
from .models import Booking, Event, PENDING, COMPLETED, FAILED
from .mpesa import DarajaClient, normalize_phone
from .security import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    booking_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: Optional[int]
    result_desc: str = ""
    receipt: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


# -------------------------
# Initiation
# -------------------------
async def initiate_payment(
    db: DbSession,
    redis,
    mpesa: DarajaClient,
    session: Session,
    booking_id: Optional[str],
    phone_number: Optional[str],
) -> dict:
    if not booking_id or not phone_number:
        raise PaymentInitiationError("Missing bookingId or phoneNumber")

    phone = normalize_phone(phone_number)

    row = db.execute(
        select(Booking, Event).join(Event, Event.id == Booking.event_id).where(Booking.id == booking_id)
    ).first()
    if not row:
        raise PaymentInitiationError("Booking not found")
    booking, event = row
    if booking.user_id != session.user_id and not session.is_admin:
        raise PaymentInitiationError("Booking not found")
    if booking.payment_status != PENDING:
        raise PaymentInitiationError(f"Booking is already {booking.payment_status}")

    if not await acquire_payment_lock(redis, booking_id, config.PAYMENT_LOCK_SECONDS):
        raise PaymentInitiationError("A payment request is already in progress. Please check your phone.")

    try:
        data = await mpesa.stk_push(
            amount=math.ceil(event.price),
            phone=phone,
            account_reference=booking_id,
            description=f"Payment for {event.title}",
        )
    except Exception:
        await release_payment_lock(redis, booking_id)
        raise

    checkout_request_id = data.get("CheckoutRequestID")
    try:
        db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.payment_status == PENDING)
        .values(
            payment_phone=phone,
            checkout_request_id=checkout_request_id,
            payment_initiated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        # the prompt is already on the payer's phone; keep the lock and leave a trail
        db.rollback()
        logger.exception(
            "stk push accepted but booking not updated booking_id=%s checkout_request_id=%s",
            booking_id, checkout_request_id,
        )

    return {
        "success": True,
        "message": "Payment request sent. Please check your phone.",
        "checkoutRequestId": checkout_request_id,
    }


# -------------------------
# Callback
# -------------------------
def coerce_result_code(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return None


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _scalar(value) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool) and value != "":
        return str(value)
    return None


def parse_callback(payload) -> PaymentResult:
    """Pull the fields we use out of a Daraja stkCallback body.

    Any level of unexpected shape reads as absent, so a garbled body ends up
    as a MalformedCallback rather than a crash.
    """
    stk = _dict(_dict(_dict(payload).get("Body")).get("stkCallback"))
    items = _dict(stk.get("CallbackMetadata")).get("Item")
    if not isinstance(items, list):
        items = []
    values = {
        i["Name"]: i.get("Value")
        for i in items
        if isinstance(i, dict) and isinstance(i.get("Name"), str)
    }

    booking_id = _scalar(values.get("AccountReference"))
    receipt = _scalar(values.get("MpesaReceiptNumber"))
    desc = stk.get("ResultDesc")
    return PaymentResult(
        booking_id=booking_id,
        checkout_request_id=_scalar(stk.get("CheckoutRequestID")),
        result_code=coerce_result_code(stk.get("ResultCode")),
        result_desc=desc if isinstance(desc, str) else "",
        receipt=receipt,
    )


def resolve_booking_id(db: DbSession, result: PaymentResult) -> str:
    if result.booking_id:
        return result.booking_id
    if result.checkout_request_id:
        booking_id = db.execute(
            select(Booking.id).where(Booking.checkout_request_id == result.checkout_request_id)
        ).scalar_one_or_none()
        if booking_id:
            return booking_id
    raise MalformedCallback(result.result_desc or "no booking reference in callback")


def apply_payment_result(db: DbSession, result: PaymentResult) -> bool:
    """Resolve a pending booking from a provider result.

    Only a pending booking is touched, so a redelivered or late result for
    an already resolved booking is a no-op and never mints a second ticket
    code. Returns whether the booking changed.
    """
    booking_id = resolve_booking_id(db, result)

    if result.succeeded:
        values = {
            "payment_status": COMPLETED,
            "qr_code": ticket_code.encode(booking_id),
            "paid_at": datetime.now(timezone.utc),
            "mpesa_receipt": result.receipt,
            "result_desc": result.result_desc,
        }
    else:
        values = {"payment_status": FAILED, "result_desc": result.result_desc}

    res = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.payment_status == PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if res.rowcount == 0:
        logger.info("payment result ignored booking_id=%s (unknown or already resolved)", booking_id)
        return False

    if result.succeeded:
        logger.info("payment completed booking_id=%s receipt=%s", booking_id, result.receipt)
    else:
        logger.info("payment failed booking_id=%s desc=%s", booking_id, result.result_desc)
    return True
