import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session as DbSession

from . import ticket_code
from .errors import (
    CheckInError,
    UnknownOrMismatchedBooking,
    PaymentNotCompleted,
    AlreadyCheckedIn,
)
from .models import Booking, Profile, COMPLETED

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Valid ticket - Check-in successful!"


@dataclass
class CheckInResult:
    valid: bool
    reason_code: str
    message: str
    user_name: Optional[str] = None
    booking_id: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _consume(db: DbSession, event_id: str, code: str) -> CheckInResult:
    parsed = ticket_code.parse(code)

    row = db.execute(
        select(Booking, Profile.username)
        .join(Profile, Profile.id == Booking.user_id, isouter=True)
        .where(Booking.id == parsed.booking_id, Booking.event_id == event_id)
    ).first()
    if not row:
        raise UnknownOrMismatchedBooking(booking_id=parsed.booking_id)
    booking, user_name = row

    if booking.payment_status != COMPLETED:
        raise PaymentNotCompleted(user_name=user_name, booking_id=booking.id)
    if booking.checked_in_at is not None:
        raise AlreadyCheckedIn(user_name=user_name, booking_id=booking.id)

    # two stations scanning the same code: only one update matches
    res = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.checked_in_at.is_(None))
        .values(checked_in_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount != 1:
        raise AlreadyCheckedIn(user_name=user_name, booking_id=booking.id)

    return CheckInResult(
        valid=True, reason_code="OK", message=SUCCESS_MESSAGE, user_name=user_name, booking_id=booking.id
    )


def verify_ticket(db: DbSession, event_id: str, code: str) -> CheckInResult:
    """Redeem a scanned ticket code at an event entrance.

    Never raises for a rejected ticket; the rejection kind is in reason_code.
    """
    try:
        return _consume(db, event_id, code)
    except CheckInError as e:
        db.rollback()
        logger.info("check-in rejected event_id=%s reason=%s", event_id, e.reason_code)
        return CheckInResult(
            valid=False, reason_code=e.reason_code, message=e.message, user_name=e.user_name, booking_id=e.booking_id
        )
