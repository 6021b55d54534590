import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

ROLES = ("user", "organizer", "admin")


def _uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String, index=True)
    role: Mapped[str] = mapped_column(String, default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class Event(Base):
    __tablename__ = "events"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    organizer_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class Booking(Base):
    """A user's claim on an event, tracked from payment through check-in.

    qr_code is only ever set together with payment_status=completed, and
    checked_in_at is written at most once (see payments.apply_payment_result
    and checkin.verify_ticket, which both update conditionally).
    """
    __tablename__ = "bookings"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(String, ForeignKey("events.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    payment_status: Mapped[str] = mapped_column(String, default=PENDING, index=True)
    payment_phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    payment_initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    mpesa_receipt: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    qr_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    ip: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String, index=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
