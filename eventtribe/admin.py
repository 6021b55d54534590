from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

from .db import SessionLocal
from .models import AuditLog, Booking, Event, Profile, ROLES
from .security import Session, current_session

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_role(session: Session, *roles: str):
    if session.role not in roles:
        raise HTTPException(status_code=403, detail="FORBIDDEN")


# -------------------------
# Users
# -------------------------
class ProfileReq(BaseModel):
    username: str
    role: str = "user"

@router.put("/users/{user_id}")
def upsert_profile(user_id: str, req: ProfileReq, session: Session = Depends(current_session)):
    _require_role(session, "admin")
    if req.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"role must be one of {', '.join(ROLES)}")

    db = SessionLocal()
    try:
        profile = db.get(Profile, user_id)
        if profile is None:
            profile = Profile(id=user_id, username=req.username, role=req.role)
            db.add(profile)
        else:
            profile.username = req.username
            profile.role = req.role
        db.commit()
        return {"user_id": profile.id, "username": profile.username, "role": profile.role}
    finally:
        db.close()


# -------------------------
# Events
# -------------------------
class CreateEventReq(BaseModel):
    title: str
    price: Decimal

@router.post("/events", status_code=201)
def create_event(req: CreateEventReq, session: Session = Depends(current_session)):
    _require_role(session, "organizer", "admin")
    if req.price < 0:
        raise HTTPException(status_code=400, detail="price must not be negative")

    db = SessionLocal()
    try:
        event = Event(title=req.title, price=req.price, organizer_id=session.user_id)
        db.add(event)
        db.commit()
        return {"event_id": event.id, "title": event.title, "price": str(event.price), "organizer_id": event.organizer_id}
    finally:
        db.close()

@router.get("/events")
def list_events(session: Session = Depends(current_session)):
    db = SessionLocal()
    try:
        rows = db.execute(select(Event).order_by(Event.created_at.desc())).scalars().all()
        return [
            {
                "event_id": e.id,
                "title": e.title,
                "price": str(e.price),
                "organizer_id": e.organizer_id,
                "created_at": str(e.created_at),
            }
            for e in rows
        ]
    finally:
        db.close()

@router.get("/events/{event_id}/attendees")
def list_attendees(event_id: str, session: Session = Depends(current_session)):
    db = SessionLocal()
    try:
        event = db.get(Event, event_id)
        if not event:
            raise HTTPException(status_code=404, detail="EVENT_NOT_FOUND")
        if event.organizer_id != session.user_id and not session.is_admin:
            raise HTTPException(status_code=403, detail="NOT_EVENT_ORGANIZER")

        rows = db.execute(
            select(Booking, Profile.username)
            .join(Profile, Profile.id == Booking.user_id, isouter=True)
            .where(Booking.event_id == event_id)
            .order_by(Booking.created_at.desc())
        ).all()
        return [
            {
                "booking_id": b.id,
                "user_id": b.user_id,
                "username": username,
                "payment_status": b.payment_status,
                "checked_in_at": str(b.checked_in_at) if b.checked_in_at else None,
            }
            for b, username in rows
        ]
    finally:
        db.close()


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, event_id: Optional[str] = None, session: Session = Depends(current_session)):
    _require_role(session, "organizer", "admin")
    db = SessionLocal()
    try:
        q = db.query(AuditLog, Event).join(Event, Event.id == AuditLog.event_id, isouter=True)
        if event_id:
            q = q.filter(AuditLog.event_id == event_id)
        if not session.is_admin:
            q = q.filter(Event.organizer_id == session.user_id)
        rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()

        return [
            {
                "created_at": str(log.created_at),
                "booking_id": log.booking_id,
                "event_id": log.event_id,
                "event_title": ev.title if ev else None,
                "status": log.status,
                "reason_code": log.reason_code,
                "decision_id": log.decision_id,
            }
            for log, ev in rows
        ]
    finally:
        db.close()
