"""Ticket code codec.

A ticket code is ``EVENTTRIBE-<bookingId>-<epochMillis>``. Booking ids are
uuid4 strings and contain hyphens themselves, so parsing anchors on the
first hyphen (namespace) and the last hyphen (timestamp) instead of
splitting on every one.
"""
import time
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidCodeFormat

NAMESPACE = "EVENTTRIBE"


@dataclass(frozen=True)
class TicketCode:
    namespace: str
    booking_id: str
    issued_at_ms: Optional[int]


def encode(booking_id: str, issued_at_ms: Optional[int] = None) -> str:
    if not booking_id:
        raise ValueError("booking_id is required")
    if issued_at_ms is None:
        issued_at_ms = int(time.time() * 1000)
    return f"{NAMESPACE}-{booking_id}-{issued_at_ms}"


def parse(code: str) -> TicketCode:
    raw = (code or "").strip()

    namespace, sep, rest = raw.partition("-")
    if not sep or not rest:
        raise InvalidCodeFormat()
    if namespace != NAMESPACE:
        raise InvalidCodeFormat()

    booking_id, issued_at_ms = rest, None
    head, sep, tail = rest.rpartition("-")
    if sep and tail.isdigit():
        booking_id, issued_at_ms = head, int(tail)

    if not booking_id:
        raise InvalidCodeFormat()

    return TicketCode(namespace=namespace, booking_id=booking_id, issued_at_ms=issued_at_ms)
