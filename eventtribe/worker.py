"""Reconciliation sweep for bookings whose M-Pesa callback never arrived.

Pending bookings that were pushed to the payer's phone more than
RECONCILE_GRACE_SECONDS ago are queried against Daraja's STK push status
endpoint and resolved through the same path the callback uses, so a late
callback and a sweep can both land without minting two ticket codes.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import select

from . import config
from .db import SessionLocal, engine, Base
from .errors import MalformedCallback, PaymentInitiationError
from .models import Booking, PENDING
from .mpesa import DarajaClient
from .payments import PaymentResult, coerce_result_code, apply_payment_result

logger = logging.getLogger(__name__)


def stale_pending_bookings(db, grace_seconds: int, limit: int = 50):
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
    return db.execute(
        select(Booking.id, Booking.checkout_request_id)
        .where(
            Booking.payment_status == PENDING,
            Booking.checkout_request_id.is_not(None),
            Booking.payment_initiated_at < cutoff,
        )
        .order_by(Booking.payment_initiated_at)
        .limit(limit)
    ).all()


async def reconcile_one(mpesa: DarajaClient, booking_id: str, checkout_request_id: str) -> bool:
    try:
        data = await mpesa.stk_query(checkout_request_id)
    except (httpx.HTTPError, ValueError, PaymentInitiationError) as e:
        logger.warning("stk query failed booking_id=%s: %s", booking_id, e)
        return False

    if "ResultCode" not in data:
        # still waiting on the payer, or the provider is busy
        logger.info("stk query pending booking_id=%s: %s", booking_id, data.get("errorMessage"))
        return False

    result = PaymentResult(
        booking_id=booking_id,
        checkout_request_id=checkout_request_id,
        result_code=coerce_result_code(data.get("ResultCode")),
        result_desc=data.get("ResultDesc") or "",
    )
    db = SessionLocal()
    try:
        return apply_payment_result(db, result)
    except MalformedCallback as e:
        logger.warning("cannot reconcile booking_id=%s: %s", booking_id, e)
        return False
    finally:
        db.close()


async def sweep_once(mpesa: DarajaClient, grace_seconds: int = config.RECONCILE_GRACE_SECONDS) -> int:
    db = SessionLocal()
    try:
        stale = stale_pending_bookings(db, grace_seconds)
    finally:
        db.close()

    resolved = 0
    for booking_id, checkout_request_id in stale:
        if await reconcile_one(mpesa, booking_id, checkout_request_id):
            resolved += 1
    if stale:
        logger.info("reconcile sweep checked=%d resolved=%d", len(stale), resolved)
    return resolved


async def main():
    Base.metadata.create_all(bind=engine)
    mpesa = DarajaClient()
    try:
        while True:
            try:
                await sweep_once(mpesa)
            except Exception:
                logger.exception("reconcile sweep crashed; retrying next interval")
            await asyncio.sleep(config.RECONCILE_INTERVAL_SECONDS)
    finally:
        await mpesa.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    asyncio.run(main())
