# model/bookings.py
"""
Ticket bookings with inventory holds.

Inventory is taken when the booking is created (conditional decrement on
`ticket_types.available`), held for BOOKING_HOLD_SECONDS and either
confirmed by payment, released on failure, or released by expiry.

A payment that lands after the hold is gone (expired, or cancelled by a
failed card attempt) tries to take the inventory again. If that is no
longer possible the booking ends up `unfulfilled`: money was taken, no
tickets were issued, an operator has to refund. A booking an operator
cancelled stays cancelled and only records the payment.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import BOOKING_HOLD_SECONDS, CURRENCY, MAX_TICKETS_PER_TYPE
from ..errors import AmountMismatch, InvalidInput, NotFound, SoldOut
from ..helpers import booking_code, generate_reference, now_ts, to_iso
from ..infra.sql import GatedSession
from .orm import Booking, BookingItem, Event, TicketType

logger = logging.getLogger(__name__)

CLOSED_EVENT_STATUSES = ("cancelled", "completed")
UNPAID = ("pending", "failed")

# cancel_reason values
FAILED = "payment_failed"
ADMIN = "admin"


@dataclass
class BookingResult:
    reference: str
    applied: bool
    status: str
    payment_status: str
    booking_id: Optional[str] = None


async def _take(db: AsyncSession, ticket_type_id: str, qty: int) -> bool:
    row = (await db.execute(
        update(TicketType)
        .where(TicketType.id == ticket_type_id,
               TicketType.available >= qty)
        .values(available=TicketType.available - qty)
        .returning(TicketType.id)
        .execution_options(synchronize_session=False)
    )).first()
    return row is not None


async def _items(db: AsyncSession, booking_id: str) -> List[BookingItem]:
    return list((await db.execute(
        select(BookingItem).where(BookingItem.booking_id == booking_id)
    )).scalars())


async def _release(db: AsyncSession, booking_id: str) -> None:
    for item in await _items(db, booking_id):
        await db.execute(
            update(TicketType)
            .where(TicketType.id == item.ticket_type_id)
            .values(available=TicketType.available + item.quantity)
            .execution_options(synchronize_session=False)
        )


async def _retake(db: AsyncSession, booking_id: str) -> bool:
    """Hold a released booking's tickets again, all or nothing."""
    try:
        async with db.begin_nested():
            for item in await _items(db, booking_id):
                if not await _take(db, item.ticket_type_id, item.quantity):
                    raise SoldOut(item.ticket_type_id)
    except SoldOut:
        return False
    return True


async def _add_sold(db: AsyncSession, event_id: str, booking_id: str,
                    sign: int = 1) -> None:
    qty = sum(i.quantity for i in await _items(db, booking_id))
    await db.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(tickets_sold=Event.tickets_sold + sign * qty,
                updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )


# ------------------------------------------------------------------------------
# Create
# ------------------------------------------------------------------------------

async def create_booking(
    gs: GatedSession,
    event_id: str,
    email: str,
    full_name: str,
    items: List[Dict[str, Any]],
    phone: Optional[str] = None,
) -> Booking:
    if not items:
        raise InvalidInput("At least one ticket must be selected")
    if len({i["ticket_type_id"] for i in items}) != len(items):
        raise InvalidInput("Each ticket type may appear only once")

    # stale holds would make the event look sold out
    await release_expired(gs)

    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            event = await db.get(Event, event_id)
            if event is None or not event.is_published:
                raise NotFound("Event not found")
            if event.status in CLOSED_EVENT_STATUSES:
                raise InvalidInput(f"Event is {event.status}")

            types = {
                t.id: t for t in (await db.execute(
                    select(TicketType).where(
                        TicketType.event_id == event_id,
                        TicketType.id.in_([i["ticket_type_id"]
                                           for i in items]),
                    )
                )).scalars()
            }

            booking = Booking(
                event_id=event_id,
                email=email.strip().lower(),
                full_name=full_name.strip(),
                phone=phone,
                total_amount=0,
                currency=CURRENCY,
                status="pending",
                payment_status="pending",
                payment_reference=generate_reference("BOOK"),
                booking_reference=booking_code(),
                expires_at=now + BOOKING_HOLD_SECONDS,
                created_at=now,
                updated_at=now,
            )
            db.add(booking)
            await db.flush()

            total = 0
            for item in items:
                tt = types.get(item["ticket_type_id"])
                if tt is None:
                    raise NotFound(
                        f"Ticket type {item['ticket_type_id']} not found"
                    )
                qty = int(item["quantity"])
                limit = min(tt.max_per_order or MAX_TICKETS_PER_TYPE,
                            MAX_TICKETS_PER_TYPE)
                if qty < 1 or qty > limit:
                    raise InvalidInput(
                        f"Maximum {limit} tickets per order for {tt.name}"
                    )
                if tt.sale_start and now < tt.sale_start:
                    raise InvalidInput(f"Sales for {tt.name} have not started")
                if tt.sale_end and now > tt.sale_end:
                    raise InvalidInput(f"Sales for {tt.name} have ended")

                # the hold; a failure rolls back earlier holds with the tx
                if not await _take(db, tt.id, qty):
                    raise SoldOut(
                        f"Insufficient tickets for {tt.name}. "
                        f"Only {tt.available} left."
                    )
                db.add(BookingItem(
                    booking_id=booking.id,
                    ticket_type_id=tt.id,
                    quantity=qty,
                    price_per_ticket=tt.price,
                    total_price=tt.price * qty,
                ))
                total += tt.price * qty

            booking.total_amount = total
    logger.info("booking %s holds %d item(s) until %s",
                booking.payment_reference, len(items),
                to_iso(booking.expires_at))
    return booking


# ------------------------------------------------------------------------------
# Settle
# ------------------------------------------------------------------------------

async def confirm_booking(
    gs: GatedSession,
    reference: str,
    amount: Optional[int] = None,
    paystack_reference: Optional[str] = None,
    paid_at: Optional[float] = None,
) -> BookingResult:
    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            cond = [
                Booking.payment_reference == reference,
                Booking.payment_status.in_(UNPAID),
            ]
            if amount is not None:
                cond.append(Booking.total_amount == int(amount))
            values = {"payment_status": "completed",
                      "paid_at": paid_at or now, "updated_at": now}
            if paystack_reference:
                values["paystack_reference"] = paystack_reference

            # RETURNING sees status untouched, i.e. the previous one
            row = (await db.execute(
                update(Booking)
                .where(*cond)
                .values(**values)
                .returning(Booking.id, Booking.event_id, Booking.status,
                           Booking.cancel_reason)
                .execution_options(synchronize_session=False)
            )).first()

            if row is None:
                cur = (await db.execute(
                    select(Booking.id, Booking.status, Booking.payment_status,
                           Booking.total_amount)
                    .where(Booking.payment_reference == reference)
                )).first()
                if cur is None:
                    raise NotFound(f"Unknown booking {reference}")
                if cur.payment_status in UNPAID:
                    logger.error(
                        "amount mismatch on %s: paid=%s expected=%s",
                        reference, amount, cur.total_amount,
                    )
                    raise AmountMismatch(
                        f"Paid amount {amount} does not match "
                        f"{cur.total_amount} for {reference}"
                    )
                return BookingResult(reference, False, cur.status,
                                     cur.payment_status, cur.id)

            booking_id, event_id, prev_status, cancel_reason = row
            if prev_status == "pending":
                status = "confirmed"
            elif prev_status == "cancelled" and cancel_reason != FAILED:
                # an operator cancelled it: record the money, issue nothing
                status = "cancelled"
            elif await _retake(db, booking_id):
                status = "confirmed"
            else:
                status = "unfulfilled"

            await db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(status=status,
                        cancel_reason=(cancel_reason
                                       if status == "cancelled" else None))
                .execution_options(synchronize_session=False)
            )
            if status == "confirmed":
                await _add_sold(db, event_id, booking_id)

    if status == "unfulfilled":
        logger.warning("booking %s paid after its hold was gone and sold out",
                       reference)
    elif status == "cancelled":
        logger.warning("booking %s paid after cancellation, refund due",
                       reference)
    else:
        logger.info("booking %s confirmed", reference)
    return BookingResult(reference, True, status, "completed", booking_id)


async def fail_booking(gs: GatedSession, reference: str) -> BookingResult:
    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            row = (await db.execute(
                update(Booking)
                .where(Booking.payment_reference == reference,
                       Booking.payment_status == "pending",
                       Booking.status == "pending")
                .values(payment_status="failed", status="cancelled",
                        cancel_reason=FAILED, updated_at=now)
                .returning(Booking.id)
                .execution_options(synchronize_session=False)
            )).first()
            if row is not None:
                await _release(db, row[0])
                return BookingResult(reference, True, "cancelled", "failed",
                                     row[0])

            # expired bookings released their hold already
            row = (await db.execute(
                update(Booking)
                .where(Booking.payment_reference == reference,
                       Booking.payment_status == "pending")
                .values(payment_status="failed", updated_at=now)
                .returning(Booking.id, Booking.status)
                .execution_options(synchronize_session=False)
            )).first()
            if row is not None:
                return BookingResult(reference, True, row[1], "failed",
                                     row[0])

            cur = (await db.execute(
                select(Booking.id, Booking.status, Booking.payment_status)
                .where(Booking.payment_reference == reference)
            )).first()
    if cur is None:
        raise NotFound(f"Unknown booking {reference}")
    return BookingResult(reference, False, cur.status, cur.payment_status,
                         cur.id)


async def release_expired(gs: GatedSession,
                          now: Optional[float] = None) -> int:
    """Expire unpaid holds past their deadline. Returns how many."""
    now = now or now_ts()
    db = gs.session
    released = 0
    async with gs.gated():
        async with db.begin():
            ids = list((await db.execute(
                select(Booking.id).where(
                    Booking.status == "pending",
                    Booking.payment_status == "pending",
                    Booking.expires_at < now,
                )
            )).scalars())
            for booking_id in ids:
                hit = (await db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id,
                           Booking.status == "pending",
                           Booking.payment_status == "pending")
                    .values(status="expired", updated_at=now)
                    .returning(Booking.id)
                    .execution_options(synchronize_session=False)
                )).first()
                if hit is not None:
                    await _release(db, booking_id)
                    released += 1
    if released:
        logger.info("expired %d booking hold(s)", released)
    return released


async def cancel_booking(gs: GatedSession, booking_id: str) -> BookingResult:
    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            # settlement writes through Core UPDATEs; reload the row
            booking = await db.get(Booking, booking_id,
                                   populate_existing=True,
                                   with_for_update=True)
            if booking is None:
                raise NotFound("Booking not found")
            prev = booking.status
            if prev == "cancelled":
                # a late payment must not turn it back into tickets
                booking.cancel_reason = ADMIN
                return BookingResult(booking.payment_reference, False, prev,
                                     booking.payment_status, booking.id)
            hit = (await db.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status == prev)
                .values(status="cancelled", cancel_reason=ADMIN,
                        updated_at=now)
                .returning(Booking.id)
                .execution_options(synchronize_session=False)
            )).first()
            if hit is None:
                return BookingResult(booking.payment_reference, False, prev,
                                     booking.payment_status, booking.id)
            # expired and unfulfilled bookings hold nothing
            if prev in ("pending", "confirmed"):
                await _release(db, booking_id)
            if prev == "confirmed":
                await _add_sold(db, booking.event_id, booking_id, sign=-1)
    return BookingResult(booking.payment_reference, True, "cancelled",
                         booking.payment_status, booking_id)


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------

async def booking_json(db: AsyncSession, b: Booking) -> Dict[str, Any]:
    rows = (await db.execute(
        select(BookingItem, TicketType.name)
        .join(TicketType, TicketType.id == BookingItem.ticket_type_id)
        .where(BookingItem.booking_id == b.id)
    )).all()
    event = await db.get(Event, b.event_id)
    return {
        "id": b.id,
        "booking_reference": b.booking_reference,
        "payment_reference": b.payment_reference,
        "email": b.email,
        "full_name": b.full_name,
        "phone": b.phone,
        "total_amount": b.total_amount,
        "currency": b.currency,
        "status": b.status,
        "payment_status": b.payment_status,
        "cancel_reason": b.cancel_reason,
        "expires_at": to_iso(b.expires_at),
        "created_at": to_iso(b.created_at),
        "paid_at": to_iso(b.paid_at),
        "event": {
            "id": event.id, "slug": event.slug, "title": event.title,
            "date": to_iso(event.date), "venue": event.venue,
            "city": event.city,
        } if event else None,
        "items": [
            {"ticket_type_id": item.ticket_type_id, "ticket_type": name,
             "quantity": item.quantity,
             "price_per_ticket": item.price_per_ticket,
             "total_price": item.total_price}
            for item, name in rows
        ],
    }


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def get_booking_by_reference(db: AsyncSession,
                                   reference: str) -> Optional[Booking]:
    return (await db.execute(
        select(Booking).where(Booking.payment_reference == reference)
        .execution_options(populate_existing=True)
    )).scalars().first()


async def lookup_booking(db: AsyncSession, email: str,
                         booking_reference: str) -> Booking:
    booking = (await db.execute(
        select(Booking).where(
            func.lower(Booking.email) == email.strip().lower(),
            Booking.booking_reference == booking_reference.strip().upper(),
        )
    )).scalars().first()
    if booking is None:
        raise NotFound("Booking not found")
    return booking


async def list_bookings(db: AsyncSession, status: Optional[str] = None,
                        limit: int = 100) -> List[Booking]:
    q = select(Booking).order_by(Booking.created_at.desc()).limit(limit)
    if status:
        q = q.where(Booking.status == status)
    return list((await db.execute(q)).scalars())
