import pytest
from sqlalchemy import func, select, update

from stagepass.config import BOOKING_HOLD_SECONDS
from stagepass.deps import SessionAsync
from stagepass.errors import AmountMismatch, InvalidInput, NotFound, SoldOut
from stagepass.helpers import now_ts
from stagepass.model import bookings
from stagepass.model.orm import Booking, Event, TicketType
from tests.helpers import create_event, get

pytestmark = pytest.mark.asyncio


async def _book(gs, event, lines, email="fan@example.com"):
    return await bookings.create_booking(
        gs, event.id, email, "Ada Fan",
        [{"ticket_type_id": tt.id, "quantity": qty} for tt, qty in lines],
    )


async def _available(tt):
    return (await get(TicketType, tt.id)).available


async def _expire_all(gs):
    return await bookings.release_expired(
        gs, now=now_ts() + BOOKING_HOLD_SECONDS + 1
    )


async def test_create_booking_holds_inventory(gs):
    event, (regular, vip) = await create_event()

    booking = await _book(gs, event, [(regular, 2), (vip, 1)])

    assert booking.status == "pending"
    assert booking.payment_status == "pending"
    assert booking.payment_reference.startswith("BOOK-")
    assert booking.booking_reference.startswith("BK-")
    assert booking.total_amount == 3_000_000
    assert booking.expires_at > now_ts()
    assert await _available(regular) == 98
    assert await _available(vip) == 4


async def test_per_order_limit(gs):
    event, (_, vip) = await create_event()
    with pytest.raises(InvalidInput):
        await _book(gs, event, [(vip, 3)])
    assert await _available(vip) == 5


async def test_sold_out_rolls_back_whole_booking(gs):
    event, (regular, vip) = await create_event()
    await _book(gs, event, [(vip, 2)], email="a@example.com")
    await _book(gs, event, [(vip, 2)], email="b@example.com")

    with pytest.raises(SoldOut):
        await _book(gs, event, [(regular, 3), (vip, 2)],
                    email="c@example.com")

    assert await _available(vip) == 1
    assert await _available(regular) == 100
    async with SessionAsync() as db:
        n = (await db.execute(
            select(func.count()).select_from(Booking)
        )).scalar_one()
    assert n == 2


async def test_closed_event_and_sale_window(gs):
    event, (regular, _) = await create_event(status="cancelled")
    with pytest.raises(InvalidInput):
        await _book(gs, event, [(regular, 1)])

    other, (early, _) = await create_event(title="Later Live")
    async with SessionAsync() as db:
        async with db.begin():
            await db.execute(
                update(TicketType).where(TicketType.id == early.id)
                .values(sale_start=now_ts() + 3600)
            )
    with pytest.raises(InvalidInput):
        await _book(gs, other, [(early, 1)])

    with pytest.raises(NotFound):
        await bookings.create_booking(
            gs, "no-such-event", "x@example.com", "X",
            [{"ticket_type_id": early.id, "quantity": 1}],
        )


async def test_confirm_is_exactly_once(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 2)])

    first = await bookings.confirm_booking(
        gs, booking.payment_reference, amount=booking.total_amount
    )
    again = await bookings.confirm_booking(
        gs, booking.payment_reference, amount=booking.total_amount
    )

    assert first.applied and first.status == "confirmed"
    assert not again.applied and again.status == "confirmed"
    assert (await get(Event, event.id)).tickets_sold == 2
    assert await _available(regular) == 98


async def test_confirm_amount_mismatch(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 1)])
    booking_id, reference = booking.id, booking.payment_reference

    with pytest.raises(AmountMismatch):
        await bookings.confirm_booking(gs, reference, amount=1)

    row = await get(Booking, booking_id)
    assert row.status == "pending"
    assert row.payment_status == "pending"


async def test_fail_releases_hold(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 4)])

    res = await bookings.fail_booking(gs, booking.payment_reference)

    assert res.applied
    assert res.status == "cancelled"
    assert res.payment_status == "failed"
    assert await _available(regular) == 100

    # a second failure notice changes nothing
    again = await bookings.fail_booking(gs, booking.payment_reference)
    assert not again.applied
    assert await _available(regular) == 100


async def test_fail_does_not_touch_confirmed_booking(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 1)])
    await bookings.confirm_booking(gs, booking.payment_reference)

    res = await bookings.fail_booking(gs, booking.payment_reference)

    assert not res.applied
    assert res.status == "confirmed"
    assert await _available(regular) == 99


async def test_expired_hold_is_released(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 3)])

    assert await _expire_all(gs) == 1
    assert await _expire_all(gs) == 0

    assert (await get(Booking, booking.id)).status == "expired"
    assert await _available(regular) == 100


async def test_late_payment_takes_inventory_again(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 3)])
    await _expire_all(gs)

    res = await bookings.confirm_booking(gs, booking.payment_reference)

    assert res.applied and res.status == "confirmed"
    assert await _available(regular) == 97
    assert (await get(Event, event.id)).tickets_sold == 3


async def test_late_payment_after_sell_out_is_unfulfilled(gs):
    event, (only,) = await create_event(tickets=[("GA", 100_000, 2, 2)])
    late = await _book(gs, event, [(only, 2)], email="late@example.com")
    await _expire_all(gs)
    await _book(gs, event, [(only, 2)], email="quick@example.com")

    res = await bookings.confirm_booking(gs, late.payment_reference)

    assert res.applied
    assert res.status == "unfulfilled"
    assert res.payment_status == "completed"
    assert await _available(only) == 0
    assert (await get(Event, event.id)).tickets_sold == 0


async def test_failed_payment_on_expired_booking(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 1)])
    await _expire_all(gs)

    res = await bookings.fail_booking(gs, booking.payment_reference)

    assert res.applied
    assert res.status == "expired"
    assert res.payment_status == "failed"
    assert await _available(regular) == 100


async def test_declined_attempt_then_paid_confirms(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 2)])
    await bookings.fail_booking(gs, booking.payment_reference)
    assert await _available(regular) == 100

    res = await bookings.confirm_booking(gs, booking.payment_reference,
                                         amount=booking.total_amount)
    again = await bookings.confirm_booking(gs, booking.payment_reference)

    assert res.applied and res.status == "confirmed"
    assert not again.applied
    row = await get(Booking, booking.id)
    assert (row.status, row.payment_status) == ("confirmed", "completed")
    assert row.cancel_reason is None
    assert await _available(regular) == 98
    assert (await get(Event, event.id)).tickets_sold == 2


async def test_payment_after_admin_cancel_is_recorded(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 2)])
    await bookings.cancel_booking(gs, booking.id)

    res = await bookings.confirm_booking(gs, booking.payment_reference)

    assert res.applied
    assert (res.status, res.payment_status) == ("cancelled", "completed")
    row = await get(Booking, booking.id)
    assert row.payment_status == "completed"
    assert row.cancel_reason == "admin"
    assert await _available(regular) == 100
    assert (await get(Event, event.id)).tickets_sold == 0


async def test_admin_cancel_after_decline_blocks_reissue(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 1)])
    await bookings.fail_booking(gs, booking.payment_reference)

    assert not (await bookings.cancel_booking(gs, booking.id)).applied
    res = await bookings.confirm_booking(gs, booking.payment_reference)

    assert res.status == "cancelled"
    assert await _available(regular) == 100


async def test_cancel_confirmed_booking(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 2)])
    await bookings.confirm_booking(gs, booking.payment_reference)

    res = await bookings.cancel_booking(gs, booking.id)

    assert res.applied and res.status == "cancelled"
    assert await _available(regular) == 100
    assert (await get(Event, event.id)).tickets_sold == 0

    again = await bookings.cancel_booking(gs, booking.id)
    assert not again.applied
    with pytest.raises(NotFound):
        await bookings.cancel_booking(gs, "missing")


async def test_lookup_by_email_and_code(gs):
    event, (regular, _) = await create_event()
    booking = await _book(gs, event, [(regular, 1)], email="Ada@Example.com")

    async with SessionAsync() as db:
        found = await bookings.lookup_booking(
            db, "ada@example.com", booking.booking_reference.lower()
        )
        data = await bookings.booking_json(db, found)
        with pytest.raises(NotFound):
            await bookings.lookup_booking(db, "someone@example.com",
                                          booking.booking_reference)

    assert data["id"] == booking.id
    assert data["event"]["title"] == "Lagos Live"
    assert data["items"][0]["ticket_type"] == "Regular"
