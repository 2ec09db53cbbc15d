# model/ledger.py
"""
Vote ledger: turns paid vote purchases into artist tallies.

A purchase is created `pending` with a frozen snapshot of its cart lines.
Payment confirmation arrives at least once (webhook, verify callback, admin
reconcile) and may arrive concurrently. `apply_purchase` makes the
`pending -> completed` transition and every artist credit a single
transaction, keyed on the conditional status UPDATE:

- only the caller whose UPDATE matched the unpaid row credits votes
- a failing credit rolls the transition back, so the purchase stays
  unpaid and can be applied again later
- a `failed` purchase can still complete: a declined card is often
  followed by a successful retry on the same reference
- duplicate and late deliveries see a completed row and do nothing
"""

from __future__ import annotations
import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CURRENCY, DEFAULT_VOTE_PACKAGES, MAX_PACKAGES_PER_LINE
from ..errors import (
    AmountMismatch, Conflict, InvalidInput, NotFound, StagePassError,
    VotingClosed,
)
from ..helpers import generate_reference, now_ts, to_iso
from ..infra.sql import GatedSession
from .orm import (
    Artist, VotePackage, VotePurchase, VoteTransaction, VotingSettings,
)

logger = logging.getLogger(__name__)

# payment states a success may still complete
UNPAID = ("pending", "failed")


class LedgerError(StagePassError):
    status_code = 500
    code = "LEDGER_ERROR"


@dataclass
class ApplyResult:
    reference: str
    applied: bool
    status: str
    total_votes: int = 0
    email: Optional[str] = None


# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------

async def ensure_fixtures(db: AsyncSession) -> None:
    """Seed the default vote packages once."""
    count = (await db.execute(
        select(func.count()).select_from(VotePackage)
    )).scalar_one()
    if count:
        return
    for pkg in DEFAULT_VOTE_PACKAGES:
        db.add(VotePackage(currency=CURRENCY, **pkg))
    logger.info("seeded %d vote packages", len(DEFAULT_VOTE_PACKAGES))


# ------------------------------------------------------------------------------
# Voting window
# ------------------------------------------------------------------------------

async def get_settings(db: AsyncSession) -> Optional[VotingSettings]:
    return (await db.execute(
        select(VotingSettings)
        .where(VotingSettings.is_active.is_(True))
        .order_by(VotingSettings.id.desc())
        .limit(1)
    )).scalars().first()


def is_open(settings: Optional[VotingSettings], now: float) -> bool:
    if settings is None or not settings.is_active:
        return False
    return settings.voting_start <= now <= settings.voting_end


async def _require_open(db: AsyncSession, now: float) -> VotingSettings:
    settings = await get_settings(db)
    if settings is None:
        raise VotingClosed("Voting is not currently active")
    if not is_open(settings, now):
        raise VotingClosed("Voting period has not started or has ended")
    return settings


# ------------------------------------------------------------------------------
# Purchases
# ------------------------------------------------------------------------------

async def create_purchase(
    gs: GatedSession,
    email: str,
    lines: List[Dict[str, Any]],
    metadata: Optional[Dict[str, Any]] = None,
    payment_method: str = "paystack",
) -> VotePurchase:
    if not lines:
        raise InvalidInput("At least one vote package must be selected")

    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            await _require_open(db, now)

            package_ids = {line["package_id"] for line in lines}
            artist_ids = {line["artist_id"] for line in lines}
            packages = {
                p.id: p for p in (await db.execute(
                    select(VotePackage).where(
                        VotePackage.id.in_(package_ids),
                        VotePackage.active.is_(True),
                    )
                )).scalars()
            }
            artists = {
                a.id: a for a in (await db.execute(
                    select(Artist).where(
                        Artist.id.in_(artist_ids),
                        Artist.in_contest.is_(True),
                    )
                )).scalars()
            }

            items = []
            total_votes = 0
            total_amount = 0
            for line in lines:
                pkg = packages.get(line["package_id"])
                artist = artists.get(line["artist_id"])
                if pkg is None or artist is None:
                    raise NotFound("Invalid package or artist ID")
                qty = int(line["quantity"])
                if qty < 1 or qty > MAX_PACKAGES_PER_LINE:
                    raise InvalidInput(
                        f"Quantity must be between 1 and "
                        f"{MAX_PACKAGES_PER_LINE}"
                    )
                item_votes = pkg.votes * qty
                item_amount = pkg.price * qty
                total_votes += item_votes
                total_amount += item_amount
                items.append({
                    "artist_id": artist.id,
                    "artist_name": artist.stage_name,
                    "package_id": pkg.id,
                    "package_name": pkg.name,
                    "votes": pkg.votes,
                    "price": pkg.price,
                    "quantity": qty,
                    "total_votes": item_votes,
                    "total_amount": item_amount,
                })

            purchase = VotePurchase(
                reference=generate_reference("VOTE"),
                email=email.strip().lower(),
                total_votes=total_votes,
                total_amount=total_amount,
                currency=CURRENCY,
                items=items,
                payment_status="pending",
                payment_method=payment_method,
                extra=metadata or None,
                created_at=now,
            )
            db.add(purchase)
    return purchase


async def delete_pending_purchase(gs: GatedSession, reference: str) -> None:
    """Drop a purchase whose payment never got initialized."""
    async with gs.gated():
        async with gs.session.begin():
            row = (await gs.session.execute(
                select(VotePurchase).where(
                    VotePurchase.reference == reference,
                    VotePurchase.payment_status == "pending",
                )
            )).scalars().first()
            if row is not None:
                await gs.session.delete(row)


async def get_purchase(db: AsyncSession,
                       reference: str) -> Optional[VotePurchase]:
    return (await db.execute(
        select(VotePurchase).where(VotePurchase.reference == reference)
        .execution_options(populate_existing=True)
    )).scalars().first()


def _credits_per_artist(
    items: Iterable[Dict[str, Any]]
) -> "OrderedDict[str, Tuple[int, int]]":
    out: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()
    for item in items:
        votes, amount = out.get(item["artist_id"], (0, 0))
        out[item["artist_id"]] = (
            votes + int(item["total_votes"]),
            amount + int(item["total_amount"]),
        )
    return out


async def apply_purchase(
    gs: GatedSession,
    reference: str,
    amount: Optional[int] = None,
    paystack_reference: Optional[str] = None,
    paid_at: Optional[float] = None,
) -> ApplyResult:
    """Exactly-once: complete the purchase and credit its artists.

    `amount` is what the gateway says was paid (kobo). When given it must
    match the purchase total, otherwise nothing is credited.
    """
    now = now_ts()
    db = gs.session
    async with gs.gated():
        async with db.begin():
            cond = [
                VotePurchase.reference == reference,
                VotePurchase.payment_status.in_(UNPAID),
            ]
            if amount is not None:
                cond.append(VotePurchase.total_amount == int(amount))
            values = {"payment_status": "completed",
                      "verified_at": paid_at or now}
            if paystack_reference:
                values["paystack_reference"] = paystack_reference

            row = (await db.execute(
                update(VotePurchase)
                .where(*cond)
                .values(**values)
                .returning(VotePurchase.id, VotePurchase.items,
                           VotePurchase.total_votes, VotePurchase.email)
                .execution_options(synchronize_session=False)
            )).first()

            if row is None:
                cur = (await db.execute(
                    select(VotePurchase.payment_status,
                           VotePurchase.total_amount)
                    .where(VotePurchase.reference == reference)
                )).first()
                if cur is None:
                    raise NotFound(f"Unknown purchase {reference}")
                if cur.payment_status in UNPAID:
                    # only reachable through the amount guard
                    logger.error(
                        "amount mismatch on %s: paid=%s expected=%s",
                        reference, amount, cur.total_amount,
                    )
                    raise AmountMismatch(
                        f"Paid amount {amount} does not match "
                        f"{cur.total_amount} for {reference}"
                    )
                return ApplyResult(reference, False, cur.payment_status)

            purchase_id, items, total_votes, email = row
            credits = _credits_per_artist(items)

            # lock the contest in id order: serializes concurrent
            # applications and keeps rank recalculation consistent
            await db.execute(
                select(Artist.id)
                .where(Artist.in_contest.is_(True))
                .order_by(Artist.id)
                .with_for_update()
            )

            for artist_id, (votes, amt) in credits.items():
                hit = (await db.execute(
                    update(Artist)
                    .where(Artist.id == artist_id)
                    .values(total_votes=Artist.total_votes + votes,
                            total_amount=Artist.total_amount + amt,
                            updated_at=now)
                    .returning(Artist.id)
                    .execution_options(synchronize_session=False)
                )).first()
                if hit is None:
                    raise LedgerError(
                        f"artist {artist_id} missing for {reference}"
                    )

            try:
                await db.execute(insert(VoteTransaction), [
                    {"purchase_id": purchase_id, "artist_id": artist_id,
                     "votes": votes, "amount": amt, "created_at": now}
                    for artist_id, (votes, amt) in credits.items()
                ])
            except IntegrityError as e:
                raise LedgerError(
                    f"duplicate credit for {reference}"
                ) from e

            await recalculate_ranks(db)

    logger.info("applied %s: %d votes over %d artist(s)",
                reference, total_votes, len(credits))
    return ApplyResult(reference, True, "completed", total_votes, email)


async def fail_purchase(gs: GatedSession, reference: str) -> ApplyResult:
    db = gs.session
    async with gs.gated():
        async with db.begin():
            row = (await db.execute(
                update(VotePurchase)
                .where(VotePurchase.reference == reference,
                       VotePurchase.payment_status == "pending")
                .values(payment_status="failed", verified_at=now_ts())
                .returning(VotePurchase.id)
                .execution_options(synchronize_session=False)
            )).first()
            if row is not None:
                return ApplyResult(reference, True, "failed")
            status = (await db.execute(
                select(VotePurchase.payment_status)
                .where(VotePurchase.reference == reference)
            )).scalar_one_or_none()
    if status is None:
        raise NotFound(f"Unknown purchase {reference}")
    # completed purchases keep their votes
    return ApplyResult(reference, False, status)


async def cast_free_vote(gs: GatedSession, identity: str,
                         artist_id: str) -> ApplyResult:
    """One free vote per verified identity, applied through the ledger."""
    now = now_ts()
    digest = hashlib.sha256(identity.strip().lower().encode()).hexdigest()
    reference = f"FREE-{digest[:24]}"
    db = gs.session

    async with gs.gated():
        async with db.begin():
            await _require_open(db, now)
            artist = (await db.execute(
                select(Artist).where(Artist.id == artist_id,
                                     Artist.in_contest.is_(True))
            )).scalars().first()
            if artist is None:
                raise NotFound("Artist not found")
            db.add(VotePurchase(
                reference=reference,
                email=identity.strip().lower(),
                total_votes=1,
                total_amount=0,
                currency=CURRENCY,
                items=[{
                    "artist_id": artist.id,
                    "artist_name": artist.stage_name,
                    "package_id": None,
                    "package_name": "free",
                    "votes": 1, "price": 0, "quantity": 1,
                    "total_votes": 1, "total_amount": 0,
                }],
                payment_status="pending",
                payment_method="free",
                created_at=now,
            ))
            try:
                await db.flush()
            except IntegrityError:
                raise Conflict("You have already voted", code="ALREADY_VOTED")

    result = await apply_purchase(gs, reference, amount=0)
    if not result.applied:
        raise Conflict("You have already voted", code="ALREADY_VOTED")
    return result


# ------------------------------------------------------------------------------
# Ranks + read models
# ------------------------------------------------------------------------------

async def recalculate_ranks(db: AsyncSession) -> None:
    """Competition ranking over contest artists: 1, 2, 2, 4."""
    rows = (await db.execute(
        select(Artist.id, Artist.total_votes)
        .where(Artist.in_contest.is_(True))
        .order_by(Artist.total_votes.desc(), Artist.stage_name)
    )).all()
    updates = []
    rank = 0
    prev = None
    for pos, (artist_id, votes) in enumerate(rows, start=1):
        if votes != prev:
            rank = pos
            prev = votes
        updates.append({"id": artist_id, "rank": rank})
    if updates:
        await db.execute(update(Artist), updates)


def artist_json(a: Artist) -> Dict[str, Any]:
    return {
        "id": a.id,
        "slug": a.slug,
        "name": a.name,
        "stage_name": a.stage_name,
        "bio": a.bio or "",
        "genre": a.genre or [],
        "image_url": a.image_url or "",
        "social_media": a.social_media or {},
        "featured": bool(a.featured),
        "in_contest": bool(a.in_contest),
        "total_votes": int(a.total_votes or 0),
        "rank": a.rank,
        "display_order": a.display_order,
    }


async def contest_artists(db: AsyncSession, sort_by: str = "rank",
                          order: str = "asc") -> List[Artist]:
    col = {
        "rank": Artist.rank,
        "votes": Artist.total_votes,
        "name": Artist.stage_name,
    }.get(sort_by, Artist.rank)
    ordering = col.asc() if order == "asc" else col.desc()
    if col is Artist.rank:
        ordering = ordering.nulls_last()
    return list((await db.execute(
        select(Artist)
        .where(Artist.in_contest.is_(True))
        .order_by(ordering, Artist.stage_name)
    )).scalars())


async def leaderboard(db: AsyncSession) -> Dict[str, Any]:
    artists = await contest_artists(db, "votes", "desc")
    total = sum(int(a.total_votes or 0) for a in artists)
    top = max((int(a.total_votes or 0) for a in artists), default=0)
    entries = []
    for a in artists:
        votes = int(a.total_votes or 0)
        entries.append({
            "artist": artist_json(a),
            "votes": votes,
            "rank": a.rank,
            "percentage_of_total": round(votes * 100.0 / total, 2)
            if total else 0.0,
            "is_leading": votes > 0 and votes == top,
        })
    return {"entries": entries, "total_votes": total,
            "generated_at": to_iso(now_ts())}


async def voting_stats(db: AsyncSession) -> Dict[str, Any]:
    now = now_ts()
    totals = (await db.execute(
        select(func.coalesce(func.sum(Artist.total_votes), 0),
               func.coalesce(func.sum(Artist.total_amount), 0),
               func.count(Artist.id))
        .where(Artist.in_contest.is_(True))
    )).one()
    unique_voters = (await db.execute(
        select(func.count(func.distinct(VotePurchase.email)))
        .where(VotePurchase.payment_status == "completed")
    )).scalar_one()
    top = (await db.execute(
        select(Artist)
        .where(Artist.in_contest.is_(True))
        .order_by(Artist.total_votes.desc(), Artist.stage_name)
        .limit(1)
    )).scalars().first()
    settings = await get_settings(db)

    ends = settings.voting_end if settings else None
    remaining_days = 0
    if ends and ends > now:
        remaining_days = int((ends - now) // 86400) + 1

    return {
        "total_votes": int(totals[0]),
        "total_revenue": int(totals[1]),
        "artist_count": int(totals[2]),
        "unique_voters": int(unique_voters),
        "voting_starts_at": to_iso(settings.voting_start) if settings else None,
        "voting_ends_at": to_iso(ends),
        "is_voting_active": is_open(settings, now),
        "time_remaining": f"{remaining_days} days",
        "top_artist": {
            "id": top.id, "name": top.stage_name,
            "votes": int(top.total_votes or 0),
        } if top else {"id": "", "name": "No artists yet", "votes": 0},
    }


async def vote_analytics(db: AsyncSession, recent: int = 20) -> Dict[str, Any]:
    by_status = {
        status: {"count": int(n), "votes": int(v or 0),
                 "amount": int(a or 0)}
        for status, n, v, a in (await db.execute(
            select(VotePurchase.payment_status, func.count(),
                   func.sum(VotePurchase.total_votes),
                   func.sum(VotePurchase.total_amount))
            .group_by(VotePurchase.payment_status)
        )).all()
    }
    per_artist = [
        {"artist_id": artist_id, "stage_name": name, "votes": int(v or 0),
         "amount": int(a or 0), "transactions": int(n)}
        for artist_id, name, v, a, n in (await db.execute(
            select(Artist.id, Artist.stage_name,
                   func.sum(VoteTransaction.votes),
                   func.sum(VoteTransaction.amount),
                   func.count(VoteTransaction.id))
            .join(VoteTransaction, VoteTransaction.artist_id == Artist.id)
            .group_by(Artist.id, Artist.stage_name)
            .order_by(func.sum(VoteTransaction.votes).desc())
        )).all()
    ]
    recent_rows = (await db.execute(
        select(VotePurchase)
        .order_by(VotePurchase.created_at.desc())
        .limit(recent)
    )).scalars()
    return {
        "by_status": by_status,
        "per_artist": per_artist,
        "recent": [purchase_json(p) for p in recent_rows],
    }


def purchase_json(p: VotePurchase) -> Dict[str, Any]:
    return {
        "reference": p.reference,
        "email": p.email,
        "total_votes": p.total_votes,
        "total_amount": p.total_amount,
        "currency": p.currency,
        "payment_status": p.payment_status,
        "payment_method": p.payment_method,
        "items": p.items,
        "created_at": to_iso(p.created_at),
        "verified_at": to_iso(p.verified_at),
    }
