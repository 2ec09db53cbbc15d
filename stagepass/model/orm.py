import uuid

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ..helpers import now_ts


Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


# ----------------------------
# Catalog
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True, default=new_id)
    slug = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    short_description = Column(String, nullable=True)
    venue = Column(String, nullable=True)
    city = Column(String, nullable=True)
    date = Column(Float, nullable=False)
    end_date = Column(Float, nullable=True)
    capacity = Column(Integer, nullable=True)
    tickets_sold = Column(Integer, nullable=False, default=0)

    # upcoming | ongoing | completed | cancelled | soldout
    status = Column(String, nullable=False, default="upcoming")
    # concert | festival | club | private | tour
    category = Column(String, nullable=True)
    featured = Column(Boolean, nullable=False, default=False)
    is_published = Column(Boolean, nullable=False, default=True)
    image_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # kobo
    currency = Column(String, nullable=False, default="NGN")
    quantity = Column(Integer, nullable=False)
    available = Column(Integer, nullable=False)
    max_per_order = Column(Integer, nullable=True)
    sale_start = Column(Float, nullable=True)
    sale_end = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class Artist(Base):
    __tablename__ = "artists"
    id = Column(String, primary_key=True, default=new_id)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    stage_name = Column(String, nullable=False)
    bio = Column(Text, nullable=True)
    genre = Column(JSON, nullable=True)
    image_url = Column(String, nullable=True)
    social_media = Column(JSON, nullable=True)
    featured = Column(Boolean, nullable=False, default=False)

    # contest tally; written only by the vote ledger
    in_contest = Column(Boolean, nullable=False, default=True)
    total_votes = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    rank = Column(Integer, nullable=True)
    display_order = Column(Integer, nullable=True)

    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class EventArtist(Base):
    __tablename__ = "event_artists"
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"),
                      primary_key=True)
    artist_id = Column(String, ForeignKey("artists.id", ondelete="CASCADE"),
                       primary_key=True)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    # user | admin | editor
    role = Column(String, nullable=False, default="user")
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


# ----------------------------
# Bookings
# ----------------------------
class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    email = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="NGN")

    # pending | confirmed | cancelled | expired | unfulfilled
    status = Column(String, nullable=False, default="pending")
    # payment_failed | admin, set when status becomes cancelled
    cancel_reason = Column(String, nullable=True)
    # pending | completed | failed | refunded
    payment_status = Column(String, nullable=False, default="pending")
    payment_reference = Column(String, nullable=False, unique=True)
    paystack_reference = Column(String, nullable=True)
    booking_reference = Column(String, nullable=False, unique=True)

    expires_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)
    paid_at = Column(Float, nullable=True)


class BookingItem(Base):
    __tablename__ = "booking_items"
    id = Column(String, primary_key=True, default=new_id)
    booking_id = Column(String, ForeignKey("bookings.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_ticket = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)


# ----------------------------
# Voting
# ----------------------------
class VotePackage(Base):
    __tablename__ = "vote_packages"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    votes = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)  # kobo
    currency = Column(String, nullable=False, default="NGN")
    discount = Column(Integer, nullable=False, default=0)
    popular = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class VotePurchase(Base):
    __tablename__ = "vote_purchases"
    id = Column(String, primary_key=True, default=new_id)
    reference = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=False, index=True)
    total_votes = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)  # kobo
    currency = Column(String, nullable=False, default="NGN")
    items = Column(JSON, nullable=False)

    # pending | completed | failed
    payment_status = Column(String, nullable=False, default="pending")
    # paystack | mock | free
    payment_method = Column(String, nullable=True)
    paystack_reference = Column(String, nullable=True)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    verified_at = Column(Float, nullable=True)


class VoteTransaction(Base):
    __tablename__ = "vote_transactions"
    id = Column(String, primary_key=True, default=new_id)
    purchase_id = Column(String,
                         ForeignKey("vote_purchases.id", ondelete="CASCADE"),
                         nullable=False)
    artist_id = Column(String, ForeignKey("artists.id"), nullable=False,
                       index=True)
    votes = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    __table_args__ = (
        UniqueConstraint("purchase_id", "artist_id",
                         name="uniq_purchase_artist"),
    )


class VotingSettings(Base):
    __tablename__ = "voting_settings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    voting_start = Column(Float, nullable=False)
    voting_end = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    rules_text = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False, default=now_ts)


# ----------------------------
# Verification + audit
# ----------------------------
class OtpCode(Base):
    __tablename__ = "otp_codes"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True, index=True)
    code_hash = Column(String, nullable=False)
    method = Column(String, nullable=False)  # email | sms
    attempts = Column(Integer, nullable=False, default=0)
    expires_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    received_at = Column(Float, nullable=False, default=now_ts)


# ----------------------------
# Contact
# ----------------------------
class ContactMessage(Base):
    __tablename__ = "contact_messages"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    status = Column(String, nullable=False, default="new")  # new | read
    created_at = Column(Float, nullable=False, default=now_ts, index=True)
