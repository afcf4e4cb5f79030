from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Numeric,
    JSON,
    CheckConstraint,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

MONEY = Numeric(14, 4)
RATE = Numeric(10, 6)

# reservation statuses
R_PENDING = "pending"
R_CONFIRMED = "confirmed"
R_EXPIRED = "expired"
R_CANCELLED = "cancelled"

# ticket statuses
T_VALID = "valid"
T_USED = "used"
T_CANCELLED = "cancelled"


# ----------------------------
# ORM models
# ----------------------------
class Organizer(Base):
    __tablename__ = "organizers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # NULL = no override; 0 is a real (zero) fee
    platform_fee_percent = Column(RATE, nullable=True)
    # gateway sub-account for split payments
    subaccount_code = Column(String, nullable=True)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    venue_name = Column(String, nullable=True)
    starts_at = Column(Float, nullable=True)
    # customer | organizer
    fee_bearer = Column(String, nullable=False, default="customer")
    platform_fee_percent = Column(RATE, nullable=True)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (
        CheckConstraint(
            "quantity_sold >= 0 AND quantity_sold <= total_quantity",
            name="ck_tier_sold_within_total",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(MONEY, nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    total_quantity = Column(Integer, nullable=False)
    quantity_sold = Column(Integer, nullable=False, default=0)


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_discount_event_code"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    code = Column(String, nullable=False)
    # percentage | fixed
    type = Column(String, nullable=False)
    value = Column(MONEY, nullable=False)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)


class AddOn(Base):
    __tablename__ = "add_ons"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(MONEY, nullable=False)
    # NULL = unlimited
    total_quantity = Column(Integer, nullable=True)
    quantity_sold = Column(Integer, nullable=False, default=0)


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    tier_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    discount_id = Column(String, nullable=True)
    # {add_on_id: quantity}
    addons = Column(JSON, nullable=True)
    user_id = Column(String, nullable=True)
    buyer_name = Column(String, nullable=True)
    buyer_email = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)

    # pending | confirmed | expired | cancelled
    status = Column(String, nullable=False, default=R_PENDING)
    payment_reference = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    confirmed_at = Column(Float, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"
    reference = Column(String, primary_key=True)
    amount = Column(MONEY, nullable=False)  # gross, major units
    currency = Column(String, nullable=False)
    channel = Column(String, nullable=True)
    status = Column(String, nullable=False)
    gateway_paid_at = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)

    # fee breakdown as computed at settlement time; never recomputed
    subtotal = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    processor_fee = Column(MONEY, nullable=False)
    client_fees = Column(MONEY, nullable=False)
    customer_total = Column(MONEY, nullable=False)
    organizer_payout = Column(MONEY, nullable=False)
    applied_platform_rate = Column(RATE, nullable=False)
    applied_processor_rate = Column(RATE, nullable=False)
    fee_bearer = Column(String, nullable=False)
    organizer_id = Column(String, nullable=True)

    reservation_ids = Column(JSON, nullable=False)
    gateway_metadata = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("reservation_id", "seq", name="uq_ticket_slot"),
        Index("ix_tickets_payment_reference", "payment_reference"),
    )
    id = Column(String, primary_key=True)
    reservation_id = Column(String, nullable=False)
    seq = Column(Integer, nullable=False)
    tier_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    qr_payload = Column(String, nullable=False, unique=True)
    order_reference = Column(String, nullable=False, unique=True)
    payment_reference = Column(String, nullable=False)
    # valid | used | cancelled
    status = Column(String, nullable=False, default=T_VALID)
    created_at = Column(Float, nullable=False)


class SystemSetting(Base):
    __tablename__ = "system_settings"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(Float, nullable=False)
