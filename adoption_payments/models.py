import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from adoption_payments.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, enum.Enum):
    STRIPE = "STRIPE"
    GPWEBPAY = "GPWEBPAY"
    BANK = "BANK"


class PaymentStatus(str, enum.Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATUSES = (PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED)
OPEN_STATUSES = (PaymentStatus.CREATED, PaymentStatus.PENDING)


class SubscriptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class PaymentMethod(str, enum.Enum):
    CARD = "CARD"
    BANK = "BANK"


class PledgeInterval(str, enum.Enum):
    ONE_OFF = "ONE_OFF"
    MONTHLY = "MONTHLY"


class Animal(Base):
    __tablename__ = "animals"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        UniqueConstraint("provider", "provider_order_id", name="uq_payment_intent_provider_order"),
    )

    id = Column(String, primary_key=True, default=new_id)
    animal_id = Column(String, index=True)
    payer_email = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)          # minor units (haléře)
    currency = Column(String, nullable=False, default="CZK")
    provider = Column(String, nullable=False)
    provider_order_id = Column(String, nullable=False, index=True)  # Stripe session id | GP ORDERNUMBER
    status = Column(String, nullable=False, default=PaymentStatus.CREATED.value)
    pledge_id = Column(String, ForeignKey("pledges.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def major_amount(self) -> int:
        return self.amount // 100


class Pledge(Base):
    __tablename__ = "pledges"

    id = Column(String, primary_key=True, default=new_id)
    animal_id = Column(String, index=True, nullable=True)
    email = Column(String, index=True, nullable=True)
    name = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)          # minor units
    interval = Column(String, nullable=False, default=PledgeInterval.MONTHLY.value)
    method = Column(String, nullable=False, default=PaymentMethod.CARD.value)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    note = Column(String, nullable=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    animal_id = Column(String, index=True, nullable=False)
    monthly_amount = Column(Integer, nullable=False)  # whole CZK
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=True)      # sub_... or cs_...
    variable_symbol = Column(String, unique=True, nullable=True)  # BANK transfers
    status = Column(String, nullable=False, default=SubscriptionStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    canceled_at = Column(DateTime(timezone=True), nullable=True)


class PledgePayment(Base):
    __tablename__ = "pledge_payments"
    __table_args__ = (
        UniqueConstraint("pledge_id", "provider_id", name="uq_pledge_payment_provider_id"),
    )

    id = Column(String, primary_key=True, default=new_id)
    pledge_id = Column(String, ForeignKey("pledges.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)          # minor units
    currency = Column(String, nullable=False, default="CZK")
    provider = Column(String, nullable=False)
    provider_id = Column(String, nullable=False)
    raw_provider_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
