import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from adoption_payments.models import (
    Animal,
    PaymentMethod,
    PaymentStatus,
    Pledge,
    PledgeInterval,
    Provider,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from adoption_payments.result import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    Ok,
    ValidationError,
)

logger = logging.getLogger(__name__)

VARIABLE_SYMBOL_PREFIX = "595"


def find_active_animal(db: Session, animal_id: str):
    animal = db.get(Animal, animal_id)
    if not animal or not animal.active:
        return None
    return animal


def new_variable_symbol(db: Session, prefix: str = VARIABLE_SYMBOL_PREFIX) -> Optional[str]:
    """10-digit bank variable symbol, unique across subscriptions."""
    for _ in range(50):
        vs = f"{prefix}{secrets.randbelow(10_000_000):07d}"
        if not db.query(Subscription.id).filter_by(variable_symbol=vs).first():
            return vs
    return None


def create(db: Session, user_id: str, animal_id: str, monthly_amount: int, method: PaymentMethod):
    if monthly_amount <= 0:
        return ValidationError("monthlyAmount must be a positive number")
    if not find_active_animal(db, animal_id):
        return NotFoundError("Animal not found")

    # BANK is confirmed by transfer up front, CARD waits for the provider callback
    variable_symbol = None
    if method == PaymentMethod.BANK:
        provider, status = Provider.BANK, SubscriptionStatus.ACTIVE
        variable_symbol = new_variable_symbol(db)
        if variable_symbol is None:
            return ConflictError("Could not allocate a variable symbol")
    else:
        provider, status = Provider.STRIPE, SubscriptionStatus.PENDING

    sub = Subscription(
        user_id=user_id,
        animal_id=animal_id,
        monthly_amount=monthly_amount,
        provider=provider.value,
        status=status.value,
        variable_symbol=variable_symbol,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)

    logger.info("Subscription %s created for user %s (%s)", sub.id, user_id, sub.status)
    return Ok(sub)


def get_owned(db: Session, subscription_id: str, user_id: str, is_staff: bool = False):
    sub = db.get(Subscription, subscription_id)
    if not sub:
        return NotFoundError("Subscription not found")
    if sub.user_id != user_id and not is_staff:
        return AuthorizationError("Subscription not found")
    return Ok(sub)


def cancel(db: Session, subscription_id: str, requesting_user_id: str, is_staff: bool = False):
    result = get_owned(db, subscription_id, requesting_user_id, is_staff)
    if not result.ok:
        return result

    sub = result.value
    if sub.status == SubscriptionStatus.CANCELED:
        return ConflictError("Subscription is already canceled")

    rows = (
        db.query(Subscription)
        .filter(
            Subscription.id == sub.id,
            Subscription.status != SubscriptionStatus.CANCELED.value,
        )
        .update(
            {Subscription.status: SubscriptionStatus.CANCELED.value, Subscription.canceled_at: utcnow()},
            synchronize_session=False,
        )
    )
    if rows == 0:
        db.rollback()
        return ConflictError("Subscription is already canceled")

    db.commit()
    db.refresh(sub)
    logger.info("Subscription %s canceled by %s", sub.id, requesting_user_id)
    return Ok(sub)


def list_active(db: Session, user_id: str):
    rows = (
        db.query(Subscription.id, Subscription.animal_id)
        .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE.value)
        .order_by(Subscription.created_at)
        .all()
    )
    return Ok([{"subscription_id": row.id, "animal_id": row.animal_id} for row in rows])


def list_for_user(db: Session, user_id: str):
    rows = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    return Ok(rows)


def is_adopted(db: Session, user_id: str, animal_id: str):
    row = (
        db.query(Subscription.id)
        .filter_by(user_id=user_id, animal_id=animal_id, status=SubscriptionStatus.ACTIVE.value)
        .first()
    )
    return Ok({"adopted": row is not None, "subscription_id": row.id if row else None})


def activate_pending(db: Session, subscription_id: str, paid_amount: int,
                     provider_ref: Optional[str] = None) -> bool:
    """
    PENDING -> ACTIVE once a payment covering one month has settled.
    ``paid_amount`` is in minor units. The caller commits.
    """
    values = {Subscription.status: SubscriptionStatus.ACTIVE.value}
    if provider_ref:
        values[Subscription.provider_ref] = provider_ref
    rows = (
        db.query(Subscription)
        .filter(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.PENDING.value,
            Subscription.monthly_amount * 100 <= paid_amount,
        )
        .update(values, synchronize_session=False)
    )
    if rows == 1:
        return True

    sub = db.get(Subscription, subscription_id)
    if sub and sub.status == SubscriptionStatus.PENDING.value:
        logger.warning(
            "Payment of %s does not cover subscription %s (%s CZK/month), leaving it pending",
            paid_amount, subscription_id, sub.monthly_amount,
        )
    return False


def ledger_pledge(db: Session, sub: Subscription) -> Pledge:
    """The pledge that owns a subscription's recurring ledger rows."""
    pledge = (
        db.query(Pledge)
        .filter_by(subscription_id=sub.id)
        .order_by(Pledge.created_at)
        .first()
    )
    if pledge is None:
        method = PaymentMethod.BANK if sub.provider == Provider.BANK.value else PaymentMethod.CARD
        pledge = Pledge(
            animal_id=sub.animal_id,
            amount=sub.monthly_amount * 100,
            interval=PledgeInterval.MONTHLY.value,
            method=method.value,
            status=PaymentStatus.PAID.value,
            subscription_id=sub.id,
        )
        db.add(pledge)
        db.commit()
    return pledge
