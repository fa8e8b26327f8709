"""
Payment reconciliation.

Provider callbacks (Stripe webhooks, Stripe confirm redirects, gateway notify and
return calls) are turned into a ``PaymentOutcome`` and applied to the matching
``PaymentIntent`` exactly once:

    CREATED -> PENDING -> PAID | FAILED | CANCELED

Terminal intents are never touched again. Concurrent deliveries for the same
order are serialized by the conditional UPDATE on ``status`` and by the unique
keys on ``payment_intents`` and ``pledge_payments``.
"""
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from adoption_payments import gateway, subscriptions
from adoption_payments.models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Animal,
    PaymentIntent,
    PaymentStatus,
    Pledge,
    PledgeInterval,
    PledgePayment,
    Provider,
)
from adoption_payments.result import Ok, ValidationError

logger = logging.getLogger(__name__)

STRIPE_EVENT_STATUSES = {
    "checkout.session.async_payment_succeeded": PaymentStatus.PAID,
    "checkout.session.async_payment_failed": PaymentStatus.FAILED,
    "checkout.session.expired": PaymentStatus.CANCELED,
}


@dataclass
class PaymentOutcome:
    provider: Provider
    provider_order_id: str
    status: PaymentStatus
    amount: Optional[int] = None            # minor units as reported by the provider
    currency: Optional[str] = None
    animal_id: Optional[str] = None
    payer_email: Optional[str] = None
    pledge_id: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_ref: Optional[str] = None      # e.g. Stripe sub_... for recurring checkouts
    raw: dict = field(default_factory=dict)


@dataclass
class Reconciliation:
    intent_id: str
    status: PaymentStatus
    changed: bool
    provider_order_id: str
    amount: int = 0
    payer_email: Optional[str] = None
    animal_id: Optional[str] = None
    animal_name: Optional[str] = None
    subscription_activated: bool = False

    @property
    def should_notify(self) -> bool:
        return self.changed and self.status == PaymentStatus.PAID and bool(self.payer_email)


def outcome_from_stripe_event(event: Mapping) -> Optional[PaymentOutcome]:
    """Map a Stripe event to an outcome; None for event types we do not act on."""
    event_type = event.get("type")
    session = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        paid = session.get("payment_status") in (None, "paid", "no_payment_required")
        status = PaymentStatus.PAID if paid else PaymentStatus.PENDING
    elif event_type in STRIPE_EVENT_STATUSES:
        status = STRIPE_EVENT_STATUSES[event_type]
    else:
        return None

    return outcome_from_stripe_session(session, status, raw=dict(event))


def outcome_from_stripe_session(session: Mapping, status: PaymentStatus,
                                raw: Optional[dict] = None) -> PaymentOutcome:
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    subscription = session.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")

    currency = session.get("currency")
    return PaymentOutcome(
        provider=Provider.STRIPE,
        provider_order_id=session.get("id") or "",
        status=status,
        amount=session.get("amount_total"),
        currency=currency.upper() if currency else None,
        animal_id=metadata.get("animal_id") or session.get("client_reference_id"),
        payer_email=session.get("customer_email") or details.get("email"),
        pledge_id=metadata.get("pledge_id"),
        subscription_id=metadata.get("subscription_id"),
        provider_ref=subscription,
        raw=raw if raw is not None else dict(session),
    )


def outcome_from_gateway_callback(callback: Mapping[str, str], source: str) -> PaymentOutcome:
    return PaymentOutcome(
        provider=Provider.GPWEBPAY,
        provider_order_id=callback.get("ORDERNUMBER") or "",
        status=gateway.callback_outcome(callback),
        pledge_id=callback.get("MD") or None,
        raw={
            source: dict(callback),
            "result": f"{callback.get('PRCODE', '')}/{callback.get('SRCODE', '')}",
            "resultText": callback.get("RESULTTEXT"),
        },
    )


def _find_intent(db: Session, provider: str, provider_order_id: str) -> Optional[PaymentIntent]:
    return (
        db.query(PaymentIntent)
        .filter_by(provider=provider, provider_order_id=provider_order_id)
        .first()
    )


def get_or_create_intent(db: Session, outcome: PaymentOutcome) -> PaymentIntent:
    provider = outcome.provider.value
    intent = _find_intent(db, provider, outcome.provider_order_id)
    if intent:
        return intent

    logger.warning(
        "No local payment intent for %s order %s, creating it from the callback",
        provider, outcome.provider_order_id,
    )
    intent = PaymentIntent(
        animal_id=outcome.animal_id,
        payer_email=outcome.payer_email,
        amount=outcome.amount or 0,
        currency=outcome.currency or "CZK",
        provider=provider,
        provider_order_id=outcome.provider_order_id,
        status=PaymentStatus.CREATED.value,
    )
    db.add(intent)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent delivery created it first
        db.rollback()
        intent = _find_intent(db, provider, outcome.provider_order_id)
    return intent


def _resolve_pledge(db: Session, intent: PaymentIntent, outcome: PaymentOutcome) -> Pledge:
    for pledge_id in (outcome.pledge_id, intent.pledge_id):
        if pledge_id:
            pledge = db.get(Pledge, pledge_id)
            if pledge:
                return pledge

    email = outcome.payer_email or intent.payer_email
    animal_id = outcome.animal_id or intent.animal_id
    pledge = None
    if email and animal_id:
        pledge = (
            db.query(Pledge)
            .filter_by(email=email, animal_id=animal_id)
            .order_by(Pledge.created_at.desc())
            .first()
        )
    if pledge is None:
        pledge = Pledge(
            animal_id=animal_id,
            email=email,
            amount=intent.amount,
            interval=PledgeInterval.ONE_OFF.value,
            status=PaymentStatus.PENDING.value,
            subscription_id=outcome.subscription_id,
        )
        db.add(pledge)
        db.flush()
    return pledge


def _noop(intent: PaymentIntent) -> Ok:
    return Ok(Reconciliation(
        intent_id=intent.id,
        status=PaymentStatus(intent.status),
        changed=False,
        provider_order_id=intent.provider_order_id,
        amount=intent.amount,
        payer_email=intent.payer_email,
        animal_id=intent.animal_id,
    ))


def reconcile(db: Session, outcome: PaymentOutcome):
    """Apply ``outcome`` to its payment intent. Redeliveries are acknowledged no-ops."""
    if not outcome.provider_order_id:
        return ValidationError("Callback carries no order reference")
    if outcome.status not in TERMINAL_STATUSES and outcome.status != PaymentStatus.PENDING:
        return ValidationError(f"Unsupported payment outcome {outcome.status}")

    try:
        intent = get_or_create_intent(db, outcome)

        if intent.status in TERMINAL_STATUSES:
            logger.info(
                "Order %s already %s, ignoring redelivered %s callback",
                intent.provider_order_id, intent.status, outcome.status.value,
            )
            return _noop(intent)

        amount = intent.amount
        if outcome.amount is not None and outcome.amount != intent.amount:
            if intent.amount:
                logger.warning(
                    "Amount mismatch on order %s: expected %s, provider reported %s; using provider amount",
                    intent.provider_order_id, intent.amount, outcome.amount,
                )
            amount = outcome.amount

        if outcome.status == PaymentStatus.PENDING:
            allowed = (PaymentStatus.CREATED.value,)
        else:
            allowed = tuple(s.value for s in OPEN_STATUSES)

        values = {PaymentIntent.status: outcome.status.value, PaymentIntent.amount: amount}
        if outcome.payer_email and not intent.payer_email:
            values[PaymentIntent.payer_email] = outcome.payer_email
        if outcome.animal_id and not intent.animal_id:
            values[PaymentIntent.animal_id] = outcome.animal_id

        rows = (
            db.query(PaymentIntent)
            .filter(PaymentIntent.id == intent.id, PaymentIntent.status.in_(allowed))
            .update(values, synchronize_session=False)
        )
        if rows == 0:
            db.rollback()
            db.refresh(intent)
            logger.info("Order %s was settled by a concurrent delivery", intent.provider_order_id)
            return _noop(intent)

        activated = False
        if outcome.status in TERMINAL_STATUSES:
            db.refresh(intent)
            pledge = _resolve_pledge(db, intent, outcome)
            intent.pledge_id = pledge.id

            db.add(PledgePayment(
                pledge_id=pledge.id,
                status=outcome.status.value,
                amount=amount,
                currency=outcome.currency or intent.currency,
                provider=intent.provider,
                provider_id=intent.provider_order_id,
                raw_provider_payload=outcome.raw,
            ))

            if outcome.status == PaymentStatus.PAID:
                pledge.status = PaymentStatus.PAID.value
            elif pledge.status == PaymentStatus.PENDING.value:
                pledge.status = outcome.status.value

            subscription_id = pledge.subscription_id or outcome.subscription_id
            if outcome.status == PaymentStatus.PAID and subscription_id:
                activated = subscriptions.activate_pending(db, subscription_id, amount, outcome.provider_ref)

        db.commit()
    except IntegrityError:
        # ledger row for this (pledge, provider id) already written by another delivery
        db.rollback()
        intent = _find_intent(db, outcome.provider.value, outcome.provider_order_id)
        logger.warning("Duplicate ledger entry for order %s, treating as redelivery", outcome.provider_order_id)
        return _noop(intent)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Reconciliation of order %s failed", outcome.provider_order_id)
        raise

    db.refresh(intent)
    animal = db.get(Animal, intent.animal_id) if intent.animal_id else None
    logger.info(
        "Order %s (%s) -> %s, amount %s %s",
        intent.provider_order_id, intent.provider, intent.status, intent.amount, intent.currency,
    )
    if activated:
        logger.info("Subscription activated by order %s", intent.provider_order_id)

    return Ok(Reconciliation(
        intent_id=intent.id,
        status=PaymentStatus(intent.status),
        changed=True,
        provider_order_id=intent.provider_order_id,
        amount=intent.amount,
        payer_email=intent.payer_email,
        animal_id=intent.animal_id,
        animal_name=animal.name if animal else None,
        subscription_activated=activated,
    ))
