"""
Payment initiation for both providers.

Each attempt creates a PENDING pledge plus a PENDING payment intent keyed by the
provider's order reference, which is what the reconciler later matches
callbacks against.
"""
import logging
from urllib.parse import quote

import stripe
from sqlalchemy.orm import Session

from adoption_payments import gateway, reconciler
from adoption_payments.config import Settings
from adoption_payments.models import (
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    Pledge,
    PledgeInterval,
    Provider,
    Subscription,
    SubscriptionStatus,
    new_id,
)
from adoption_payments.result import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    Ok,
    ProviderError,
    UnavailableError,
    ValidationError,
)
from adoption_payments.stripe_service import StripeService, to_dict
from adoption_payments.subscriptions import find_active_animal

logger = logging.getLogger(__name__)



def _check_subscription(db: Session, subscription_id, animal_id: str, amount_minor: int):
    if not subscription_id:
        return Ok(None)
    sub = db.get(Subscription, subscription_id)
    if not sub or sub.animal_id != animal_id:
        return NotFoundError("Subscription not found")
    if sub.status == SubscriptionStatus.CANCELED:
        return ConflictError("Subscription is canceled")
    if amount_minor != sub.monthly_amount * 100:
        return ValidationError(f"Amount must equal the monthly amount of the subscription ({sub.monthly_amount} CZK)")
    return Ok(sub)


def _new_pledge(animal_id, email, name, amount_minor, subscription_id, note=None, pledge_id=None) -> Pledge:
    return Pledge(
        id=pledge_id or new_id(),
        animal_id=animal_id,
        email=email,
        name=name,
        amount=amount_minor,
        interval=(PledgeInterval.MONTHLY if subscription_id else PledgeInterval.ONE_OFF).value,
        method=PaymentMethod.CARD.value,
        status=PaymentStatus.PENDING.value,
        note=note,
        subscription_id=subscription_id,
    )


def create_stripe_checkout(db: Session, stripe_service: StripeService, settings: Settings, *,
                           animal_id: str, amount_czk: float, email=None, name=None,
                           subscription_id=None):
    amount_minor = gateway.to_minor(amount_czk)
    if amount_minor <= 0:
        return ValidationError("amountCZK must be at least 0.01")
    if not find_active_animal(db, animal_id):
        return NotFoundError("Animal not found")
    checked = _check_subscription(db, subscription_id, animal_id, amount_minor)
    if not checked.ok:
        return checked

    # Nothing is written until Stripe answers; the pledge id is fixed up front so it
    # can travel in the session metadata and the idempotency key.
    pledge_id = new_id()
    animal_path = f"{settings.frontend_base_url}/zvirata/{quote(animal_id, safe='')}"
    metadata = {"animal_id": animal_id, "pledge_id": pledge_id}
    if subscription_id:
        metadata["subscription_id"] = subscription_id

    try:
        session = stripe_service.create_checkout_session(
            animal_id=animal_id,
            amount_minor=amount_minor,
            currency="CZK",
            success_url=f"{animal_path}?paid=1&sid={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{animal_path}?canceled=1",
            metadata=metadata,
            email=email,
            name=name,
        )
    except stripe.StripeError as e:
        logger.exception("Stripe checkout session failed: %s", getattr(e, "user_message", None) or e)
        return ProviderError("Failed to create checkout session")

    if not session.url:
        logger.error("Stripe session %s came back without a URL", session.id)
        return ProviderError("Stripe session missing URL")

    db.add(_new_pledge(animal_id, email, name, amount_minor, subscription_id, pledge_id=pledge_id))
    db.flush()
    db.add(PaymentIntent(
        animal_id=animal_id,
        payer_email=email,
        amount=amount_minor,
        currency="CZK",
        provider=Provider.STRIPE.value,
        provider_order_id=session.id,
        status=PaymentStatus.PENDING.value,
        pledge_id=pledge_id,
    ))
    if subscription_id:
        db.query(Subscription).filter(
            Subscription.id == subscription_id, Subscription.provider_ref.is_(None)
        ).update({Subscription.provider_ref: session.id}, synchronize_session=False)
    db.commit()

    logger.info("Stripe checkout %s created for animal %s (%s CZK)", session.id, animal_id, amount_czk)
    return Ok({"url": session.url, "session_id": session.id, "pledge_id": pledge_id})


def confirm_stripe_session(db: Session, stripe_service: StripeService, session_id: str):
    """Browser return after Stripe Checkout; settles without waiting for the webhook."""
    if not session_id:
        return ValidationError("Missing sid")

    try:
        session = to_dict(stripe_service.retrieve_checkout_session(session_id))
    except stripe.StripeError:
        logger.exception("Could not retrieve Stripe session %s", session_id)
        return ProviderError("Failed to confirm session")

    if session.get("payment_status") != "paid":
        return ConflictError("Session not paid yet")

    outcome = reconciler.outcome_from_stripe_session(session, PaymentStatus.PAID)
    return reconciler.reconcile(db, outcome)


def create_gateway_payment(db: Session, settings: Settings, *, animal_id: str, email: str,
                           amount_czk: float, name=None, note=None, subscription_id=None,
                           order_number=None):
    if not settings.gp_enabled:
        return UnavailableError("GP webpay not configured")
    amount_minor = gateway.to_minor(amount_czk)
    if amount_minor <= 0 or amount_czk < settings.gp_min_amount_czk:
        return ValidationError(f"amount must be at least {settings.gp_min_amount_czk} CZK")
    if not find_active_animal(db, animal_id):
        return NotFoundError("Animal not found")
    checked = _check_subscription(db, subscription_id, animal_id, amount_minor)
    if not checked.ok:
        return checked

    order_number = order_number or gateway.new_order_number()
    if db.query(PaymentIntent.id).filter_by(
        provider=Provider.GPWEBPAY.value, provider_order_id=order_number
    ).first():
        return ConflictError("Order number already used")

    pledge = _new_pledge(animal_id, email, name, amount_minor, subscription_id, note)
    db.add(pledge)
    db.flush()

    intent = PaymentIntent(
        animal_id=animal_id,
        payer_email=email,
        amount=amount_minor,
        currency=settings.gp_currency,
        provider=Provider.GPWEBPAY.value,
        provider_order_id=order_number,
        status=PaymentStatus.CREATED.value,
        pledge_id=pledge.id,
    )
    db.add(intent)

    try:
        redirect_url = gateway.build_redirect_url(
            settings.gp_gateway_base,
            gateway.RedirectIntent(
                merchant_id=settings.gp_merchant_number,
                order_number=order_number,
                amount_minor=amount_minor,
                currency=settings.gp_currency,
                deposit_flag=settings.gp_deposit_flag,
                return_url=f"{settings.backend_base_url}/gpwebpay/return",
                description=f"Dar pro Dogpoint ({animal_id})",
                merchant_data=pledge.id,
            ),
            settings.gp_private_key_pem,
            settings.gp_private_key_pass,
        )
    except ValueError:
        db.rollback()
        logger.exception("Could not sign gateway request for order %s", order_number)
        return ProviderError("Failed to create payment")

    intent.status = PaymentStatus.PENDING.value
    db.commit()

    logger.info("Gateway order %s created for animal %s (%s CZK)", order_number, animal_id, amount_czk)
    return Ok({
        "ok": True,
        "pledgeId": pledge.id,
        "orderNumber": order_number,
        "redirectUrl": redirect_url,
    })


def get_by_order(db: Session, order_number: str, user_email, is_staff: bool = False):
    intent = (
        db.query(PaymentIntent)
        .filter_by(provider=Provider.GPWEBPAY.value, provider_order_id=order_number)
        .first()
    )
    if not intent:
        return NotFoundError("Not found")
    if not is_staff and (not user_email or intent.payer_email != user_email):
        return AuthorizationError("Not found")
    return Ok(intent)
