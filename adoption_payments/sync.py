"""
Admin back-fill of the payment ledger from Stripe.

For every Stripe-backed subscription with a ``sub_...`` reference, pages through its
paid invoices and appends the ones we have no ledger row for. Safe to run repeatedly.

Checkouts are created in ``payment`` mode, so the ``cs_...`` reference written at
checkout never resolves to a Stripe subscription; such rows are counted as checked
and skipped without calling Stripe. Only references set to a ``sub_...`` id (for
example by a recurring checkout's webhook) are back-filled.
"""
import logging

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adoption_payments import subscriptions
from adoption_payments.models import PaymentStatus, PledgePayment, Provider, Subscription
from adoption_payments.result import Ok, UnavailableError
from adoption_payments.stripe_service import StripeService, to_dict

logger = logging.getLogger(__name__)


def sync_stripe_payments(db: Session, stripe_service: StripeService):
    if not stripe_service.configured:
        return UnavailableError("Stripe not configured (STRIPE_SECRET_KEY)")

    subs = (
        db.query(Subscription)
        .filter(Subscription.provider == Provider.STRIPE.value, Subscription.provider_ref.isnot(None))
        .all()
    )

    created = 0
    skipped = 0
    errors = []

    for sub in subs:
        stripe_sub_id = sub.provider_ref
        if not stripe_sub_id.startswith("sub_"):
            continue

        pledge = subscriptions.ledger_pledge(db, sub)
        starting_after = None
        has_more = True

        while has_more:
            try:
                page = to_dict(stripe_service.list_paid_invoices(stripe_sub_id, starting_after))
            except stripe.StripeError as e:
                errors.append(f"Subscription {stripe_sub_id}: {e}")
                break

            invoices = page.get("data") or []
            for invoice in invoices:
                exists = (
                    db.query(PledgePayment.id)
                    .filter_by(pledge_id=pledge.id, provider_id=invoice["id"])
                    .first()
                )
                if exists:
                    skipped += 1
                    continue

                db.add(PledgePayment(
                    pledge_id=pledge.id,
                    status=PaymentStatus.PAID.value,
                    amount=invoice.get("amount_paid") or 0,
                    currency=(invoice.get("currency") or "czk").upper(),
                    provider=Provider.STRIPE.value,
                    provider_id=invoice["id"],
                    raw_provider_payload=invoice,
                ))
                try:
                    db.commit()
                    created += 1
                except IntegrityError:
                    db.rollback()
                    skipped += 1

            has_more = bool(page.get("has_more")) and bool(invoices)
            if invoices:
                starting_after = invoices[-1]["id"]

    logger.info("Stripe sync: %s created, %s skipped, %s subscriptions", created, skipped, len(subs))
    summary = {"ok": True, "created": created, "skipped": skipped, "subscriptionsChecked": len(subs)}
    if errors:
        summary["errors"] = errors
    return Ok(summary)
