"""
Bank transfer import.

Downloads the account statement for a rolling window, matches incoming transfers
to BANK subscriptions by variable symbol and appends one PAID ledger row per
transaction. Ledger rows use ``fio:<transaction id>`` as provider id, so the
unique key on ``pledge_payments`` makes re-running the same window a no-op.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adoption_payments import subscriptions
from adoption_payments.fio_service import FioService, normalize_transaction
from adoption_payments.models import (
    PaymentStatus,
    PledgePayment,
    Provider,
    Subscription,
    SubscriptionStatus,
)
from adoption_payments.result import Ok, ProviderError, UnavailableError

logger = logging.getLogger(__name__)


def import_bank_transactions(db: Session, fio_service: FioService, days_back: int = 7,
                             today: Optional[date] = None):
    if not fio_service.configured:
        return UnavailableError("Bank import not configured (FIO_TOKEN)")

    date_to = today or datetime.now(timezone.utc).date()
    date_from = date_to - timedelta(days=days_back)

    try:
        rows = fio_service.fetch_period(date_from, date_to)
    except (requests.RequestException, ValueError):
        logger.exception("Bank statement download for %s..%s failed", date_from, date_to)
        return ProviderError("Failed to download bank statement")

    created = 0
    matched = 0
    activated = 0
    duplicates = 0
    no_match = 0
    invalid = 0

    for raw in rows:
        tx = normalize_transaction(raw)
        if tx is None or tx.amount_minor <= 0:
            invalid += 1
            continue

        sub = None
        if tx.variable_symbol:
            sub = (
                db.query(Subscription)
                .filter_by(provider=Provider.BANK.value, variable_symbol=tx.variable_symbol)
                .first()
            )
        if sub is None:
            no_match += 1
            continue
        matched += 1

        pledge = subscriptions.ledger_pledge(db, sub)
        db.add(PledgePayment(
            pledge_id=pledge.id,
            status=PaymentStatus.PAID.value,
            amount=tx.amount_minor,
            currency=tx.currency,
            provider=Provider.BANK.value,
            provider_id=f"fio:{tx.transaction_id}",
            raw_provider_payload=raw,
        ))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            duplicates += 1
            continue
        created += 1

        if sub.status != SubscriptionStatus.CANCELED.value:
            if subscriptions.activate_pending(db, sub.id, tx.amount_minor):
                activated += 1
            db.commit()

    logger.info(
        "Bank import %s..%s: %s fetched, %s created, %s duplicate, %s unmatched, %s invalid",
        date_from, date_to, len(rows), created, duplicates, no_match, invalid,
    )
    return Ok({
        "ok": True,
        "from": date_from.isoformat(),
        "to": date_to.isoformat(),
        "fetched": len(rows),
        "createdPayments": created,
        "matchedSubs": matched,
        "activatedSubs": activated,
        "skippedDuplicate": duplicates,
        "skippedNoMatch": no_match,
        "skippedInvalid": invalid,
    })
