import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from adoption_payments import bank_import, checkout, gateway, reconciler, subscriptions, sync
from adoption_payments.auth import Identity, require_admin, verify_token
from adoption_payments.config import Settings
from adoption_payments.database import get_db
from adoption_payments.fio_service import FioService
from adoption_payments.mailer import Mailer, send_payment_confirmation
from adoption_payments.models import PaymentMethod
from adoption_payments.result import SignatureError, unwrap
from adoption_payments.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_stripe(request: Request) -> StripeService:
    return request.app.state.stripe


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_fio(request: Request) -> FioService:
    return request.app.state.fio


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


def _at_most_two_decimals(value: float) -> float:
    if round(value, 2) != value:
        raise ValueError("amount may have at most 2 decimal places")
    return value


class CheckoutRequest(StrictModel):
    animal_id: str = Field(alias="animalId", min_length=1)
    amount_czk: float = Field(alias="amountCZK", gt=0)
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")

    @field_validator("amount_czk")
    @classmethod
    def check_amount(cls, value: float) -> float:
        return _at_most_two_decimals(value)


class GatewayPaymentRequest(StrictModel):
    animal_id: str = Field(alias="animalId", min_length=1)
    email: EmailStr
    amount: float = Field(gt=0)
    name: Optional[str] = None
    note: Optional[str] = None
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")

    @field_validator("amount")
    @classmethod
    def check_amount(cls, value: float) -> float:
        return _at_most_two_decimals(value)


class SubscriptionRequest(StrictModel):
    animal_id: str = Field(alias="animalId", min_length=1)
    monthly_amount: int = Field(alias="monthlyAmount", gt=0)
    method: PaymentMethod


def subscription_out(sub) -> dict:
    return {
        "id": sub.id,
        "animalId": sub.animal_id,
        "monthlyAmount": sub.monthly_amount,
        "provider": sub.provider,
        "variableSymbol": sub.variable_symbol,
        "status": sub.status,
        "canceledAt": sub.canceled_at.isoformat() if sub.canceled_at else None,
    }


def schedule_follow_up(background_tasks: BackgroundTasks, mailer: Mailer, outcome: reconciler.Reconciliation):
    if not outcome.should_notify:
        return
    background_tasks.add_task(
        send_payment_confirmation,
        mailer,
        outcome.payer_email,
        outcome.animal_name or outcome.animal_id or "zvíře",
        outcome.amount // 100,
        outcome.subscription_activated,
    )


# --- Stripe ---------------------------------------------------------------

@router.post("/stripe/checkout-session")
def create_checkout_session(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe),
    settings: Settings = Depends(get_settings),
):
    result = checkout.create_stripe_checkout(
        db,
        stripe_service,
        settings,
        animal_id=request.animal_id,
        amount_czk=request.amount_czk,
        email=request.email,
        name=request.name,
        subscription_id=request.subscription_id,
    )
    return {"url": unwrap(result)["url"]}


@router.get("/stripe/confirm")
def confirm_checkout_session(
    background_tasks: BackgroundTasks,
    sid: str = "",
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe),
    mailer: Mailer = Depends(get_mailer),
):
    outcome = unwrap(checkout.confirm_stripe_session(db, stripe_service, sid))
    schedule_follow_up(background_tasks, mailer, outcome)
    return {"ok": True, "status": outcome.status.value}


# --- GP webpay ------------------------------------------------------------

def _gateway_callback(db: Session, request: Request, settings: Settings, params: dict, source: str):
    if not gateway.verify_callback(params, settings.gp_public_key_pem):
        logger.warning(
            "Rejected gateway %s callback for order %s: bad signature (client %s)",
            source, params.get("ORDERNUMBER"), request.client.host if request.client else "?",
        )
        raise SignatureError("Invalid signature").to_http()
    outcome = reconciler.outcome_from_gateway_callback(params, source)
    return unwrap(reconciler.reconcile(db, outcome))


@router.post("/gpwebpay/create")
def create_gateway_payment(
    request: GatewayPaymentRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = checkout.create_gateway_payment(
        db,
        settings,
        animal_id=request.animal_id,
        email=request.email,
        amount_czk=request.amount,
        name=request.name,
        note=request.note,
        subscription_id=request.subscription_id,
    )
    return unwrap(result)


@router.api_route("/gpwebpay/notify", methods=["GET", "POST"])
async def gateway_notify(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer: Mailer = Depends(get_mailer),
):
    if not settings.gp_enabled:
        return PlainTextResponse("OK")

    if request.method == "POST":
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
    else:
        params = dict(request.query_params)

    outcome = _gateway_callback(db, request, settings, params, "notify")
    schedule_follow_up(background_tasks, mailer, outcome)
    return PlainTextResponse("OK")


@router.get("/gpwebpay/return")
def gateway_return(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer: Mailer = Depends(get_mailer),
):
    if not settings.gp_enabled:
        raise HTTPException(status_code=501, detail="GP webpay not configured")

    params = dict(request.query_params)
    outcome = _gateway_callback(db, request, settings, params, "return")
    schedule_follow_up(background_tasks, mailer, outcome)

    query = urlencode({"order": outcome.provider_order_id, "status": outcome.status.value.lower()})
    return RedirectResponse(f"{settings.frontend_base_url}/platba/vysledek?{query}", status_code=303)


@router.get("/gpwebpay/order/{order}")
def gateway_order(
    order: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(verify_token),
):
    intent = unwrap(checkout.get_by_order(db, order, identity.email, identity.is_staff))
    return {
        "id": intent.id,
        "orderNumber": intent.provider_order_id,
        "animalId": intent.animal_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "status": intent.status,
        "createdAt": intent.created_at.isoformat() if intent.created_at else None,
    }


# --- Subscriptions --------------------------------------------------------

@router.post("/subscriptions")
def create_subscription(
    request: SubscriptionRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(verify_token),
):
    result = subscriptions.create(db, identity.id, request.animal_id, request.monthly_amount, request.method)
    return subscription_out(unwrap(result))


@router.get("/subscriptions/mine")
def my_subscriptions(db: Session = Depends(get_db), identity: Identity = Depends(verify_token)):
    return [subscription_out(sub) for sub in unwrap(subscriptions.list_for_user(db, identity.id))]


@router.get("/subscriptions/active")
def active_subscriptions(db: Session = Depends(get_db), identity: Identity = Depends(verify_token)):
    return [
        {"subscriptionId": row["subscription_id"], "animalId": row["animal_id"]}
        for row in unwrap(subscriptions.list_active(db, identity.id))
    ]


@router.get("/subscriptions/adopted/{animal_id}")
def adopted(animal_id: str, db: Session = Depends(get_db), identity: Identity = Depends(verify_token)):
    row = unwrap(subscriptions.is_adopted(db, identity.id, animal_id))
    return {"adopted": row["adopted"], "subscriptionId": row["subscription_id"]}


@router.patch("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(verify_token),
):
    result = subscriptions.cancel(db, subscription_id, identity.id, identity.is_staff)
    return subscription_out(unwrap(result))


# --- Admin ----------------------------------------------------------------

@router.post("/admin/stripe-sync-payments")
def stripe_sync_payments(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe),
    admin: Identity = Depends(require_admin),
):
    return unwrap(sync.sync_stripe_payments(db, stripe_service))


@router.post("/admin/bank-import")
def import_bank_statement(
    days: Optional[int] = Query(None, ge=1, le=90),
    db: Session = Depends(get_db),
    fio_service: FioService = Depends(get_fio),
    settings: Settings = Depends(get_settings),
    admin: Identity = Depends(require_admin),
):
    result = bank_import.import_bank_transactions(db, fio_service, days_back=days or settings.fio_import_days)
    return unwrap(result)
