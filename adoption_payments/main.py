import logging
import os

import stripe
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from adoption_payments import reconciler
from adoption_payments.config import Settings, settings as default_settings
from adoption_payments.database import Base, engine, get_db
from adoption_payments.fio_service import FioService
from adoption_payments.mailer import Mailer
from adoption_payments.result import unwrap
from adoption_payments.routes import get_mailer, get_stripe, router, schedule_follow_up
from adoption_payments.stripe_service import StripeService

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settings: Settings = None, stripe_service: StripeService = None,
               mailer: Mailer = None, fio_service: FioService = None) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(title="Adoption Payment Service")
    app.state.settings = settings
    app.state.stripe = stripe_service or StripeService(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout_seconds,
        max_retries=settings.stripe_max_retries,
    )
    app.state.mailer = mailer or Mailer(settings)
    app.state.fio = fio_service or FioService(
        settings.fio_token,
        base_url=settings.fio_base_url,
        timeout=settings.fio_timeout_seconds,
    )

    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set, Stripe checkout is disabled")
    if not settings.gp_enabled:
        logger.info("GP webpay not configured, gateway routes answer 501")
    if not settings.fio_token:
        logger.info("FIO_TOKEN is not set, bank transfer import is disabled")

    app.include_router(router)

    @app.post("/stripe/webhook")
    async def stripe_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        stripe_signature: str = Header(None),
        db: Session = Depends(get_db),
        stripe_service: StripeService = Depends(get_stripe),
        mailer: Mailer = Depends(get_mailer),
    ):
        payload = await request.body()

        try:
            event = stripe_service.parse_webhook(payload, stripe_signature)
        except ValueError:
            logger.warning("Stripe webhook with unparseable payload rejected")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook signature verification failed")
            raise HTTPException(status_code=400, detail="Invalid signature")

        outcome = reconciler.outcome_from_stripe_event(event)
        if outcome is None:
            logger.debug("Ignoring Stripe event %s", event.get("type"))
            return {"received": True}

        result = unwrap(reconciler.reconcile(db, outcome))
        schedule_follow_up(background_tasks, mailer, result)
        return {"received": True}

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


Base.metadata.create_all(bind=engine)

app = create_app()
