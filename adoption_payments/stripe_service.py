import json

import stripe


class StripeService:
    """Thin wrapper over one StripeClient, built once at startup."""

    def __init__(self, api_key: str, webhook_secret: str = "", timeout: float = 10.0,
                 max_retries: int = 2, client=None):
        self.webhook_secret = webhook_secret
        if client is None and api_key:
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=max_retries,
            )
        self.client = client
        self.configured = client is not None

    def _require_client(self):
        if self.client is None:
            raise stripe.AuthenticationError("STRIPE_SECRET_KEY is not set")
        return self.client

    def create_checkout_session(self, *, animal_id: str, amount_minor: int, currency: str,
                                success_url: str, cancel_url: str, metadata: dict,
                                email=None, name=None):
        params = {
            "mode": "payment",
            "locale": "cs",
            "payment_method_types": ["card"],
            "client_reference_id": animal_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {
                            "name": f"Adopce: {name}" if name else "Adopce zvířete",
                            "description": f"Měsíční dar pro zvíře ({animal_id})",
                        },
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
        }
        if email:
            params["customer_email"] = email

        # metadata.pledge_id is unique per attempt
        return self._require_client().checkout.sessions.create(
            params=params,
            options={"idempotency_key": f"checkout-{metadata['pledge_id']}"},
        )

    def retrieve_checkout_session(self, session_id: str):
        return self._require_client().checkout.sessions.retrieve(
            session_id, params={"expand": ["subscription"]}
        )

    def list_paid_invoices(self, subscription_id: str, starting_after=None):
        params = {"subscription": subscription_id, "status": "paid", "limit": 100}
        if starting_after:
            params["starting_after"] = starting_after
        return self._require_client().invoices.list(params=params)

    def parse_webhook(self, payload: bytes, signature: str) -> dict:
        """
        Verify the Stripe-Signature header over the raw body and return the event
        as a plain dict. Raises ValueError or stripe.SignatureVerificationError.
        """
        if not signature or not self.webhook_secret:
            raise stripe.SignatureVerificationError("Missing signature or webhook secret", signature)
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)


def to_dict(obj) -> dict:
    # StripeObject -> plain dict, leaves dicts (and test doubles) alone
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))
