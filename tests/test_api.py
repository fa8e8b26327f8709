import json
from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import stripe
from jose import jwt

from adoption_payments import checkout
from adoption_payments.auth import Identity, verify_token
from adoption_payments.models import Animal, PaymentIntent, Pledge, PledgePayment, Subscription
from adoption_payments.result import ValidationError


def auth_header(user_id="u1", role="USER", email="donor@example.com"):
    token = jwt.encode({"sub": user_id, "role": role, "email": email}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def stripe_event(event_type="checkout.session.completed", **session):
    obj = {
        "id": "sess_abc",
        "client_reference_id": "dog-42",
        "amount_total": 50000,
        "currency": "czk",
        "payment_status": "paid",
        "customer_email": "donor@example.com",
        "metadata": {},
    }
    obj.update(session)
    return {"id": "evt_test", "type": event_type, "data": {"object": obj}}


def post_webhook(client, event):
    return client.post(
        "/stripe/webhook",
        content=json.dumps(event),
        headers={"stripe-signature": "t=1,v1=fake", "content-type": "application/json"},
    )


# --- Stripe checkout ------------------------------------------------------

def test_create_checkout_session_success(client, db, animals, stripe_client):
    response = client.post(
        "/stripe/checkout-session",
        json={"animalId": "dog-42", "amountCZK": 500, "email": "donor@example.com"},
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.test/sess_abc"}

    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 50000
    assert params["client_reference_id"] == "dog-42"
    assert params["success_url"] == "http://frontend.test/zvirata/dog-42?paid=1&sid={CHECKOUT_SESSION_ID}"

    intent = db.query(PaymentIntent).filter_by(provider_order_id="sess_abc").one()
    assert intent.status == "PENDING"
    assert intent.amount == 50000
    assert intent.pledge_id == params["metadata"]["pledge_id"]


def test_create_checkout_session_unknown_animal(client, animals):
    response = client.post("/stripe/checkout-session", json={"animalId": "ghost", "amountCZK": 500})

    assert response.status_code == 404


def test_create_checkout_session_rejects_unknown_fields(client, animals):
    response = client.post(
        "/stripe/checkout-session",
        json={"animalId": "dog-42", "amountCZK": 500, "coupon": "FREE"},
    )

    assert response.status_code == 422


def test_create_checkout_session_rejects_non_positive_amount(client, animals):
    response = client.post("/stripe/checkout-session", json={"animalId": "dog-42", "amountCZK": 0})

    assert response.status_code == 422


def test_create_checkout_session_provider_error_leaves_no_records(client, db, animals, stripe_client):
    stripe_client.checkout.sessions.create.side_effect = stripe.APIConnectionError("Stripe unavailable")

    response = client.post("/stripe/checkout-session", json={"animalId": "dog-42", "amountCZK": 500})

    assert response.status_code == 500
    assert response.json()["detail"] == "Payment provider error"
    assert db.query(PaymentIntent).count() == 0
    assert db.query(Pledge).count() == 0


def test_checkout_writes_nothing_while_stripe_is_called(client, db, animals, stripe_client, session_factory, mocker):
    seen = {}

    def create_session(**kwargs):
        # another request writing meanwhile must not hit a locked database
        other = session_factory()
        try:
            seen["pledges"] = other.query(Pledge).count()
            other.add(Animal(id="bird-3", name="Pip", active=True))
            other.commit()
        finally:
            other.close()
        return mocker.Mock(id="sess_abc", url="https://checkout.stripe.test/sess_abc")

    stripe_client.checkout.sessions.create.side_effect = create_session

    response = client.post("/stripe/checkout-session", json={"animalId": "dog-42", "amountCZK": 500})

    assert response.status_code == 200
    assert seen["pledges"] == 0
    assert db.get(Animal, "bird-3") is not None
    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert db.query(Pledge).one().id == params["metadata"]["pledge_id"]
    assert db.query(PaymentIntent).one().pledge_id == params["metadata"]["pledge_id"]


def test_create_checkout_session_rejects_sub_cent_amounts(client, animals, stripe_client):
    response = client.post("/stripe/checkout-session", json={"animalId": "dog-42", "amountCZK": 0.004})

    assert response.status_code == 422
    stripe_client.checkout.sessions.create.assert_not_called()


def test_checkout_amount_rounding_to_zero_is_a_validation_error(db, animals, stripe_service, stripe_client, settings):
    result = checkout.create_stripe_checkout(db, stripe_service, settings, animal_id="dog-42", amount_czk=0.004)

    assert isinstance(result, ValidationError)
    assert result.status_code == 400
    stripe_client.checkout.sessions.create.assert_not_called()
    assert db.query(Pledge).count() == 0


def test_checkout_for_subscription_must_charge_monthly_amount(client, db, animals, stripe_client):
    sub = Subscription(user_id="u1", animal_id="dog-42", monthly_amount=5000, provider="STRIPE", status="PENDING")
    db.add(sub)
    db.commit()

    response = client.post(
        "/stripe/checkout-session",
        json={"animalId": "dog-42", "amountCZK": 1, "subscriptionId": sub.id},
    )

    assert response.status_code == 400
    stripe_client.checkout.sessions.create.assert_not_called()
    assert db.query(Pledge).count() == 0


# --- Stripe webhook -------------------------------------------------------

def test_stripe_webhook_success(client, db, animals, mailer, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value={})

    response = post_webhook(client, stripe_event())

    assert response.status_code == 200
    assert response.json() == {"received": True}
    intent = db.query(PaymentIntent).filter_by(provider_order_id="sess_abc").one()
    assert intent.status == "PAID"
    mailer.send.assert_called_once()
    assert mailer.send.call_args.args[0] == "donor@example.com"


def test_stripe_webhook_invalid_signature(client, db, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("Invalid", "sig"),
    )

    response = post_webhook(client, stripe_event())

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert db.query(PaymentIntent).count() == 0


def test_stripe_webhook_missing_signature_header(client, db):
    response = client.post("/stripe/webhook", content=json.dumps(stripe_event()))

    assert response.status_code == 400
    assert db.query(PaymentIntent).count() == 0


def test_stripe_webhook_invalid_payload(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json"))

    response = client.post("/stripe/webhook", content="not json", headers={"stripe-signature": "sig"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_stripe_webhook_acknowledges_when_mail_fails(client, db, animals, mailer, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value={})
    mailer.send.side_effect = OSError("smtp down")

    response = post_webhook(client, stripe_event())

    assert response.status_code == 200
    assert db.query(PaymentIntent).one().status == "PAID"


def test_stripe_webhook_ignores_other_events(client, db, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value={})

    response = post_webhook(client, {"id": "evt_x", "type": "invoice.created", "data": {"object": {}}})

    assert response.status_code == 200
    assert db.query(PaymentIntent).count() == 0


# --- Stripe confirm -------------------------------------------------------

def test_confirm_paid_session(client, db, animals, stripe_client):
    stripe_client.checkout.sessions.retrieve.return_value = stripe_event()["data"]["object"]

    response = client.get("/stripe/confirm", params={"sid": "sess_abc"})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "PAID"}
    assert db.query(PledgePayment).count() == 1


def test_confirm_unpaid_session(client, stripe_client):
    stripe_client.checkout.sessions.retrieve.return_value = stripe_event(payment_status="unpaid")["data"]["object"]

    response = client.get("/stripe/confirm", params={"sid": "sess_abc"})

    assert response.status_code == 409


# --- GP webpay ------------------------------------------------------------

def create_gateway_order(client, amount=500):
    return client.post(
        "/gpwebpay/create",
        json={"animalId": "dog-42", "email": "donor@example.com", "amount": amount},
    )


def test_gateway_create_returns_signed_redirect(client, db, animals):
    response = create_gateway_order(client)

    assert response.status_code == 200
    body = response.json()
    query = parse_qs(urlsplit(body["redirectUrl"]).query)
    assert query["ORDERNUMBER"] == [body["orderNumber"]]
    assert query["MD"] == [body["pledgeId"]]
    assert query["URL"] == ["http://api.test/gpwebpay/return"]
    assert "DIGEST" in query

    intent = db.query(PaymentIntent).filter_by(provider_order_id=body["orderNumber"]).one()
    assert intent.status == "PENDING"
    assert intent.provider == "GPWEBPAY"


def test_gateway_create_enforces_minimum(client, animals):
    response = create_gateway_order(client, amount=99)

    assert response.status_code == 400


def test_gateway_create_not_configured(client, fastapi_app, settings, animals):
    fastapi_app.state.settings = replace(settings, gp_public_key_pem=None)

    assert create_gateway_order(client).status_code == 501


def test_gateway_notify_marks_paid_and_is_idempotent(client, db, animals, gateway_callback):
    body = create_gateway_order(client).json()
    callback = gateway_callback(
        OPERATION="CREATE_ORDER", ORDERNUMBER=body["orderNumber"], MD=body["pledgeId"],
        PRCODE="0", SRCODE="0", RESULTTEXT="OK",
    )

    first = client.post("/gpwebpay/notify", data=callback)
    second = client.post("/gpwebpay/notify", data=callback)

    assert first.status_code == 200 and first.text == "OK"
    assert second.status_code == 200
    intent = db.query(PaymentIntent).filter_by(provider_order_id=body["orderNumber"]).one()
    assert intent.status == "PAID"
    assert intent.amount == 50000
    assert db.query(PledgePayment).count() == 1


def test_gateway_notify_rejects_bad_signature(client, db, animals, gateway_callback):
    body = create_gateway_order(client).json()
    callback = gateway_callback(ORDERNUMBER=body["orderNumber"], PRCODE="30", SRCODE="0")
    callback["PRCODE"] = "0"

    response = client.post("/gpwebpay/notify", data=callback)

    assert response.status_code == 400
    assert db.query(PaymentIntent).one().status == "PENDING"
    assert db.query(PledgePayment).count() == 0


def test_gateway_return_redirects_with_outcome(client, db, animals, gateway_callback):
    body = create_gateway_order(client).json()
    callback = gateway_callback(ORDERNUMBER=body["orderNumber"], PRCODE="50", SRCODE="0")

    response = client.get("/gpwebpay/return", params=callback, follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == (
        f"http://frontend.test/platba/vysledek?order={body['orderNumber']}&status=canceled"
    )
    assert db.query(PaymentIntent).one().status == "CANCELED"


def test_gateway_order_lookup_is_scoped_to_payer(client, animals):
    order = create_gateway_order(client).json()["orderNumber"]

    mine = client.get(f"/gpwebpay/order/{order}", headers=auth_header(email="donor@example.com"))
    other = client.get(f"/gpwebpay/order/{order}", headers=auth_header(email="someone@example.com"))
    staff = client.get(f"/gpwebpay/order/{order}", headers=auth_header(role="MODERATOR", email=None))

    assert mine.status_code == 200
    assert mine.json()["orderNumber"] == order
    assert other.status_code == 404
    assert staff.status_code == 200


# --- Subscriptions --------------------------------------------------------

def test_subscription_routes_require_token(client):
    assert client.get("/subscriptions/active").status_code == 401
    assert client.get("/subscriptions/active", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_subscription_lifecycle_over_http(client, animals):
    created = client.post(
        "/subscriptions",
        json={"animalId": "dog-42", "monthlyAmount": 500, "method": "BANK"},
        headers=auth_header(),
    )
    assert created.status_code == 200
    sub_id = created.json()["id"]

    active = client.get("/subscriptions/active", headers=auth_header())
    assert active.json() == [{"subscriptionId": sub_id, "animalId": "dog-42"}]

    adopted = client.get("/subscriptions/adopted/dog-42", headers=auth_header())
    assert adopted.json() == {"adopted": True, "subscriptionId": sub_id}

    foreign = client.patch(f"/subscriptions/{sub_id}/cancel", headers=auth_header(user_id="u2"))
    assert foreign.status_code == 404

    canceled = client.patch(f"/subscriptions/{sub_id}/cancel", headers=auth_header())
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "CANCELED"

    again = client.patch(f"/subscriptions/{sub_id}/cancel", headers=auth_header())
    assert again.status_code == 409

    assert client.get("/subscriptions/active", headers=auth_header()).json() == []
    assert client.get("/subscriptions/mine", headers=auth_header()).json()[0]["status"] == "CANCELED"


def test_subscription_create_with_dependency_override(client, fastapi_app, db, animals):
    fastapi_app.dependency_overrides[verify_token] = lambda: Identity(id="u9")

    response = client.post("/subscriptions", json={"animalId": "cat-7", "monthlyAmount": 300, "method": "CARD"})

    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"
    assert db.query(Subscription).one().user_id == "u9"


def test_admin_sync_requires_admin(client):
    response = client.post("/admin/stripe-sync-payments", headers=auth_header(role="MODERATOR"))

    assert response.status_code == 403


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
