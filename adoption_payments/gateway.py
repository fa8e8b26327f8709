"""
Redirect card gateway (GP webpay style).

Builds signed payment-initiation URLs and reads the signed fields back out of
the gateway's return/notify callbacks.
"""
import secrets
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlencode

from adoption_payments import signing
from adoption_payments.models import PaymentStatus

CURRENCY_CODES = {
    "CZK": "203",
    "EUR": "978",
    "USD": "840",
}

# Fields the gateway includes in the response DIGEST. Anything else on the
# callback (our own query params, DIGEST1, tracking junk) is not signed.
SIGNED_RESPONSE_FIELDS = (
    "OPERATION",
    "ORDERNUMBER",
    "MERORDERNUM",
    "MD",
    "PRCODE",
    "SRCODE",
    "RESULTTEXT",
    "USERPARAM1",
    "ADDINFO",
    "TOKEN",
    "EXPIRY",
    "ACSRES",
    "ACCODE",
    "PANPATTERN",
    "DAYTOCAPTURE",
    "TOKENREGSTATUS",
    "ACRC",
    "RRN",
    "PAR",
    "TRACEID",
)

CARDHOLDER_CANCELED_PRCODE = "50"


@dataclass(frozen=True)
class RedirectIntent:
    merchant_id: str
    order_number: str
    amount_minor: int
    currency: str
    deposit_flag: int
    return_url: str
    description: Optional[str] = None
    merchant_data: Optional[str] = None


def new_order_number() -> str:
    # gateway ORDERNUMBER is numeric, max 15 digits
    return str(secrets.randbelow(9 * 10 ** 14) + 10 ** 14)


def to_minor(amount_major) -> int:
    return int(round(float(amount_major) * 100))


def request_params(intent: RedirectIntent) -> dict:
    if intent.amount_minor <= 0:
        raise ValueError("amount must be positive")
    if not intent.order_number:
        raise ValueError("order number is required")

    currency = CURRENCY_CODES.get(intent.currency.upper(), intent.currency)
    params = {
        "MERCHANTNUMBER": intent.merchant_id,
        "OPERATION": "CREATE_ORDER",
        "ORDERNUMBER": intent.order_number,
        "AMOUNT": str(intent.amount_minor),
        "CURRENCY": currency,
        "DEPOSITFLAG": str(intent.deposit_flag),
        "URL": intent.return_url,
        "DESCRIPTION": intent.description,
        "MD": intent.merchant_data,
    }
    return {key: value for key, value in params.items() if value not in (None, "")}


def build_redirect_url(gateway_base: str, intent: RedirectIntent, private_key_pem,
                       passphrase: Optional[str] = None) -> str:
    params = request_params(intent)
    params["DIGEST"] = signing.sign(signing.canonicalize(params), private_key_pem, passphrase)
    return f"{gateway_base}?{urlencode(params)}"


def signed_response_params(callback: Mapping[str, str]) -> dict:
    return {
        field: callback[field]
        for field in SIGNED_RESPONSE_FIELDS
        if callback.get(field) not in (None, "")
    }


def verify_callback(callback: Mapping[str, str], public_key_pem) -> bool:
    digest = callback.get("DIGEST")
    if not digest or not public_key_pem:
        return False
    canonical = signing.canonicalize(signed_response_params(callback))
    return signing.verify(canonical, digest, public_key_pem)


def callback_outcome(callback: Mapping[str, str]) -> PaymentStatus:
    prcode = callback.get("PRCODE")
    srcode = callback.get("SRCODE")
    if prcode == "0" and srcode == "0":
        return PaymentStatus.PAID
    if prcode == CARDHOLDER_CANCELED_PRCODE:
        return PaymentStatus.CANCELED
    return PaymentStatus.FAILED
