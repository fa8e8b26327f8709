from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

import requests

from adoption_payments import gateway

FIO_BASE_URL = "https://fioapi.fio.cz/v1/rest"


@dataclass(frozen=True)
class BankTransaction:
    transaction_id: str
    amount_minor: int
    currency: str
    variable_symbol: Optional[str]
    booked_at: datetime
    message: Optional[str]


def _value(raw: dict, column: str):
    cell = raw.get(column)
    return cell.get("value") if cell else None


def _booked_at(value) -> Optional[datetime]:
    # epoch milliseconds, or "YYYY-MM-DD+0100"
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d%z")
    except ValueError:
        return None


def normalize_transaction(raw: dict) -> Optional[BankTransaction]:
    """Flatten one Fio ``columnN`` row; None when id, amount or date is missing."""
    transaction_id = _value(raw, "column22")
    amount = _value(raw, "column1")
    booked_at = _booked_at(_value(raw, "column0"))
    if transaction_id is None or amount is None or booked_at is None:
        return None

    variable_symbol = str(_value(raw, "column5") or "").strip()
    message = _value(raw, "column16") or _value(raw, "column25")
    return BankTransaction(
        transaction_id=str(transaction_id),
        amount_minor=gateway.to_minor(amount),
        currency=(_value(raw, "column14") or "CZK").upper(),
        variable_symbol=variable_symbol or None,
        booked_at=booked_at,
        message=(message or "").strip() or None,
    )


class FioService:
    """Read-only client for the Fio banka account statement API."""

    def __init__(self, token: str, base_url: str = FIO_BASE_URL, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def fetch_period(self, date_from: date, date_to: date) -> list:
        """
        Raw transaction rows booked between the two dates (inclusive).
        Raises requests.RequestException on transport or HTTP errors and
        ValueError when the body is not JSON.
        """
        # the token is part of the path, never log this URL
        url = (
            f"{self.base_url}/periods/{self.token}/"
            f"{date_from.isoformat()}/{date_to.isoformat()}/transactions.json"
        )
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        statement = response.json().get("accountStatement") or {}
        return (statement.get("transactionList") or {}).get("transaction") or []
