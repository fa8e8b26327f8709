import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _pem(value: Optional[str]) -> Optional[str]:
    # PEMs stored in a single-line env var use literal "\n"
    if not value:
        return None
    return value.replace("\\n", "\n")


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_timeout_seconds: float = 10.0
    stripe_max_retries: int = 2
    frontend_base_url: str = "http://localhost:5173"
    backend_base_url: str = "http://localhost:8000"
    gp_merchant_number: Optional[str] = None
    gp_gateway_base: Optional[str] = None
    gp_private_key_pem: Optional[str] = None
    gp_private_key_pass: Optional[str] = None
    gp_public_key_pem: Optional[str] = None
    gp_currency: str = "CZK"
    gp_deposit_flag: int = 1
    gp_min_amount_czk: int = 100
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    mail_from: str = ""
    mail_from_name: str = "Dogpoint"
    fio_token: str = ""
    fio_base_url: str = "https://fioapi.fio.cz/v1/rest"
    fio_timeout_seconds: float = 30.0
    fio_import_days: int = 7

    @property
    def gp_enabled(self) -> bool:
        return bool(
            self.gp_merchant_number
            and self.gp_gateway_base
            and self.gp_private_key_pem
            and self.gp_public_key_pem
        )

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            jwt_secret=os.getenv("JWT_SECRET", ""),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_timeout_seconds=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
            stripe_max_retries=int(os.getenv("STRIPE_MAX_RETRIES", "2")),
            frontend_base_url=os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/"),
            backend_base_url=os.getenv("BACKEND_BASE_URL", "http://localhost:8000").rstrip("/"),
            gp_merchant_number=os.getenv("GP_MERCHANT_NUMBER") or None,
            gp_gateway_base=os.getenv("GP_GATEWAY_BASE") or None,
            gp_private_key_pem=_pem(os.getenv("GP_PRIVATE_KEY_PEM")),
            gp_private_key_pass=os.getenv("GP_PRIVATE_KEY_PASS") or None,
            gp_public_key_pem=_pem(os.getenv("GP_PUBLIC_KEY_PEM")),
            gp_currency=os.getenv("GP_CURRENCY", "CZK"),
            gp_deposit_flag=int(os.getenv("GP_DEPOSIT_FLAG", "1")),
            gp_min_amount_czk=int(os.getenv("GP_MIN_AMOUNT_CZK", "100")),
            smtp_host=os.getenv("SMTP_HOST", "localhost"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_pass=os.getenv("SMTP_PASS", ""),
            mail_from=os.getenv("MAIL_FROM", os.getenv("SMTP_USER", "")),
            mail_from_name=os.getenv("MAIL_FROM_NAME", "Dogpoint"),
            fio_token=os.getenv("FIO_TOKEN", ""),
            fio_base_url=os.getenv("FIO_BASE_URL", "https://fioapi.fio.cz/v1/rest").rstrip("/"),
            fio_timeout_seconds=float(os.getenv("FIO_TIMEOUT_SECONDS", "30")),
            fio_import_days=int(os.getenv("FIO_IMPORT_DAYS", "7")),
        )


settings = Settings.from_env()
