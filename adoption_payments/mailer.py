import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from adoption_payments.config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, settings: Settings):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_pass
        self.mail_from = settings.mail_from or settings.smtp_user
        self.from_name = settings.mail_from_name

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
        if not self.configured:
            logger.warning("SMTP not configured: missing SMTP_USER/SMTP_PASS, skipping mail to %s", to_email)
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.mail_from}>"
        msg["To"] = to_email
        msg.set_content(text or "Váš e-mailový klient nepodporuje HTML.")
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.ehlo()
            smtp.starttls()
            smtp.login(self.user, self.password)
            smtp.send_message(msg)


def send_payment_confirmation(mailer: Mailer, to_email: Optional[str], animal_name: str,
                              amount_czk: int, adoption_started: bool = False) -> bool:
    """
    Best-effort confirmation after a successful payment.
    Does not raise; a failed mail must never fail a reconciliation.
    """
    if not to_email:
        return False

    animal_name = html.escape(animal_name)
    if adoption_started:
        subject = "Dogpoint - adopce zahájena ❤️"
        lead = f"děkujeme! Vaše adopce <b>{animal_name}</b> byla úspěšně zahájena."
    else:
        subject = "Dogpoint - děkujeme za dar"
        lead = f"děkujeme! Přijali jsme Váš dar {amount_czk} Kč pro <b>{animal_name}</b>."

    body = f"""
    <div style="font-family:Arial,sans-serif;line-height:1.5">
      <p>Dobrý den,</p>
      <p>{lead}</p>
      <p>Od teď uvidíte fotky, videa a nové příspěvky.</p>
      <p>Děkujeme,<br/>Dogpoint</p>
    </div>
    """

    try:
        mailer.send(to_email, subject, body.strip())
        logger.info("Payment confirmation sent to %s", to_email)
        return True
    except Exception:
        logger.exception("Failed to send payment confirmation to %s", to_email)
        return False
