import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


PAYMENT_CONFIRMATION = """\
Hi {name},

We received your payment of {amount} {currency}.
Reference: {reference}
{receipt}
Thank you for shopping with {brand}.
"""

PAYMENT_FAILED = """\
Hi {name},

Your payment of {amount} {currency} could not be completed.
Reason: {reason}

You can try again with a different payment method.
{brand}
"""

CUSTOMER_WELCOME = """\
Hi {name},

Welcome to {brand}! Your customer account is ready.
Customer reference: {reference}
"""


def _html(text: str) -> str:
    body = "".join(f"<p>{line}</p>" for line in text.splitlines() if line.strip())
    return f"<html><body style=\"font-family: Arial, sans-serif;\">{body}</body></html>"


@runtime_checkable
class Notifier(Protocol):
    def payment_confirmation(self, customer, payment): ...

    def payment_failed(self, customer, amount, currency: str, reason: str): ...

    def customer_welcome(self, customer): ...


class EmailNotifier:
    """Sends customer e-mails over SMTP.

    With ``enabled=False`` messages are only logged, which is what local
    development and tests run with.
    """

    def __init__(self, host: str, port: int, user: str = "", password: str = "",
                 sender: str = "", brand: str = "Car Marketplace",
                 timeout: float = 10, enabled: bool = False):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.brand = brand
        self.timeout = timeout
        self.enabled = enabled

    def send(self, to: str, subject: str, text: str):
        if not self.enabled:
            logger.info("Email to %s suppressed (disabled): %s", to, subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.brand} <{self.sender}>"
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(_html(text), "html"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.port != 25:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [to], msg.as_string())
        logger.info("Email sent to %s: %s", to, subject)

    def payment_confirmation(self, customer, payment):
        text = PAYMENT_CONFIRMATION.format(
            name=customer.name,
            amount=payment.amount,
            currency=(payment.currency or "").upper(),
            reference=payment.stripe_payment_intent_id,
            receipt=f"Receipt: {payment.receipt_url}\n" if payment.receipt_url else "",
            brand=self.brand,
        )
        self.send(customer.email, "Payment confirmation", text)

    def payment_failed(self, customer, amount, currency, reason):
        text = PAYMENT_FAILED.format(
            name=customer.name,
            amount=amount,
            currency=(currency or "").upper(),
            reason=reason,
            brand=self.brand,
        )
        self.send(customer.email, "Payment failed", text)

    def customer_welcome(self, customer):
        text = CUSTOMER_WELCOME.format(
            name=customer.name,
            reference=customer.stripe_customer_id or customer.id,
            brand=self.brand,
        )
        self.send(customer.email, f"Welcome to {self.brand}", text)


def notify_safely(send, *args, **kwargs) -> bool:
    """Run a notification send; failures are logged and never raised."""
    try:
        send(*args, **kwargs)
        return True
    except Exception:
        logger.exception("Notification %s failed", getattr(send, "__name__", send))
        return False
