import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from marketplace.customers import ensure_processor_identity, get_customer
from marketplace.errors import CustomerNotFoundError, ProcessorError, ValidationError
from marketplace.ledger import recompute_stats
from marketplace.models import Customer, Payment, PaymentStatus, utcnow
from marketplace.money import quantize, to_decimal, to_minor_units, validate_charge_amount
from marketplace.notifications import Notifier, notify_safely
from marketplace.payments import PaymentStore, UpsertResult

logger = logging.getLogger(__name__)

CARD_FIELDS = ("brand", "last4", "exp_month", "exp_year", "country")
RECENT_PAYMENTS = 10


@dataclass
class IntentResult:
    payment_intent_id: str
    client_secret: str
    amount: object
    currency: str
    status: str


@dataclass
class ConfirmResult:
    payment_intent_id: str
    status: str
    record: Optional[Payment] = None
    customer: Optional[Customer] = None


@dataclass
class Dashboard:
    customer: Customer
    recent_payments: list
    statistics: dict
    stripe_data: dict = field(default_factory=dict)


def object_id(value):
    if isinstance(value, dict):
        return value.get("id")
    return value


def _charge(intent):
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge
    # Older API versions embed the charge list
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def _method_details(charge):
    details = (charge or {}).get("payment_method_details") or {}
    kind = details.get("type") or "card"
    summary = {"type": kind}
    card = details.get("card")
    if card:
        summary["card"] = {k: card.get(k) for k in CARD_FIELDS}
    return summary


def _method_kind(kind: str) -> str:
    if kind == "paypal":
        return "paypal"
    if "bank" in kind:
        return "bank_transfer"
    return "card"


def intent_outcome(intent) -> dict:
    """Payment record fields for a processor payment intent."""
    currency = intent.get("currency") or "usd"
    minor = intent.get("amount_received") or intent.get("amount") or 0
    fields = {
        "stripe_customer_id": object_id(intent.get("customer")),
        "amount": to_decimal(minor, currency),
        "currency": currency,
        "status": intent.get("status"),
        "description": intent.get("description"),
        "metadata": dict(intent.get("metadata") or {}),
        "payment_date": utcnow(),
    }
    # Webhook payloads carry the charge id only; leave charge fields as stored
    charge = _charge(intent)
    if charge is not None:
        details = _method_details(charge)
        fields["payment_method"] = _method_kind(details["type"])
        fields["payment_method_details"] = details
        fields["receipt_url"] = charge.get("receipt_url")
    return fields


def record_success(db: Session, intent, notifier: Notifier) -> tuple:
    """Persist a succeeded intent, recompute the owner's ledger and notify.

    Safe to call any number of times for one intent: the record is upserted
    by intent id, the first payment date is kept, a refund already applied
    is not undone, and the confirmation e-mail only goes out on the
    transition into "succeeded" as seen by the write itself.
    """
    store = PaymentStore(db)
    intent_id = intent["id"]
    fields = intent_outcome(intent)

    existing = store.find_by_intent_id(intent_id)
    if existing is not None:
        if existing.payment_date is not None:
            fields.pop("payment_date")
        if existing.refunded:
            for key in ("status", "amount"):
                fields.pop(key)

    result: UpsertResult = store.upsert_by_intent_id(intent_id, fields)
    if result.orphan:
        return result, None

    customer = recompute_stats(db, result.record.customer_id)
    newly_succeeded = (
        result.previous_status != PaymentStatus.SUCCEEDED.value
        and result.record.status == PaymentStatus.SUCCEEDED.value
    )
    if customer is not None and newly_succeeded:
        logger.info("Payment %s succeeded for customer %s", intent_id, customer.id)
        notify_safely(notifier.payment_confirmation, customer, result.record)
    return result, customer


class PaymentOrchestrator:
    """Creates and confirms Stripe payment intents for local customers."""

    def __init__(self, db: Session, processor, notifier: Notifier):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.store = PaymentStore(db)

    def create_intent(self, customer_id: int, amount, currency: str = "usd",
                      description: str = None, metadata: dict = None) -> IntentResult:
        amount = validate_charge_amount(amount)
        if not currency:
            raise ValidationError("Currency is required")
        if customer_id is None:
            raise ValidationError("customer_id is required")
        customer = get_customer(self.db, customer_id)

        stripe_customer_id = ensure_processor_identity(self.db, self.processor, customer)
        intent = self.processor.create_payment_intent(
            amount=to_minor_units(amount, currency),
            currency=currency,
            stripe_customer_id=stripe_customer_id,
            description=description or "Payment for services",
            metadata={
                **(metadata or {}),
                "customer_id": str(customer.id),
                "created_at": utcnow().isoformat(),
            },
        )
        logger.info("Created payment intent %s for customer %s", intent["id"], customer.id)
        return IntentResult(
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            amount=to_decimal(intent["amount"], intent["currency"]),
            currency=intent["currency"],
            status=intent["status"],
        )

    def confirm_intent(self, intent_id: str, payment_method_id: str) -> ConfirmResult:
        if not intent_id:
            raise ValidationError("payment_intent_id is required")
        if not payment_method_id:
            raise ValidationError("payment_method_id is required")

        intent = self.processor.confirm_payment_intent(intent_id, payment_method_id)
        status = intent["status"]
        if status != PaymentStatus.SUCCEEDED.value:
            # Recorded later by a retried confirmation or the webhook
            logger.info("Payment intent %s is %s after confirmation", intent_id, status)
            return ConfirmResult(payment_intent_id=intent_id, status=status)

        result, customer = record_success(self.db, intent, self.notifier)
        return ConfirmResult(
            payment_intent_id=intent_id,
            status=status,
            record=result.record,
            customer=customer,
        )

    def cancel_intent(self, intent_id: str, reason: str = None) -> ConfirmResult:
        if not intent_id:
            raise ValidationError("payment_intent_id is required")
        intent = self.processor.cancel_payment_intent(intent_id, reason)

        record = self.store.mark_canceled(intent_id)
        customer = None
        if record is not None and record.customer_id is not None:
            customer = recompute_stats(self.db, record.customer_id)
        logger.info("Payment intent %s canceled", intent_id)
        return ConfirmResult(
            payment_intent_id=intent_id,
            status=intent["status"],
            record=record,
            customer=customer,
        )

    def create_setup_intent(self, customer_id: int) -> dict:
        customer = get_customer(self.db, customer_id)
        stripe_customer_id = ensure_processor_identity(self.db, self.processor, customer)
        setup_intent = self.processor.create_setup_intent(stripe_customer_id)
        return {
            "client_secret": setup_intent["client_secret"],
            "setup_intent_id": setup_intent["id"],
        }

    def list_payment_methods(self, customer_id: int) -> list:
        customer = get_customer(self.db, customer_id)
        if not customer.stripe_customer_id:
            raise CustomerNotFoundError(f"{customer_id} (no Stripe customer)")
        methods = self.processor.list_payment_methods(customer.stripe_customer_id)
        return list(methods["data"])

    def dashboard(self, customer_id: int) -> Dashboard:
        """Customer, ledger statistics, recent payments and Stripe-side data.

        The Stripe data is fetched best-effort; a processor failure leaves it
        empty instead of failing the request.
        """
        customer = get_customer(self.db, customer_id)
        count = customer.total_payments or 0
        total = customer.total_amount or Decimal("0")
        statistics = {
            "total_spent": quantize(total),
            "payment_count": count,
            "average_payment": quantize(total / count) if count else quantize(0),
            "last_payment_date": customer.last_payment_date,
        }

        stripe_data = {}
        if customer.stripe_customer_id:
            try:
                stripe_data = {
                    "stripe_customer": self.processor.retrieve_customer(customer.stripe_customer_id),
                    "payment_methods": list(
                        self.processor.list_payment_methods(customer.stripe_customer_id)["data"]
                    ),
                }
            except ProcessorError:
                logger.exception("Could not load Stripe data for customer %s", customer.id)

        return Dashboard(
            customer=customer,
            recent_payments=self.store.find_by_customer(customer.id, limit=RECENT_PAYMENTS),
            statistics=statistics,
            stripe_data=stripe_data,
        )
