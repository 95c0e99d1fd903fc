import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.orm import Session

from marketplace.customers import find_by_processor_id
from marketplace.ledger import recompute_stats
from marketplace.money import to_decimal
from marketplace.notifications import Notifier, notify_safely
from marketplace.orchestrator import object_id, record_success
from marketplace.payments import PaymentStore

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: str) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNRECOGNIZED


@dataclass
class EventAck:
    event_id: str
    event_type: str
    handled: bool
    detail: str = ""

    def to_dict(self):
        return {
            "received": True,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "handled": self.handled,
            "detail": self.detail,
        }


def _timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class WebhookReconciler:
    """Applies Stripe webhook events to local payment records and ledgers.

    Stripe delivers at least once and in no guaranteed order relative to the
    synchronous confirmation path. Every handler writes through
    ``PaymentStore`` keyed by payment intent id and the ledger is always
    recomputed in full, so replays leave state unchanged.
    """

    def __init__(self, db: Session, processor, notifier: Notifier):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.store = PaymentStore(db)
        self.handlers = {
            EventType.PAYMENT_INTENT_SUCCEEDED: self._payment_intent_succeeded,
            EventType.PAYMENT_INTENT_FAILED: self._payment_intent_failed,
            EventType.PAYMENT_INTENT_CANCELED: self._payment_intent_canceled,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_payment_succeeded,
            EventType.SUBSCRIPTION_CREATED: self._subscription_created,
            EventType.UNRECOGNIZED: self._unrecognized,
        }

    def handle_event(self, payload: bytes, signature: str) -> EventAck:
        # Raises InvalidSignatureError before anything is touched
        event = self.processor.construct_event(payload, signature)

        raw_type = event.get("type") or ""
        event_type = EventType.parse(raw_type)
        obj = (event.get("data") or {}).get("object") or {}

        handled, detail = self.handlers[event_type](obj, raw_type)
        return EventAck(
            event_id=event.get("id") or "",
            event_type=raw_type,
            handled=handled,
            detail=detail,
        )

    def _payment_intent_succeeded(self, intent, event_type=None):
        result, customer = record_success(self.db, intent, self.notifier)
        if result.orphan:
            return False, "orphan payment: customer not found"
        return True, f"payment {result.record.stripe_payment_intent_id} recorded"

    def _payment_intent_failed(self, intent, event_type=None):
        intent_id = intent.get("id")
        self.store.mark_failed(intent_id)

        customer = find_by_processor_id(self.db, object_id(intent.get("customer")))
        if customer is None:
            logger.warning("Failed payment %s has no local customer", intent_id)
            return False, "customer not found"

        currency = intent.get("currency") or "usd"
        last_error = intent.get("last_payment_error") or {}
        notify_safely(
            self.notifier.payment_failed,
            customer,
            to_decimal(intent.get("amount") or 0, currency),
            currency,
            last_error.get("message") or "Payment failed",
        )
        return True, "failure notified"

    def _payment_intent_canceled(self, intent, event_type=None):
        record = self.store.mark_canceled(intent.get("id"))
        if record is None:
            return True, "no local record"
        if record.customer_id is not None:
            recompute_stats(self.db, record.customer_id)
        return True, "payment canceled"

    def _invoice_payment_succeeded(self, invoice, event_type=None):
        intent_id = invoice.get("payment_intent")
        if isinstance(intent_id, dict):
            intent_id = intent_id.get("id")
        if not intent_id:
            return False, "invoice has no payment intent"

        intent = self.processor.retrieve_payment_intent(intent_id)
        if intent.get("status") != "succeeded":
            logger.info("Invoice %s intent %s is %s", invoice.get("id"), intent_id, intent.get("status"))
            return False, f"payment intent is {intent.get('status')}"
        return self._payment_intent_succeeded(intent)

    def _subscription_created(self, subscription, event_type=None):
        customer = find_by_processor_id(self.db, object_id(subscription.get("customer")))
        if customer is None:
            logger.warning("Subscription %s has no local customer", subscription.get("id"))
            return False, "customer not found"

        start = subscription.get("current_period_start")
        end = subscription.get("current_period_end")
        if start is None:
            # Newer API versions keep the period on the subscription items
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                start = items[0].get("current_period_start")
                end = items[0].get("current_period_end")

        customer.subscription_id = subscription.get("id")
        customer.subscription_status = subscription.get("status")
        customer.subscription_period_start = _timestamp(start)
        customer.subscription_period_end = _timestamp(end)
        self.db.commit()
        return True, "subscription stored"

    def _unrecognized(self, obj, event_type=None):
        logger.info("Unhandled event type: %s", event_type)
        return False, "event type ignored"
