import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from marketplace.errors import ValidationError
from marketplace.ledger import recompute_stats
from marketplace.models import Customer, Payment
from marketplace.money import quantize, to_minor_units
from marketplace.payments import PaymentStore

logger = logging.getLogger(__name__)

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount: Optional[Decimal]
    record: Optional[Payment] = None
    customer: Optional[Customer] = None


class RefundCoordinator:
    def __init__(self, db: Session, processor):
        self.db = db
        self.processor = processor
        self.store = PaymentStore(db)

    def refund(self, intent_id: str, amount=None, reason: str = None,
               currency: str = None) -> RefundResult:
        """Refund a payment intent, in full when ``amount`` is omitted.

        Any refund takes the payment out of the customer's ledger totals.
        ``currency`` is only consulted for intents with no local record,
        where it is required to convert an explicit ``amount``.
        """
        if not intent_id:
            raise ValidationError("payment_intent_id is required")
        if reason is not None and reason not in REFUND_REASONS:
            raise ValidationError(f"Refund reason must be one of {', '.join(REFUND_REASONS)}")
        if amount is not None:
            amount = quantize(amount)
            if amount <= 0:
                raise ValidationError("Refund amount must be positive")

        record = self.store.find_by_intent_id(intent_id)
        if record is not None:
            if record.refunded:
                raise ValidationError(f"Payment {intent_id} is already refunded")
            if amount is not None and amount > record.amount:
                raise ValidationError("Refund amount exceeds the payment amount")
            currency = record.currency
        elif amount is not None and not currency:
            raise ValidationError("currency is required to refund an amount on an unrecorded payment")
        minor = to_minor_units(amount, currency) if amount is not None else None
        refund = self.processor.create_refund(intent_id, amount=minor, reason=reason)

        if record is None:
            logger.warning("Refund %s issued for unknown payment %s", refund["id"], intent_id)
            return RefundResult(refund_id=refund["id"], status=refund.get("status"), amount=amount)

        refunded_amount = amount if amount is not None else record.amount
        record = self.store.mark_refunded(record.id, refunded_amount, refund["id"], reason)
        customer = None
        if record.customer_id is not None:
            customer = recompute_stats(self.db, record.customer_id)
        logger.info("Payment %s refunded %s (%s)", intent_id, refunded_amount, reason or "no reason")
        return RefundResult(
            refund_id=refund["id"],
            status=refund.get("status"),
            amount=refunded_amount,
            record=record,
            customer=customer,
        )
