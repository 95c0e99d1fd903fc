import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.models import Customer, Payment, PaymentStatus
from marketplace.money import quantize

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "customer_id", "stripe_customer_id", "amount", "currency", "status",
    "payment_method", "payment_method_details", "description", "metadata",
    "refunded", "refund_amount", "stripe_refund_id", "refund_reason",
    "payment_date", "receipt_url",
}


@dataclass
class UpsertResult:
    record: Payment
    created: bool
    # the processor customer id did not resolve to a local customer
    orphan: bool = False
    # status the row held when this write landed, None for a new row
    previous_status: Optional[str] = None


class PaymentStore:
    """Local log of payment outcomes, one row per processor payment intent."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, record_id: int) -> Optional[Payment]:
        return self.db.get(Payment, record_id)

    def find_by_intent_id(self, intent_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter_by(stripe_payment_intent_id=intent_id)
            .first()
        )

    def find_by_customer(self, customer_id: int, limit: int = None):
        query = (
            self.db.query(Payment)
            .filter_by(customer_id=customer_id)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list(self, customer_id: int = None, status: str = None, page: int = 1, limit: int = 10):
        query = self.db.query(Payment)
        if customer_id is not None:
            query = query.filter(Payment.customer_id == customer_id)
        if status:
            query = query.filter(Payment.status == status)
        total = query.count()
        items = (
            query.order_by(Payment.payment_date.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def _resolve_customer_id(self, fields: dict):
        if fields.get("customer_id") is not None:
            return fields["customer_id"]
        stripe_customer_id = fields.get("stripe_customer_id")
        if not stripe_customer_id:
            return None
        customer = (
            self.db.query(Customer)
            .filter_by(stripe_customer_id=stripe_customer_id)
            .first()
        )
        return customer.id if customer else None

    def _apply(self, record: Payment, fields: dict):
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                raise KeyError(f"Unknown payment field: {key}")
            if key in ("amount", "refund_amount") and value is not None:
                value = quantize(value)
            if key == "status" and isinstance(value, PaymentStatus):
                value = value.value
            setattr(record, "metadata_" if key == "metadata" else key, value)

    def upsert_by_intent_id(self, intent_id: str, fields: dict) -> UpsertResult:
        """Merge ``fields`` into the record for ``intent_id``, creating it if needed.

        Both the synchronous confirmation path and the webhook path write
        through here, so any number of calls for one intent leaves exactly
        one row whose fields match the last call.
        """
        fields = dict(fields)
        customer_id = self._resolve_customer_id(fields)
        orphan = customer_id is None
        if customer_id is not None:
            fields["customer_id"] = customer_id
        else:
            fields.pop("customer_id", None)

        record = self.find_by_intent_id(intent_id)
        created = record is None
        previous_status = None if created else record.status
        if created:
            record = Payment(stripe_payment_intent_id=intent_id)
            self._apply(record, fields)
            self.db.add(record)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost the race against another writer for the same intent
                self.db.rollback()
                record = self.find_by_intent_id(intent_id)
                if record is None:
                    raise
                created = False
                previous_status = record.status
                self._apply(record, fields)
                self.db.commit()
        else:
            self._apply(record, fields)
            self.db.commit()
        self.db.refresh(record)

        if orphan:
            logger.warning(
                "Orphan payment %s: processor customer %s has no local customer",
                intent_id, fields.get("stripe_customer_id"),
            )
        return UpsertResult(record=record, created=created, orphan=orphan,
                            previous_status=previous_status)

    def mark_refunded(self, record_id: int, amount, refund_id: str, reason: str = None) -> Payment:
        record = self.db.get(Payment, record_id)
        if record is None:
            return None
        record.refunded = True
        record.refund_amount = quantize(amount)
        record.stripe_refund_id = refund_id
        record.refund_reason = reason
        record.status = PaymentStatus.REFUNDED.value
        self.db.commit()
        self.db.refresh(record)
        return record

    def mark_canceled(self, intent_id: str) -> Optional[Payment]:
        record = self.find_by_intent_id(intent_id)
        if record is None:
            return None
        if record.status != PaymentStatus.CANCELED.value:
            record.status = PaymentStatus.CANCELED.value
            self.db.commit()
            self.db.refresh(record)
        return record

    def mark_failed(self, intent_id: str) -> Optional[Payment]:
        """Flag an existing, not yet settled record as failed. Never creates one."""
        record = self.find_by_intent_id(intent_id)
        if record is None:
            return None
        if record.status in (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value):
            return record
        if record.status != PaymentStatus.FAILED.value:
            record.status = PaymentStatus.FAILED.value
            self.db.commit()
            self.db.refresh(record)
        return record

    def delete_for_customer(self, customer_id: int) -> int:
        """Delete a customer's records without committing; see customers.delete_customer."""
        return (
            self.db.query(Payment)
            .filter(Payment.customer_id == customer_id)
            .delete(synchronize_session=False)
        )
