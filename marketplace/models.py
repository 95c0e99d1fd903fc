from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String

from marketplace.database import Base


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED,
                        PaymentStatus.CANCELED, PaymentStatus.REFUNDED)


class CustomerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PREMIUM = "premium"
    SUSPENDED = "suspended"


def _money(value):
    return None if value is None else str(value)


def _date(value):
    return None if value is None else value.isoformat()


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=False)
    address = Column(String, nullable=False)
    stripe_customer_id = Column(String, unique=True, index=True, nullable=True)

    # Ledger fields, only written by ledger.recompute_stats
    total_payments = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    last_payment_date = Column(DateTime, nullable=True)

    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default=CustomerStatus.ACTIVE.value)
    customer_since = Column(DateTime, nullable=False, default=utcnow)

    subscription_id = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)
    subscription_period_start = Column(DateTime, nullable=True)
    subscription_period_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "stripe_customer_id": self.stripe_customer_id,
            "total_payments": self.total_payments,
            "total_amount": _money(self.total_amount),
            "last_payment_date": _date(self.last_payment_date),
            "currency": self.currency,
            "status": self.status,
            "customer_since": _date(self.customer_since),
            "subscription": {
                "id": self.subscription_id,
                "status": self.subscription_status,
                "current_period_start": _date(self.subscription_period_start),
                "current_period_end": _date(self.subscription_period_end),
            },
        }


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_customer_date", "customer_id", "payment_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # NULL customer_id: orphan record kept for audit
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    stripe_payment_intent_id = Column(String, unique=True, index=True, nullable=False)
    stripe_customer_id = Column(String, nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, index=True,
                    default=PaymentStatus.REQUIRES_PAYMENT_METHOD.value)
    payment_method = Column(String, nullable=False, default="card")  # card | bank_transfer | paypal
    payment_method_details = Column(JSON, nullable=True)
    description = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    refunded = Column(Boolean, nullable=False, default=False)
    refund_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    stripe_refund_id = Column(String, nullable=True)
    refund_reason = Column(String, nullable=True)

    payment_date = Column(DateTime, nullable=True)
    receipt_url = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_customer_id": self.stripe_customer_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_method_details": self.payment_method_details,
            "description": self.description,
            "metadata": self.metadata_,
            "refunded": self.refunded,
            "refund_amount": _money(self.refund_amount),
            "stripe_refund_id": self.stripe_refund_id,
            "refund_reason": self.refund_reason,
            "payment_date": _date(self.payment_date),
            "receipt_url": self.receipt_url,
        }
