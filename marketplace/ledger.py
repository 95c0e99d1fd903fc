import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from marketplace.models import Customer, Payment, PaymentStatus

logger = logging.getLogger(__name__)


def ledger_eligible(db: Session, customer_id: int):
    """Payments counted in a customer's totals: succeeded and never refunded.

    A refund of any size removes the payment from the set, partial refunds
    included.
    """
    return (
        db.query(Payment)
        .filter(
            Payment.customer_id == customer_id,
            Payment.status == PaymentStatus.SUCCEEDED.value,
            Payment.refunded.is_(False),
        )
        .all()
    )


def recompute_stats(db: Session, customer_id: int):
    customer = db.get(Customer, customer_id)
    if customer is None:
        return None

    payments = ledger_eligible(db, customer_id)
    dates = [p.payment_date for p in payments if p.payment_date is not None]

    customer.total_payments = len(payments)
    customer.total_amount = sum((Decimal(p.amount) for p in payments), Decimal("0.00"))
    customer.last_payment_date = max(dates) if dates else None
    db.commit()
    db.refresh(customer)

    logger.debug(
        "Ledger recomputed for customer %s: payments=%s total=%s",
        customer_id, customer.total_payments, customer.total_amount,
    )
    return customer
