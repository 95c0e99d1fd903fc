import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from marketplace.errors import CustomerExistsError, CustomerNotFoundError, ProcessorError, ValidationError
from marketplace.models import Customer, CustomerStatus
from marketplace.notifications import Notifier, notify_safely
from marketplace.payments import PaymentStore

logger = logging.getLogger(__name__)

UPDATABLE = ("name", "phone", "address", "status")


def get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise CustomerNotFoundError(customer_id)
    return customer


def find_by_processor_id(db: Session, stripe_customer_id: str):
    if not stripe_customer_id:
        return None
    return db.query(Customer).filter_by(stripe_customer_id=stripe_customer_id).first()


def ensure_processor_identity(db: Session, processor, customer: Customer) -> str:
    """Return the customer's Stripe id, creating the Stripe customer on first use.

    The new id is committed straight away so a retry after a later failure
    reuses it instead of creating a second Stripe customer.
    """
    if customer.stripe_customer_id:
        return customer.stripe_customer_id

    created = processor.create_customer(
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        metadata={"customer_id": str(customer.id)},
    )
    customer.stripe_customer_id = created["id"]
    db.commit()
    logger.info("Customer %s linked to Stripe customer %s", customer.id, customer.stripe_customer_id)
    return customer.stripe_customer_id


def create_customer(db: Session, processor, notifier: Notifier, data: dict) -> Customer:
    email = (data.get("email") or "").strip().lower()
    for field in ("name", "phone", "address"):
        if not (data.get(field) or "").strip():
            raise ValidationError(f"Customer {field} is required")
    if not email:
        raise ValidationError("Customer email is required")
    if db.query(Customer).filter_by(email=email).first():
        raise CustomerExistsError("Customer with this email already exists")

    customer = Customer(
        name=data["name"].strip(),
        email=email,
        phone=data["phone"].strip(),
        address=data["address"].strip(),
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)

    try:
        ensure_processor_identity(db, processor, customer)
    except ProcessorError:
        # Provisioned again on the first payment or setup intent
        logger.exception("Could not create Stripe customer for customer %s", customer.id)
    notify_safely(notifier.customer_welcome, customer)
    return customer


def list_customers(db: Session, search: str = "", page: int = 1, limit: int = 10):
    query = db.query(Customer)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Customer.name.ilike(pattern),
            Customer.email.ilike(pattern),
            Customer.phone.ilike(pattern),
        ))
    total = query.count()
    items = (
        query.order_by(Customer.created_at.desc(), Customer.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def update_customer(db: Session, processor, customer_id: int, changes: dict) -> Customer:
    customer = get_customer(db, customer_id)
    status = changes.get("status")
    if status is not None and status not in {s.value for s in CustomerStatus}:
        raise ValidationError(f"Invalid customer status: {status}")

    for field in UPDATABLE:
        if changes.get(field) is not None:
            setattr(customer, field, changes[field])
    db.commit()
    db.refresh(customer)

    if customer.stripe_customer_id:
        try:
            processor.update_customer(
                customer.stripe_customer_id, name=customer.name, phone=customer.phone
            )
        except ProcessorError:
            logger.exception("Could not sync customer %s to Stripe", customer.id)
    return customer


def delete_customer(db: Session, processor, customer_id: int) -> int:
    """Delete a customer and its payment records.

    Two steps in one transaction: the dependent payment records first, then
    the customer. The Stripe customer is removed beforehand, best-effort.
    Returns the number of payment records deleted.
    """
    customer = get_customer(db, customer_id)

    if customer.stripe_customer_id:
        try:
            processor.delete_customer(customer.stripe_customer_id)
        except ProcessorError:
            logger.exception("Could not delete Stripe customer %s", customer.stripe_customer_id)

    try:
        removed = PaymentStore(db).delete_for_customer(customer.id)
        db.delete(customer)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted customer %s and %s payment records", customer_id, removed)
    return removed
