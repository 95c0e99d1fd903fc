from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketplace import customers
from marketplace.auth import verify_token
from marketplace.database import get_db
from marketplace.dependencies import get_notifier, get_processor
from marketplace.errors import PaymentNotFoundError
from marketplace.orchestrator import PaymentOrchestrator
from marketplace.payments import PaymentStore
from marketplace.refunds import RefundCoordinator

router = APIRouter(dependencies=[Depends(verify_token)])


class CustomerCreate(BaseModel):
    name: str
    email: str
    phone: str
    address: str


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    customer_id: int
    amount: Decimal
    currency: str = "usd"
    description: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class ConfirmRequest(BaseModel):
    payment_intent_id: str
    payment_method_id: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    payment_intent_id: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    currency: Optional[str] = None


class SetupIntentRequest(BaseModel):
    customer_id: int


def _pagination(page: int, limit: int, total: int):
    pages = (total + limit - 1) // limit
    return {
        "current_page": page,
        "total_pages": pages,
        "total": total,
        "has_next_page": page < pages,
        "has_prev_page": page > 1,
    }


def _ledger(customer):
    if customer is None:
        return None
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "total_payments": customer.total_payments,
        "total_amount": str(customer.total_amount),
    }


# Customers

@router.post("/customers", status_code=201)
def create_customer_api(
    request: CustomerCreate,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    customer = customers.create_customer(db, processor, notifier, request.model_dump())
    return {"customer": customer.to_dict(), "stripe_customer_id": customer.stripe_customer_id}


@router.get("/customers")
def list_customers_api(
    search: str = "",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = customers.list_customers(db, search, page, limit)
    return {
        "customers": [c.to_dict() for c in items],
        "pagination": _pagination(page, limit, total),
    }


@router.get("/customers/{customer_id}")
def get_customer_api(customer_id: int, db: Session = Depends(get_db)):
    customer = customers.get_customer(db, customer_id)
    data = customer.to_dict()
    data["payments"] = [p.to_dict() for p in PaymentStore(db).find_by_customer(customer_id)]
    return data


@router.get("/customers/{customer_id}/dashboard")
def customer_dashboard_api(
    customer_id: int,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    dashboard = PaymentOrchestrator(db, processor, notifier).dashboard(customer_id)
    stats = dashboard.statistics
    return {
        "customer": dashboard.customer.to_dict(),
        "statistics": {
            "total_spent": str(stats["total_spent"]),
            "average_payment": str(stats["average_payment"]),
            "payment_count": stats["payment_count"],
            "last_payment_date": stats["last_payment_date"],
        },
        "recent_payments": [p.to_dict() for p in dashboard.recent_payments],
        "stripe_data": dashboard.stripe_data,
    }


@router.put("/customers/{customer_id}")
def update_customer_api(
    customer_id: int,
    request: CustomerUpdate,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
):
    customer = customers.update_customer(db, processor, customer_id, request.model_dump())
    return customer.to_dict()


@router.delete("/customers/{customer_id}")
def delete_customer_api(
    customer_id: int,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
):
    removed = customers.delete_customer(db, processor, customer_id)
    return {"deleted": True, "payments_deleted": removed}


@router.get("/customers/{customer_id}/payment-methods")
def payment_methods_api(
    customer_id: int,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    methods = PaymentOrchestrator(db, processor, notifier).list_payment_methods(customer_id)
    return {"payment_methods": methods}


# Payments

@router.post("/payments/setup-intents")
def setup_intent_api(
    request: SetupIntentRequest,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    return PaymentOrchestrator(db, processor, notifier).create_setup_intent(request.customer_id)


@router.post("/payments")
def create_payment_api(
    request: PaymentIntentRequest,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    result = PaymentOrchestrator(db, processor, notifier).create_intent(
        request.customer_id,
        request.amount,
        request.currency,
        request.description,
        request.metadata,
    )
    return {
        "client_secret": result.client_secret,
        "payment_intent_id": result.payment_intent_id,
        "amount": str(result.amount),
        "currency": result.currency,
        "status": result.status,
    }


@router.post("/payments/confirm")
def confirm_payment_api(
    request: ConfirmRequest,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    result = PaymentOrchestrator(db, processor, notifier).confirm_intent(
        request.payment_intent_id, request.payment_method_id
    )
    return {
        "payment_intent_id": result.payment_intent_id,
        "status": result.status,
        "payment": result.record.to_dict() if result.record else None,
        "customer": _ledger(result.customer),
    }


@router.post("/payments/{intent_id}/cancel")
def cancel_payment_api(
    intent_id: str,
    request: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
    notifier=Depends(get_notifier),
):
    reason = request.reason if request else None
    result = PaymentOrchestrator(db, processor, notifier).cancel_intent(intent_id, reason)
    return {
        "payment_intent_id": result.payment_intent_id,
        "status": result.status,
        "payment": result.record.to_dict() if result.record else None,
    }


@router.post("/payments/refund")
def refund_api(
    request: RefundRequest,
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
):
    result = RefundCoordinator(db, processor).refund(
        request.payment_intent_id, request.amount, request.reason, request.currency
    )
    return {
        "refund_id": result.refund_id,
        "status": result.status,
        "amount": None if result.amount is None else str(result.amount),
        "payment": result.record.to_dict() if result.record else None,
        "customer": _ledger(result.customer),
    }


@router.get("/payments")
def list_payments_api(
    customer_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = PaymentStore(db).list(customer_id, status, page, limit)
    return {
        "payments": [p.to_dict() for p in items],
        "pagination": _pagination(page, limit, total),
    }


@router.get("/payments/{payment_id}")
def get_payment_api(payment_id: int, db: Session = Depends(get_db)):
    payment = PaymentStore(db).get(payment_id)
    if payment is None:
        raise PaymentNotFoundError(payment_id)
    return payment.to_dict()
