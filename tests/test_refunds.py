from decimal import Decimal

import pytest

from marketplace.errors import ProcessorError, ValidationError
from marketplace.models import Customer, Payment
from marketplace.orchestrator import PaymentOrchestrator
from marketplace.refunds import RefundCoordinator


@pytest.fixture
def paid(db, customer, processor, notifier):
    orchestrator = PaymentOrchestrator(db, processor, notifier)
    first = orchestrator.create_intent(customer.id, Decimal("25.00"))
    orchestrator.confirm_intent(first.payment_intent_id, "pm_card_visa")
    second = orchestrator.create_intent(customer.id, Decimal("15.00"))
    orchestrator.confirm_intent(second.payment_intent_id, "pm_card_visa")
    return first.payment_intent_id, second.payment_intent_id


def test_partial_refund_excludes_whole_payment(db, customer, processor, paid):
    intent_id, _ = paid
    assert db.get(Customer, customer.id).total_amount == Decimal("40.00")

    result = RefundCoordinator(db, processor).refund(intent_id, Decimal("10.00"), "requested_by_customer")

    assert processor.called("create_refund")[0] == {
        "intent_id": intent_id, "amount": 1000, "reason": "requested_by_customer"}
    record = db.query(Payment).filter_by(stripe_payment_intent_id=intent_id).one()
    assert record.refunded is True
    assert record.refund_amount == Decimal("10.00")
    assert record.status == "refunded"
    assert record.refund_reason == "requested_by_customer"
    assert record.stripe_refund_id == result.refund_id
    assert result.customer.total_amount == Decimal("15.00")
    assert result.customer.total_payments == 1


def test_full_refund_defaults_to_original_amount(db, customer, processor, paid):
    _, intent_id = paid

    result = RefundCoordinator(db, processor).refund(intent_id)

    assert processor.called("create_refund")[0]["amount"] is None
    assert result.record.refund_amount == Decimal("15.00")
    assert result.customer.total_amount == Decimal("25.00")


def test_refund_twice_rejected(db, processor, paid):
    coordinator = RefundCoordinator(db, processor)
    coordinator.refund(paid[0])

    with pytest.raises(ValidationError, match="already refunded"):
        coordinator.refund(paid[0])
    assert len(processor.called("create_refund")) == 1


@pytest.mark.parametrize("amount, reason", [
    (Decimal("30.00"), None),
    (Decimal("0"), None),
    (None, "changed_mind"),
])
def test_invalid_refund_rejected_before_processor(db, processor, paid, amount, reason):
    with pytest.raises(ValidationError):
        RefundCoordinator(db, processor).refund(paid[0], amount, reason)
    assert processor.called("create_refund") == []


def test_processor_failure_leaves_record_untouched(db, customer, processor, paid):
    processor.failures["create_refund"] = ProcessorError("charge already refunded")

    with pytest.raises(ProcessorError):
        RefundCoordinator(db, processor).refund(paid[0])

    record = db.query(Payment).filter_by(stripe_payment_intent_id=paid[0]).one()
    assert record.status == "succeeded"
    assert record.refunded is False
    assert db.get(Customer, customer.id).total_amount == Decimal("40.00")


def test_refund_for_unrecorded_intent(db, processor):
    result = RefundCoordinator(db, processor).refund("pi_elsewhere", Decimal("5.00"), currency="usd")

    assert result.record is None
    assert result.refund_id == "re_1"
    assert processor.called("create_refund")[0]["amount"] == 500


def test_unrecorded_zero_decimal_refund_is_not_scaled(db, processor):
    RefundCoordinator(db, processor).refund("pi_elsewhere", Decimal("500"), currency="jpy")

    assert processor.called("create_refund")[0]["amount"] == 500


def test_unrecorded_refund_amount_needs_currency(db, processor):
    with pytest.raises(ValidationError, match="currency"):
        RefundCoordinator(db, processor).refund("pi_elsewhere", Decimal("5.00"))
    assert processor.calls == []


def test_unrecorded_full_refund_needs_no_currency(db, processor):
    result = RefundCoordinator(db, processor).refund("pi_elsewhere")

    assert result.amount is None
    assert processor.called("create_refund")[0]["amount"] is None
