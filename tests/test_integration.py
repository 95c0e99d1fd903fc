from conftest import VALID_SIGNATURE, TestingSessionLocal, make_event
from marketplace.models import Payment


def test_full_payment_lifecycle_integration(client, processor, notifier):
    """
    Test the full lifecycle:
    1. Create customer (API -> DB + Stripe identity)
    2. Create and confirm payment (API -> Stripe -> DB + ledger)
    3. Duplicate webhook for the same intent (Stripe -> API -> no change)
    4. Partial refund (API -> Stripe -> DB + ledger)
    """

    # --- 1. CREATE CUSTOMER ---
    response = client.post("/customers", json={
        "name": "Ada Driver", "email": "ada@example.com", "phone": "+15550100", "address": "1 Main St"})
    assert response.status_code == 201
    customer_id = response.json()["customer"]["id"]

    # --- 2. CREATE + CONFIRM PAYMENT ---
    response = client.post("/payments", json={
        "customer_id": customer_id, "amount": 25.00, "currency": "usd", "description": "Deposit"})
    assert response.status_code == 200
    intent_id = response.json()["payment_intent_id"]
    assert processor.called("create_payment_intent")[0]["amount"] == 2500

    response = client.post("/payments/confirm", json={
        "payment_intent_id": intent_id, "payment_method_id": "pm_card_visa"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "succeeded"
    assert body["payment"]["amount"] == "25.00"
    assert body["customer"] == {"id": customer_id, "name": "Ada Driver", "email": "ada@example.com",
                                "total_payments": 1, "total_amount": "25.00"}

    # --- 3. DUPLICATE WEBHOOK ---
    payload = make_event("payment_intent.succeeded", processor.intents[intent_id])
    for _ in range(2):
        response = client.post("/webhook", content=payload, headers={"stripe-signature": VALID_SIGNATURE})
        assert response.status_code == 200

    db = TestingSessionLocal()
    assert db.query(Payment).filter_by(stripe_payment_intent_id=intent_id).count() == 1
    db.close()
    customer = client.get(f"/customers/{customer_id}").json()
    assert customer["total_payments"] == 1
    assert customer["total_amount"] == "25.00"

    # --- 4. REFUND ---
    response = client.post("/payments/refund", json={
        "payment_intent_id": intent_id, "amount": 10.00, "reason": "requested_by_customer"})
    assert response.status_code == 200
    body = response.json()
    assert body["payment"]["refund_amount"] == "10.00"
    assert body["payment"]["status"] == "refunded"
    assert body["customer"]["total_amount"] == "0.00"

    assert notifier.kinds() == ["customer_welcome", "payment_confirmation"]


def test_confirm_requires_action_then_webhook_records(client, processor):
    customer_id = client.post("/customers", json={
        "name": "Ada", "email": "ada@example.com", "phone": "+1", "address": "x"}).json()["customer"]["id"]
    intent_id = client.post("/payments", json={"customer_id": customer_id, "amount": 12.5}).json()["payment_intent_id"]

    processor.confirm_status = "requires_action"
    response = client.post("/payments/confirm", json={
        "payment_intent_id": intent_id, "payment_method_id": "pm_3ds"})
    assert response.json()["status"] == "requires_action"
    assert response.json()["payment"] is None

    # 3-D Secure completed client-side, Stripe reports success
    payload = make_event("payment_intent.succeeded", processor.succeed_intent(intent_id))
    client.post("/webhook", content=payload, headers={"stripe-signature": VALID_SIGNATURE})

    payments = client.get("/payments", params={"customer_id": customer_id}).json()["payments"]
    assert [(p["stripe_payment_intent_id"], p["amount"]) for p in payments] == [(intent_id, "12.50")]


def test_cancel_payment(client, processor):
    customer_id = client.post("/customers", json={
        "name": "Ada", "email": "ada@example.com", "phone": "+1", "address": "x"}).json()["customer"]["id"]
    intent_id = client.post("/payments", json={"customer_id": customer_id, "amount": 5}).json()["payment_intent_id"]

    response = client.post(f"/payments/{intent_id}/cancel", json={"reason": "abandoned"})

    assert response.status_code == 200
    assert response.json() == {"payment_intent_id": intent_id, "status": "canceled", "payment": None}
    assert processor.called("cancel_payment_intent") == [{"intent_id": intent_id, "reason": "abandoned"}]


def test_setup_intent_and_payment_methods(client):
    customer_id = client.post("/customers", json={
        "name": "Ada", "email": "ada@example.com", "phone": "+1", "address": "x"}).json()["customer"]["id"]

    setup = client.post("/payments/setup-intents", json={"customer_id": customer_id})
    methods = client.get(f"/customers/{customer_id}/payment-methods")

    assert setup.json()["setup_intent_id"] == "seti_1"
    assert methods.json()["payment_methods"][0]["id"] == "pm_card_visa"
