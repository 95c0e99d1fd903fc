import logging
from functools import wraps

import stripe

from marketplace.errors import InvalidSignatureError, ProcessorError

logger = logging.getLogger(__name__)


def as_dict(obj):
    """Plain nested dict from a StripeObject."""
    if obj is None or (isinstance(obj, dict) and not hasattr(obj, "to_dict")):
        return obj
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if to_dict_recursive is not None:
        return to_dict_recursive()
    return obj.to_dict()


def _processor_call(fn):
    """Turn Stripe library errors into ProcessorError carrying Stripe's message."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return as_dict(fn(*args, **kwargs))
        except stripe.StripeError as e:
            message = e.user_message or str(e) or "Payment processor error"
            logger.warning("Stripe call %s failed: %s", fn.__name__, message)
            raise ProcessorError(message, code=e.code) from e

    return wrapper


class StripeProcessor:
    """Handle on the Stripe API. Amounts are integer minor units.

    Holds its own ``stripe.StripeClient`` so the key, timeout and retry
    policy never touch the library's module-level settings.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout: float = 15):
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    # Customers

    @_processor_call
    def create_customer(self, name: str, email: str, phone: str = None, metadata: dict = None):
        return self.client.v1.customers.create(params={
            "name": name,
            "email": email,
            "phone": phone,
            "metadata": metadata or {},
        })

    @_processor_call
    def retrieve_customer(self, stripe_customer_id: str):
        return self.client.v1.customers.retrieve(stripe_customer_id)

    @_processor_call
    def update_customer(self, stripe_customer_id: str, **fields):
        return self.client.v1.customers.update(stripe_customer_id, params=fields)

    @_processor_call
    def delete_customer(self, stripe_customer_id: str):
        return self.client.v1.customers.delete(stripe_customer_id)

    @_processor_call
    def list_payment_methods(self, stripe_customer_id: str, type: str = "card"):
        return self.client.v1.payment_methods.list(params={
            "customer": stripe_customer_id,
            "type": type,
        })

    # Payment intents

    @_processor_call
    def create_payment_intent(self, amount: int, currency: str, stripe_customer_id: str,
                              description: str = None, metadata: dict = None):
        return self.client.v1.payment_intents.create(params={
            "amount": amount,
            "currency": currency.lower(),
            "customer": stripe_customer_id,
            "description": description,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        })

    @_processor_call
    def confirm_payment_intent(self, intent_id: str, payment_method_id: str):
        return self.client.v1.payment_intents.confirm(intent_id, params={
            "payment_method": payment_method_id,
            "expand": ["latest_charge"],
        })

    @_processor_call
    def retrieve_payment_intent(self, intent_id: str):
        return self.client.v1.payment_intents.retrieve(intent_id, params={"expand": ["latest_charge"]})

    @_processor_call
    def cancel_payment_intent(self, intent_id: str, reason: str = None):
        params = {"cancellation_reason": reason} if reason else {}
        return self.client.v1.payment_intents.cancel(intent_id, params=params)

    @_processor_call
    def create_setup_intent(self, stripe_customer_id: str):
        return self.client.v1.setup_intents.create(params={
            "customer": stripe_customer_id,
            "payment_method_types": ["card"],
        })

    # Refunds

    @_processor_call
    def create_refund(self, intent_id: str, amount: int = None, reason: str = None):
        params = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        return self.client.v1.refunds.create(params=params)

    # Webhooks

    def construct_event(self, payload: bytes, signature: str):
        if not signature or not self.webhook_secret:
            raise InvalidSignatureError("Invalid signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise InvalidSignatureError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidSignatureError("Invalid signature")
        return as_dict(event)
