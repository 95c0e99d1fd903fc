class PaymentServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentServiceError):
    """Rejected before any call to the payment processor."""

    status_code = 400


class CustomerNotFoundError(PaymentServiceError):
    status_code = 404

    def __init__(self, customer_id):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class PaymentNotFoundError(PaymentServiceError):
    status_code = 404

    def __init__(self, key):
        super().__init__(f"Payment {key} not found")
        self.key = key


class CustomerExistsError(PaymentServiceError):
    status_code = 409


class ProcessorError(PaymentServiceError):
    """The payment processor refused or failed a request. No local state was changed."""

    status_code = 502

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.code = code


class InvalidSignatureError(PaymentServiceError):
    status_code = 400
