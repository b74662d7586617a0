from __future__ import annotations

from typing import Any


class BillingError(Exception):
    code = 'internal_error'
    http_status = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict[str, Any]:
        return {'ok': False, 'error': self.code, 'detail': self.message}


class ValidationError(BillingError):
    code = 'validation_error'
    http_status = 400


class InvalidAmount(ValidationError):
    code = 'invalid_amount'


class InsufficientFunds(BillingError):
    code = 'insufficient_funds'
    http_status = 402

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f'Insufficient tokens: balance {balance}, required {required}')
        self.balance = balance
        self.required = required

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update({'balance': self.balance, 'required': self.required})
        return payload


class PaymentNotFound(BillingError):
    code = 'payment_not_found'
    http_status = 404


class InvalidSignature(BillingError):
    code = 'invalid_signature'
    http_status = 401


class GatewayError(BillingError):
    code = 'gateway_error'
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.transient = transient


class InternalError(BillingError):
    code = 'internal_error'
    http_status = 500
