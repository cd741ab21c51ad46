"""
billing/errors.py

Client-facing errors for the billing endpoints.

Every error carries an HTTP status and a machine-readable code; the
blueprints turn them into:
    {"success": false, "error": "<message>", "code": "<CODE>"}

Version History:
    2026-01-09: Initial implementation
"""

from typing import Optional


class BillingError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 400
    code = 'BILLING_ERROR'

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {
            'success': False,
            'error': self.message,
            'code': self.code,
        }


class ValidationError(BillingError):
    """Unknown plan, malformed amount, malformed job id."""
    status_code = 400
    code = 'VALIDATION_ERROR'


class NotFoundError(BillingError):
    status_code = 404
    code = 'NOT_FOUND'

    def __init__(self, resource: str = 'Resource'):
        super().__init__(f'{resource} not found')


class PaymentRequiredError(BillingError):
    status_code = 402
    code = 'INSUFFICIENT_CREDITS'

    def __init__(self, message: str = 'Insufficient credits', required: Optional[int] = None):
        super().__init__(message)
        self.required = required

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.required is not None:
            data['required'] = self.required
        data['buy_url'] = '/api/billing/plans'
        return data


class WebhookAuthError(BillingError):
    """Missing/invalid signature, or no shared secret configured."""
    status_code = 401
    code = 'INVALID_SIGNATURE'

    def __init__(self, message: str = 'Invalid signature'):
        super().__init__(message)


class WebhookForbiddenError(BillingError):
    """Webhook called from an address outside the gateway allowlist."""
    status_code = 403
    code = 'FORBIDDEN'

    def __init__(self, message: str = 'Forbidden'):
        super().__init__(message)


class UpstreamError(BillingError):
    """The image-generation job API failed or refused the request."""
    status_code = 502
    code = 'UPSTREAM_ERROR'
