"""
billing/decorators.py

Decorators for billing-related route protection.

Usage:
    from billing.decorators import requires_credits

    @generate_bp.route('', methods=['POST'])
    @requires_credits(CREDITS_PER_IMAGE)
    def create_task():
        # Balance covers one image, start the job
        pass

Only the START of an action is gated. The charge itself is applied by
billing.meter once the cost is known.

Version History:
    2025-12-17: Initial implementation
    2026-01-09: Pre-flight balance guard backed by the usage meter
"""

from functools import wraps
from flask import jsonify
from flask_login import current_user

from billing.meter import usage_meter


def requires_credits(amount: int = 1):
    """
    Decorator that requires the balance to cover `amount` before the view runs.

    Args:
        amount: Minimum balance (1 for chat, CREDITS_PER_IMAGE for images)

    Returns:
        - 401 if not authenticated
        - 402 if insufficient credits (PaymentRequiredError, rendered by the
          blueprint error handler)
        - Proceeds to function otherwise
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({
                    'success': False,
                    'error': 'Authentication required',
                    'code': 'AUTH_REQUIRED'
                }), 401

            usage_meter.ensure_can_start(current_user.id, amount)

            return f(*args, **kwargs)
        return decorated_function
    return decorator
