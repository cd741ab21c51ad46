"""
billing/providers/__init__.py

Payment provider exports.
"""

from billing.providers.base import PaymentProvider, SettlementNotification
from billing.providers.sepay_provider import SepayProvider, get_sepay_provider, sign_payload

__all__ = [
    'PaymentProvider',
    'SettlementNotification',
    'SepayProvider',
    'get_sepay_provider',
    'sign_payload',
]
