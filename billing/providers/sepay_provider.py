"""
billing/providers/sepay_provider.py

SePay implementation of PaymentProvider.

SePay watches our bank account and POSTs every incoming transfer to the
webhook. The payer scans a VietQR code whose transfer description carries
our transaction reference; that description comes back as `content`.

Supports:
    - VietQR image URLs with bank branding
    - HMAC-SHA256 webhook signature verification
    - Settlement payload parsing

Webhook payload (fields we use):
    {
        "id": 92704,                    # SePay transaction id
        "gateway": "MBBank",
        "content": "TXM5K2J9A1B2C3D4E5 100 Credits",
        "transferAmount": 50000
    }

Version History:
    2026-01-09: Initial implementation
"""

import hmac
import json
import hashlib
import logging
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

from billing.providers.base import PaymentProvider, SettlementNotification
from billing.config import (
    SEPAY_WEBHOOK_SECRET,
    SEPAY_BANK_ACCOUNT,
    SEPAY_BANK_CODE,
    SEPAY_ACCOUNT_NAME,
    SEPAY_SIGNATURE_HEADER,
    VIETQR_IMAGE_BASE_URL,
    VIETQR_TEMPLATE,
)


logger = logging.getLogger(__name__)


def canonical_json(event_data: dict) -> bytes:
    """Compact JSON (key order preserved), the form the signature covers."""
    return json.dumps(event_data, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def sign_payload(event_data: dict, secret: str) -> str:
    """Hex HMAC-SHA256 of the canonical payload."""
    return hmac.new(secret.encode('utf-8'), canonical_json(event_data), hashlib.sha256).hexdigest()


class SepayProvider(PaymentProvider):
    """SePay bank-transfer gateway."""

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        bank_code: Optional[str] = None,
        bank_account: Optional[str] = None,
        account_name: Optional[str] = None,
    ):
        self.webhook_secret = SEPAY_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.bank_code = bank_code or SEPAY_BANK_CODE
        self.bank_account = bank_account or SEPAY_BANK_ACCOUNT
        self.account_name = account_name or SEPAY_ACCOUNT_NAME

    @property
    def name(self) -> str:
        return 'sepay'

    @property
    def signature_header(self) -> str:
        return SEPAY_SIGNATURE_HEADER

    def payee_details(self) -> dict:
        return {
            'bank_code': self.bank_code,
            'account_number': self.bank_account,
        }

    def build_payment_qr(self, amount: int, narration: str) -> str:
        """
        VietQR image URL.

        Format: https://img.vietqr.io/image/{bank}-{account}-{template}.png?amount=..&addInfo=..&accountName=..
        """
        query = urlencode(
            {'amount': amount, 'addInfo': narration, 'accountName': self.account_name},
            quote_via=quote,
        )
        return (
            f"{VIETQR_IMAGE_BASE_URL}/{self.bank_code}-{self.bank_account}-{VIETQR_TEMPLATE}.png"
            f"?{query}"
        )

    def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify the SePay signature header.

        With no secret configured every call is rejected.
        """
        if not self.webhook_secret:
            logger.warning("SEPAY_WEBHOOK_SECRET not configured - rejecting webhook")
            return False, None

        if not signature:
            return False, None

        try:
            event_data = json.loads(payload)
        except (TypeError, ValueError):
            logger.warning("Webhook body is not valid JSON")
            return False, None

        if not isinstance(event_data, dict):
            return False, None

        try:
            expected = sign_payload(event_data, self.webhook_secret)
        except (UnicodeEncodeError, ValueError):
            # e.g. lone surrogate escapes, which parse but cannot be re-encoded
            logger.warning("Webhook body cannot be canonicalised for signing")
            return False, None

        if not hmac.compare_digest(signature.strip().encode('utf-8'), expected.encode('utf-8')):
            return False, None

        return True, event_data

    def parse_settlement(self, event_data: dict) -> Optional[SettlementNotification]:
        try:
            amount = int(event_data.get('transferAmount') or 0)
        except (TypeError, ValueError):
            logger.warning(f"Unparseable transferAmount in SePay event {event_data.get('id')}")
            return None

        return SettlementNotification(
            notification_id=str(event_data.get('id', '')),
            narration=event_data.get('content') or '',
            settled_amount=amount,
            gateway_name=event_data.get('gateway'),
            raw_payload=event_data,
        )


# Singleton instance
_sepay_provider = None


def get_sepay_provider() -> SepayProvider:
    """Get or create SePay provider instance."""
    global _sepay_provider
    if _sepay_provider is None:
        _sepay_provider = SepayProvider()
    return _sepay_provider
