"""
billing/providers/base.py

Abstract base class for payment gateways.

All gateways (SePay, Casso, ...) must implement this interface.
Your app talks to BillingService, which delegates to the active provider.

This allows switching gateways without changing application code.

Methods to implement:
    - build_payment_qr(amount, narration) -> str
    - verify_webhook(payload, signature) -> (is_valid, event_dict)
    - parse_settlement(event_data) -> SettlementNotification

Version History:
    2025-12-17: Initial implementation
    2026-01-09: Bank-transfer gateways (QR + narration correlation)
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Tuple, List

from billing.config import TRANSACTION_REF_PREFIX, TRANSACTION_REF_LENGTH


@dataclass
class SettlementNotification:
    """Parsed settlement webhook: a transfer that reached our account."""
    notification_id: str
    narration: str
    settled_amount: int
    gateway_name: Optional[str] = None
    raw_payload: dict = field(default_factory=dict)


class PaymentProvider(ABC):
    """
    Abstract base class for bank-transfer gateways.

    Implement this for each gateway:
        - SepayProvider
    """

    # Fixed-length TX + alphanumerics; the lookahead also yields overlapping
    # candidates, e.g. when the bank glues its own token to ours
    reference_pattern = re.compile(
        rf'(?=({TRANSACTION_REF_PREFIX}[0-9A-Z]{{{TRANSACTION_REF_LENGTH - len(TRANSACTION_REF_PREFIX)}}}))',
        re.IGNORECASE,
    )

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name (e.g., 'sepay')."""
        pass

    @property
    def signature_header(self) -> str:
        """HTTP header that carries the webhook signature."""
        return 'X-Signature'

    @abstractmethod
    def payee_details(self) -> dict:
        """Bank details stored on each payment request."""
        pass

    @abstractmethod
    def build_payment_qr(self, amount: int, narration: str) -> str:
        """
        Build the QR payload the payer scans.

        Args:
            amount: Amount to transfer
            narration: Transfer description; must contain the reference

        Returns:
            QR payload (string or image URL)
        """
        pass

    @abstractmethod
    def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, Optional[dict]]:
        """
        Verify webhook signature and parse payload.

        Args:
            payload: Raw request body
            signature: Signature header value

        Returns:
            (is_valid, parsed_event_dict)
        """
        pass

    @abstractmethod
    def parse_settlement(self, event_data: dict) -> Optional[SettlementNotification]:
        """
        Parse a verified settlement event.

        Returns:
            SettlementNotification, or None if the payload is unusable
        """
        pass

    def reference_candidates(self, narration: Optional[str]) -> List[str]:
        """
        Every string in the narration shaped like one of our references,
        upper-cased, in order of appearance.

        Banks prefix their own codes, strip spaces, or change case, so the
        caller tries each candidate until one matches a pending payment.
        """
        if not narration:
            return []

        candidates = []
        for match in self.reference_pattern.finditer(narration):
            reference = match.group(1).upper()
            if reference not in candidates:
                candidates.append(reference)
        return candidates
