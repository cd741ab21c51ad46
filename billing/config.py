"""
billing/config.py

Billing configuration and plan definitions.

Design principles:
    1. Plans defined HERE, not at the gateway
    2. Payment amounts are integers in the gateway currency (VND)
    3. Usage cost is tracked as Decimal US cents (avoid floating point)
    4. Every tunable comes from the environment with a dev default

Plan Catalog:
    - credits_100:   100 credits
    - credits_500:   500 credits
    - credits_1000:  1,000 credits
    - pro_monthly:   2,000 credits + 30 days of Pro
    - tokens_<N>:    N credits, 0 < N <= 100,000,000 (parametric family)

Version History:
    2025-12-17: Initial implementation
    2026-01-09: Bank-transfer gateway (SePay/VietQR), parametric token plans
"""

import os
import re
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from enum import Enum


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# =============================================================================
# GATEWAY CONFIGURATION (SePay bank transfers)
# =============================================================================

APP_ENV = os.environ.get('APP_ENV', 'development')

SEPAY_WEBHOOK_SECRET = os.environ.get('SEPAY_WEBHOOK_SECRET', '')
SEPAY_BANK_ACCOUNT = os.environ.get('SEPAY_BANK_ACCOUNT', '0123456789')
SEPAY_BANK_CODE = os.environ.get('SEPAY_BANK_CODE', 'MB')
SEPAY_ACCOUNT_NAME = os.environ.get('SEPAY_ACCOUNT_NAME', 'NGUYEN VAN A')

SEPAY_SIGNATURE_HEADER = 'X-SePay-Signature'

# Comma-separated IPs or CIDR blocks the gateway calls us from
SEPAY_ALLOWED_IPS = [
    ip.strip() for ip in os.environ.get('SEPAY_ALLOWED_IPS', '').split(',') if ip.strip()
]
WEBHOOK_IP_CHECK_ENABLED = _env_flag(
    'WEBHOOK_IP_CHECK',
    default=(APP_ENV == 'production' and bool(SEPAY_ALLOWED_IPS)),
)

VIETQR_IMAGE_BASE_URL = 'https://img.vietqr.io/image'
VIETQR_TEMPLATE = 'compact2'

if not SEPAY_WEBHOOK_SECRET:
    logger.warning("SEPAY_WEBHOOK_SECRET not set - settlement webhooks will be rejected")


# =============================================================================
# PLAN DEFINITIONS
# =============================================================================

class PlanCode(str, Enum):
    """Static plan codes."""
    CREDITS_100 = 'credits_100'
    CREDITS_500 = 'credits_500'
    CREDITS_1000 = 'credits_1000'
    PRO_MONTHLY = 'pro_monthly'


@dataclass(frozen=True)
class Plan:
    """Plan definition."""
    code: str
    name: str
    credits: int
    is_pro: bool = False
    pro_days: Optional[int] = None

    @property
    def grants_pro(self) -> bool:
        """True if settling this plan opens (or extends) a Pro window."""
        return self.is_pro and bool(self.pro_days)


# The static catalog - source of truth
STATIC_PLANS: Dict[str, Plan] = {
    PlanCode.CREDITS_100.value: Plan(
        code=PlanCode.CREDITS_100.value,
        name='100 Credits',
        credits=100,
    ),
    PlanCode.CREDITS_500.value: Plan(
        code=PlanCode.CREDITS_500.value,
        name='500 Credits',
        credits=500,
    ),
    PlanCode.CREDITS_1000.value: Plan(
        code=PlanCode.CREDITS_1000.value,
        name='1,000 Credits',
        credits=1000,
    ),
    PlanCode.PRO_MONTHLY.value: Plan(
        code=PlanCode.PRO_MONTHLY.value,
        name='Pro Monthly',
        credits=2000,
        is_pro=True,
        pro_days=30,
    ),
}

TOKEN_PLAN_PATTERN = re.compile(r'^tokens_(\d+)$')
MAX_TOKEN_PLAN = 100_000_000


def resolve_plan(plan_id: Optional[str]) -> Optional[Plan]:
    """
    Resolve a plan id to a Plan.

    Tries the static catalog first, then the tokens_<N> family.

    Returns:
        Plan, or None if the id is unknown or out of range
    """
    if not plan_id or not isinstance(plan_id, str):
        return None

    plan = STATIC_PLANS.get(plan_id)
    if plan:
        return plan

    match = TOKEN_PLAN_PATTERN.match(plan_id)
    if match:
        tokens = int(match.group(1))
        if 0 < tokens <= MAX_TOKEN_PLAN:
            return Plan(code=plan_id, name=f'{tokens:,} Tokens', credits=tokens)

    return None


def get_static_plans() -> list[Plan]:
    """Get the fixed catalog (the tokens_<N> family is not enumerable)."""
    return list(STATIC_PLANS.values())


# =============================================================================
# BUSINESS RULES
# =============================================================================

# Payment request lifetime
PAYMENT_TTL_MINUTES = int(os.environ.get('PAYMENT_TTL_MINUTES', '15'))

# Transaction reference: prefix + base36 epoch millis (zero-padded) + 8 hex chars
TRANSACTION_REF_PREFIX = 'TX'
TRANSACTION_REF_TIME_DIGITS = 8
TRANSACTION_REF_LENGTH = len(TRANSACTION_REF_PREFIX) + TRANSACTION_REF_TIME_DIGITS + 8

# Image generation is billed per successful image
CREDITS_PER_IMAGE = int(os.environ.get('CREDITS_PER_IMAGE', '18'))

# Money value of usage, in US cents
CREDIT_PRICE_CENTS = Decimal(os.environ.get('CREDIT_PRICE_CENTS', '0.5'))
TOKEN_PRICE_PER_1K_CENTS = Decimal(os.environ.get('TOKEN_PRICE_PER_1K_CENTS', '0.1'))

# Pro-tier chat agents cost more tokens
PRO_TOKEN_MULTIPLIER = int(os.environ.get('PRO_TOKEN_MULTIPLIER', '2'))

# Payment history page size
PAYMENT_HISTORY_LIMIT = 50


# =============================================================================
# IMAGE GENERATION JOB API
# =============================================================================

KIE_API_KEY = os.environ.get('KIE_API_KEY', '')
KIE_API_BASE_URL = os.environ.get('KIE_API_BASE_URL', 'https://api.kie.ai/api/v1/jobs')
KIE_MODEL = os.environ.get('KIE_MODEL', 'nano-banana-pro')
KIE_TIMEOUT_SECONDS = float(os.environ.get('KIE_TIMEOUT_SECONDS', '30'))


def format_plan_report() -> str:
    """Render the static catalog as a fixed-width table."""
    lines = [
        "=" * 56,
        f"{'Plan':<16} {'Name':<16} {'Credits':>8} {'Pro days':>10}",
        "-" * 56,
    ]
    for plan in get_static_plans():
        lines.append(
            f"{plan.code:<16} "
            f"{plan.name:<16} "
            f"{plan.credits:>8} "
            f"{(plan.pro_days or '-'):>10}"
        )
    lines.append("=" * 56)
    lines.append(f"tokens_<N>: N credits, 1 <= N <= {MAX_TOKEN_PLAN:,}")
    return "\n".join(lines)
