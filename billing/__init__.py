"""
billing/__init__.py

Billing and usage-metering module.

Provider-agnostic payment system with:
    - Bank-transfer payment requests (SePay/VietQR, swappable)
    - Exactly-once webhook settlement
    - Prepaid token balance with atomic updates
    - Metered chat and image-generation usage
    - Append-only audit log

Quick Start:
    from billing import init_billing

    # In Flask app:
    app = Flask(__name__)
    init_billing(app)

    # Gate expensive endpoints:
    @app.route('/api/chat', methods=['POST'])
    @requires_credits()
    def chat():
        reply, tokens = run_agent(...)
        usage_meter.charge_synchronous(current_user.id, UsageAction.CHAT, tokens)
        return jsonify({'success': True, 'reply': reply})

Version History:
    2025-12-17: Initial implementation
    2026-01-09: SePay payments, usage meter, image generation
"""

import logging

from billing.db import init_db, get_db, create_all_tables, check_connection
from billing.auth import init_auth
from billing.errors import BillingError
from billing.routes import billing_bp, webhook, handle_billing_error, handle_unexpected_error
from billing.usage_routes import usage_bp, generate_bp
from billing.cli import billing_cli
from billing.service import billing_service, BillingService
from billing.meter import usage_meter, UsageMeter, ChargeOutcome, agent_multiplier
from billing.models import UsageAction
from billing.balance import get_balance, has_credits
from billing.decorators import requires_credits
from billing.config import resolve_plan, get_static_plans, CREDITS_PER_IMAGE


logger = logging.getLogger(__name__)

SEPAY_WEBHOOK_ALIAS = '/api/sepay/webhook'


def init_billing(app):
    """
    Initialize the billing system for a Flask app.

    Call this during app startup:
        app = Flask(__name__)
        init_billing(app)

    This initializes:
        - Database connection (and session cleanup on request teardown)
        - Flask-Login authentication
        - Billing, usage and generation blueprints
        - The /api/sepay/webhook alias
        - JSON error handlers
        - The `flask billing` CLI group
    """
    init_db(app)
    init_auth(app)

    app.register_blueprint(billing_bp)
    app.register_blueprint(usage_bp)
    app.register_blueprint(generate_bp)
    app.add_url_rule(SEPAY_WEBHOOK_ALIAS, endpoint='sepay_webhook', view_func=webhook, methods=['POST'])

    app.register_error_handler(BillingError, handle_billing_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    app.cli.add_command(billing_cli)

    logger.info("Billing system initialized")


__all__ = [
    # Initialization
    'init_billing',
    'init_db',
    'init_auth',
    'create_all_tables',
    'check_connection',

    # Database
    'get_db',

    # Routes
    'billing_bp',
    'usage_bp',
    'generate_bp',

    # Services
    'billing_service',
    'BillingService',
    'usage_meter',
    'UsageMeter',
    'ChargeOutcome',
    'UsageAction',
    'agent_multiplier',

    # Balance
    'get_balance',
    'has_credits',

    # Decorators
    'requires_credits',

    # Config
    'resolve_plan',
    'get_static_plans',
    'CREDITS_PER_IMAGE',
]
