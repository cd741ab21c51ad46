"""
app.py

Flask application for the billing and usage-metering service.

Run:
    flask --app app run
    flask --app app billing expire-payments

Environment:
    DATABASE_URL       - PostgreSQL URL (SQLite accepted for local dev)
    SECRET_KEY         - Flask session signing key
    TRUST_PROXY_HOPS   - Reverse proxies in front of the app (default 0).
                         When set, the client address is taken from
                         X-Forwarded-For through ProxyFix.

Version History:
    2025-12-05: Initial implementation
    2026-01-09: App factory, billing/usage/generation blueprints
"""

import os
import logging

from flask import Flask, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from billing import init_billing
from billing.config import APP_ENV, SEPAY_ALLOWED_IPS, WEBHOOK_IP_CHECK_ENABLED


logger = logging.getLogger(__name__)


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or os.environ.get('LOG_LEVEL', 'INFO')).upper(),
        format='[%(name)s] %(levelname)s: %(message)s',
    )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(config: dict = None) -> Flask:
    """
    Build the Flask app.

    Args:
        config: Overrides applied on top of the environment defaults
                (tests pass DATABASE_URL, TESTING, WEBHOOK_IP_CHECK...)
    """
    configure_logging()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-key-change-in-prod')
    app.config['MAX_CONTENT_LENGTH'] = 1 * 1024 * 1024  # JSON only
    app.config['DATABASE_URL'] = os.environ.get('DATABASE_URL')
    app.config['TRUST_PROXY_HOPS'] = int(os.environ.get('TRUST_PROXY_HOPS', '0'))
    app.config['SEPAY_ALLOWED_IPS'] = SEPAY_ALLOWED_IPS
    app.config['WEBHOOK_IP_CHECK'] = WEBHOOK_IP_CHECK_ENABLED

    if config:
        app.config.update(config)

    hops = app.config['TRUST_PROXY_HOPS']
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)

    init_billing(app)

    @app.route('/')
    def index():
        return jsonify({'service': 'billing', 'env': APP_ENV})

    logger.info(f"App created (env={APP_ENV})")
    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port, debug=APP_ENV != 'production')
