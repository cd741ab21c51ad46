"""
billing/auth.py

Flask-Login wiring for the billing endpoints.

Token issuance and password handling belong to the main application; this
module only loads the account for an authenticated session and makes the
API answer unauthenticated calls with JSON instead of a redirect.

Usage:
    from billing.auth import init_auth

    # In Flask app:
    init_auth(app)

Version History:
    2025-12-17: Initial implementation
    2026-01-09: UUID accounts, JSON 401 for API clients
"""

import uuid
import logging
from typing import Optional

from flask import jsonify
from flask_login import LoginManager

from billing.db import get_db
from billing.models import User


logger = logging.getLogger(__name__)


# =============================================================================
# FLASK-LOGIN SETUP
# =============================================================================

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    """Load an active user by ID for Flask-Login."""
    try:
        user_uuid = uuid.UUID(str(user_id))
    except (TypeError, ValueError):
        return None

    user = get_db().get(User, user_uuid)
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({
        'success': False,
        'error': 'Authentication required',
        'code': 'AUTH_REQUIRED'
    }), 401


def init_auth(app):
    """
    Initialize authentication for Flask app.

    Call during app startup:
        app = Flask(__name__)
        init_auth(app)
    """
    login_manager.init_app(app)
    logger.info("Authentication initialized")
