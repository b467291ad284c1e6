"""
API-token authentication for the HTTP surface via Flask-Login.

Every request carries `Authorization: Bearer <token>`; no sessions or
cookies are issued.
"""

import hmac
import logging
from typing import Optional

from flask import current_app, jsonify
from flask_login import UserMixin

from dbsnap import login_manager

logger = logging.getLogger(__name__)


class ApiClient(UserMixin):
    """
    Flask-Login identity for a caller holding the API token.
    """

    id = 'api'

    def get_id(self):
        return self.id


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """
    Parse an Authorization header.

    Returns:
        The token, or None if the header is missing or not a Bearer header
    """
    if not header:
        return None
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return token.strip() or None


def verify_api_token(token: Optional[str], expected: Optional[str]) -> bool:
    """
    Constant-time token comparison.

    An unset expected token locks the API: nothing verifies.
    """
    if not token or not expected:
        return False
    return hmac.compare_digest(token.encode('utf-8'), expected.encode('utf-8'))


def load_api_client(request) -> Optional[ApiClient]:
    token = extract_bearer_token(request.headers.get('Authorization'))
    if verify_api_token(token, current_app.config.get('API_TOKEN')):
        return ApiClient()
    if token:
        logger.warning(f"Rejected API request with invalid token from {request.remote_addr}")
    return None


def unauthorized():
    return jsonify({
        'success': False,
        'error': 'Unauthorized',
        'message': 'A valid API token is required'
    }), 401


def init_auth(app):
    """Wire token authentication into the login manager."""
    login_manager.session_protection = None
    login_manager.request_loader(load_api_client)
    login_manager.unauthorized_handler(unauthorized)

    if not app.config.get('API_TOKEN'):
        app.logger.warning("BACKUP_API_TOKEN is not set - backup API requests will be rejected")
