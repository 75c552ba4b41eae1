# zaptrix_app/api/auth.py
import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)


def require_api_key(view):
    """Guards operator endpoints with the X-API-KEY header."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected_token = current_app.config.get('INTERNAL_SERVICE_API_KEY')
        if not expected_token:
            logger.critical("INTERNAL_SERVICE_API_KEY not configured. Cannot authenticate request.")
            return jsonify({"status": "error", "message": "Server misconfiguration - API key missing"}), 500

        auth_token = request.headers.get('X-API-KEY', '')
        if not hmac.compare_digest(auth_token, expected_token):
            logger.warning(f"Unauthorized {request.path} request. Invalid or missing API key.")
            return jsonify({"status": "error", "message": "Unauthorized"}), 401
        return view(*args, **kwargs)
    return wrapper
