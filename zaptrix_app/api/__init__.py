# zaptrix_app/api/__init__.py
from flask import Blueprint

# Operator-facing blueprint, registered under /api by the app factory.
# The webhook receivers live on their own blueprint in webhook_routes.py.
api_bp = Blueprint('api', __name__)

from . import routes, portal_routes, message_routes  # noqa: E402,F401
