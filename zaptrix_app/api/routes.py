# zaptrix_app/api/routes.py

import logging

from flask import Response, current_app, jsonify

from ..utils import db_utils
from . import api_bp

logger = logging.getLogger(__name__)


@api_bp.route('/health', methods=['GET'])
def health_check():
    components = current_app.extensions['zaptrix']
    db_ok = db_utils.check_connection()
    redis_ok = components.cache.ping()
    status = "ok" if db_ok and redis_ok else "degraded"
    if status != "ok":
        logger.warning(f"Health check degraded (database={db_ok}, redis={redis_ok}).")
    return jsonify({
        "status": status,
        "database_connected": db_ok,
        "redis_connected": redis_ok,
    }), 200 if status == "ok" else 503


@api_bp.route('/metrics', methods=['GET'])
def metrics():
    relay_metrics = current_app.extensions['zaptrix'].metrics
    return Response(relay_metrics.render(), content_type=relay_metrics.content_type)


@api_bp.route('/queues/stats', methods=['GET'])
def queue_stats():
    components = current_app.extensions['zaptrix']
    return jsonify({
        "status": "ok",
        "queues": components.queues.get_queue_stats(),
        "cache": components.cache.get_stats(),
    }), 200
