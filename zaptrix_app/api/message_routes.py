# zaptrix_app/api/message_routes.py

import logging
from typing import Any, Dict, Optional

from flask import current_app, jsonify, request
from pydantic import ValidationError

from ..exceptions import ChannelApiError, TransientApiError
from ..schemas import ChannelSendJob, CrmSendJob
from . import api_bp
from .auth import require_api_key

logger = logging.getLogger(__name__)


def _enqueue(model, enqueue_attr: str, label: str, overrides: Optional[Dict[str, Any]] = None):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    payload.update(overrides or {})
    try:
        job = model.model_validate(payload)
    except ValidationError as val_err:
        return jsonify({"status": "error", "message": f"Invalid {label} payload",
                        "errors": val_err.errors(include_url=False, include_context=False,
                                                 include_input=False)}), 400

    try:
        task_id = getattr(current_app.extensions['zaptrix'].queues, enqueue_attr)(job)
    except Exception as e:
        logger.error(f"Failed to enqueue {label} job: {e}", exc_info=True)
        return jsonify({"status": "error", "message": "Could not enqueue job"}), 500

    return jsonify({"status": "accepted", "job_id": task_id}), 202


@api_bp.route('/messages/channel', methods=['POST'])
@require_api_key
def send_channel_message():
    """Queues a WhatsApp message of any supported type (text by default)."""
    return _enqueue(ChannelSendJob, 'enqueue_channel_send', 'channel message')


@api_bp.route('/messages/<any(image, video, document, audio):media_type>', methods=['POST'])
@require_api_key
def send_media_message(media_type):
    """Queues a media message sent by public URL."""
    return _enqueue(ChannelSendJob, 'enqueue_channel_send', f"{media_type} message", {'type': media_type})


@api_bp.route('/messages/template', methods=['POST'])
@require_api_key
def send_template_message():
    return _enqueue(ChannelSendJob, 'enqueue_channel_send', 'template message', {'type': 'template'})


@api_bp.route('/messages/templates', methods=['GET'])
@require_api_key
def list_message_templates():
    """Approved WhatsApp templates, fetched live from the Graph API."""
    try:
        templates = current_app.extensions['zaptrix'].channel.list_templates()
    except TransientApiError as e:
        return jsonify({"status": "error", "message": str(e)}), 503
    except ChannelApiError as e:
        return jsonify({"status": "error", "message": str(e), "code": e.code}), 502
    return jsonify({"status": "ok", "templates": templates}), 200


@api_bp.route('/messages/crm', methods=['POST'])
@require_api_key
def send_crm_message():
    """Queues a message into an existing Bitrix24 chat."""
    return _enqueue(CrmSendJob, 'enqueue_crm_send', 'CRM message')
