# zaptrix_app/api/webhook_routes.py
"""
Webhook receivers for the WhatsApp Cloud API and Bitrix24.

POST handlers only parse and enqueue, then acknowledge with 200 so the sending
platform never waits on CRM or channel calls. Enqueue failures return 500 so
the platform redelivers; redeliveries are absorbed by the queue dedup.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from ..exceptions import MalformedWebhookError
from ..services.webhook_parser import parse_crm_webhook, parse_meta_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__)


@webhooks_bp.route('/meta', methods=['GET'])
def verify_meta_webhook():
    channel = current_app.extensions['zaptrix'].channel
    challenge = channel.verify_webhook(
        request.args.get('hub.mode'),
        request.args.get('hub.verify_token'),
        request.args.get('hub.challenge'),
    )
    if challenge is None:
        return jsonify({"error": "Invalid verification token"}), 403
    return challenge, 200, {'Content-Type': 'text/plain'}


@webhooks_bp.route('/meta', methods=['POST'])
def receive_meta_webhook():
    components = current_app.extensions['zaptrix']
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        logger.error("Meta webhook with non-JSON body received. Acknowledging and dropping.")
        components.metrics.record_webhook('meta', 'invalid')
        return jsonify({"status": "ignored", "message": "Invalid JSON payload"}), 200

    components.metrics.record_webhook('meta', str(payload.get('object') or 'unknown'))
    jobs = parse_meta_webhook(payload, portal_address=current_app.config.get('BITRIX_PORTAL_URL'))
    if not jobs:
        return jsonify({"status": "ignored"}), 200

    enqueued, duplicates = 0, 0
    try:
        for job in jobs:
            if components.queues.enqueue_inbound(job):
                enqueued += 1
            else:
                duplicates += 1
    except Exception as e:
        logger.error(f"Failed to enqueue inbound WhatsApp messages: {e}", exc_info=True)
        return jsonify({"status": "error", "message": "Could not enqueue messages"}), 500

    logger.info(f"Meta webhook: {enqueued} message(s) enqueued, {duplicates} duplicate(s) skipped.")
    return jsonify({"status": "ok", "enqueued": enqueued, "duplicates": duplicates}), 200


@webhooks_bp.route('/bitrix24/outbound', methods=['POST'])
def receive_bitrix_webhook():
    components = current_app.extensions['zaptrix']
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form.to_dict()

    try:
        job = parse_crm_webhook(payload, portal_address=current_app.config.get('BITRIX_PORTAL_URL'))
    except MalformedWebhookError as e:
        logger.warning(f"Malformed Bitrix24 webhook dropped: {e}")
        components.metrics.record_webhook('bitrix24', 'malformed')
        return jsonify({"status": "ignored", "message": str(e)}), 200

    if job is None:
        components.metrics.record_webhook('bitrix24', 'ignored')
        return jsonify({"status": "ignored"}), 200

    components.metrics.record_webhook('bitrix24', 'ONIMMESSAGEADD')
    try:
        task_id = components.queues.enqueue_outbound(job)
    except Exception as e:
        logger.error(f"Failed to enqueue Bitrix24 message {job.message_id}: {e}", exc_info=True)
        return jsonify({"status": "error", "message": "Could not enqueue message"}), 500

    if task_id is None:
        return jsonify({"status": "duplicate"}), 200
    logger.info(f"Bitrix24 message {job.message_id} from dialog {job.dialog_id} enqueued for relay.")
    return jsonify({"status": "ok"}), 200
