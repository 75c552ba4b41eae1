# zaptrix_app/services/webhook_parser.py
"""
Turns raw webhook bodies into relay job payloads.

Meta Cloud API posts JSON. Bitrix24 event handlers post either JSON or the
PHP-style form encoding (``data[PARAMS][DIALOG_ID]=chat42``); both shapes are
normalized to a nested dict first.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from ..exceptions import MalformedWebhookError
from ..schemas import InboundMessageJob, OutboundMessageJob

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = 'whatsapp_business_account'
CRM_MESSAGE_EVENT = 'ONIMMESSAGEADD'
UNSUPPORTED_MESSAGE_PLACEHOLDER = '[Unsupported message]'
UNKNOWN_CONTACT_NAME = 'Unknown'

_DIALOG_ID_RE = re.compile(r'^chat(\d+)$')
_FORM_KEY_RE = re.compile(r'\[([^\]]*)\]')


def parse_dialog_id(dialog_id: Any) -> int:
    """'chat42' -> 42. Anything else raises MalformedWebhookError."""
    match = _DIALOG_ID_RE.match(str(dialog_id or '').strip())
    if not match:
        raise MalformedWebhookError(f"Invalid DIALOG_ID format: {dialog_id!r}")
    return int(match.group(1))


def unflatten_form(form: Mapping[str, Any]) -> Dict[str, Any]:
    """{'data[PARAMS][MESSAGE]': 'hi'} -> {'data': {'PARAMS': {'MESSAGE': 'hi'}}}"""
    result: Dict[str, Any] = {}
    for raw_key, value in form.items():
        head, _, rest = raw_key.partition('[')
        parts = [head] + (_FORM_KEY_RE.findall('[' + rest) if rest else [])
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return result


def _message_body(message: Dict[str, Any]) -> str:
    if message.get('type', 'text') == 'text':
        body = (message.get('text') or {}).get('body')
        if body:
            return body
    return UNSUPPORTED_MESSAGE_PLACEHOLDER


def parse_meta_webhook(payload: Any, portal_address: Optional[str] = None) -> List[InboundMessageJob]:
    """
    Extracts one InboundMessageJob per entry[].changes[].value.messages[] item.
    Status updates and other change types produce nothing.
    """
    if not isinstance(payload, dict) or payload.get('object') != WHATSAPP_OBJECT:
        logger.info(f"Ignoring Meta webhook for object {payload.get('object') if isinstance(payload, dict) else None!r}.")
        return []

    jobs: List[InboundMessageJob] = []
    for entry in payload.get('entry') or []:
        for change in (entry or {}).get('changes') or []:
            value = (change or {}).get('value') or {}
            messages = value.get('messages') or []
            if not messages:
                continue
            contacts = value.get('contacts') or []
            contact_name = ((contacts[0] or {}).get('profile') or {}).get('name') if contacts else None
            phone_number_id = (value.get('metadata') or {}).get('phone_number_id')

            for message in messages:
                try:
                    jobs.append(InboundMessageJob(
                        message_id=message['id'],
                        channel_identity=message['from'],
                        contact_name=contact_name or UNKNOWN_CONTACT_NAME,
                        body=_message_body(message),
                        message_type=message.get('type', 'text'),
                        timestamp=message.get('timestamp'),
                        phone_number_id=phone_number_id,
                        portal_address=portal_address,
                    ))
                except (KeyError, TypeError, ValidationError) as e:
                    logger.warning(f"Skipping unreadable WhatsApp message in webhook: {e}")
    logger.debug(f"Meta webhook yielded {len(jobs)} inbound message(s).")
    return jobs


def parse_crm_webhook(payload: Any, portal_address: Optional[str] = None) -> Optional[OutboundMessageJob]:
    """
    Returns an OutboundMessageJob for ONIMMESSAGEADD, None for any other event.
    Raises MalformedWebhookError when the message event lacks its params or message id.
    The dialog id is carried as-is; it is validated by the outbound relay.
    """
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Bitrix24 webhook body is not an object")
    if any('[' in key for key in payload):
        payload = unflatten_form(payload)

    event = str(payload.get('event') or '').upper()
    if event != CRM_MESSAGE_EVENT:
        logger.info(f"Ignoring Bitrix24 event {event or 'N/A'}.")
        return None

    data = payload.get('data') or {}
    params = data.get('PARAMS') if isinstance(data, dict) else None
    if not isinstance(params, dict):
        raise MalformedWebhookError("ONIMMESSAGEADD webhook without data.PARAMS")

    message_id = params.get('MESSAGE_ID')
    if message_id in (None, ''):
        raise MalformedWebhookError("ONIMMESSAGEADD webhook without MESSAGE_ID")

    auth = payload.get('auth') or {}
    domain = auth.get('domain') if isinstance(auth, dict) else None

    try:
        return OutboundMessageJob(
            message_id=str(message_id),
            dialog_id=str(params.get('DIALOG_ID') or ''),
            body=str(params.get('MESSAGE') or ''),
            from_user_id=str(params['FROM_USER_ID']) if params.get('FROM_USER_ID') is not None else None,
            timestamp=str(payload['ts']) if payload.get('ts') is not None else None,
            portal_address=domain or portal_address,
        )
    except ValidationError as e:
        raise MalformedWebhookError(f"Unreadable ONIMMESSAGEADD params: {e}") from e
