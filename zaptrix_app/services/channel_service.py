# zaptrix_app/services/channel_service.py
# -*- coding: utf-8 -*-
import hmac
import logging
from typing import Any, Dict, List, Optional

import requests

from ..exceptions import ChannelApiError, TransientApiError

logger = logging.getLogger(__name__)

MEDIA_TYPES = ('image', 'video', 'document', 'audio')
DEFAULT_TEMPLATE_LANGUAGE = 'pt_BR'


def _mask(value: str) -> str:
    return '...' + value[-6:] if value and len(value) > 6 else '***'


class ChannelClient:
    """WhatsApp Cloud API client: webhook verification, text/media/template sends, read receipts."""

    def __init__(self, access_token: Optional[str], phone_number_id: Optional[str],
                 verify_token: Optional[str], api_version: str = 'v18.0',
                 graph_url: str = 'https://graph.facebook.com',
                 http_session: Optional[requests.Session] = None, timeout: float = 30.0,
                 business_account_id: Optional[str] = None):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.verify_token = verify_token
        self.base_url = f"{graph_url.rstrip('/')}/{api_version}"
        self.api_url = f"{self.base_url}/{phone_number_id}/messages"
        self.templates_url = f"{self.base_url}/{business_account_id or phone_number_id}/message_templates"
        self.http = http_session or requests.Session()
        self.timeout = timeout

    def verify_webhook(self, mode: Optional[str], verify_token: Optional[str],
                       challenge: Optional[str]) -> Optional[str]:
        """Returns the challenge to echo back, or None when verification fails."""
        if not self.verify_token:
            logger.error("META_VERIFY_TOKEN not configured. Rejecting webhook verification.")
            return None
        if mode == 'subscribe' and verify_token and challenge is not None \
                and hmac.compare_digest(verify_token, self.verify_token):
            logger.info("Meta webhook verified successfully.")
            return challenge
        logger.warning(f"Meta webhook verification failed (mode={mode}).")
        return None

    def _request(self, method: str, url: str, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.access_token or not self.phone_number_id:
            raise ChannelApiError('NOT_CONFIGURED', 'WhatsApp Cloud API token or phone number id missing')

        headers = {"Authorization": f"Bearer {self.access_token}"}
        kwargs: Dict[str, Any] = {'headers': headers, 'timeout': self.timeout}
        if payload is not None:
            headers["Content-Type"] = "application/json"
            kwargs['json'] = payload
        try:
            if method == 'GET':
                response = self.http.get(url, **kwargs)
            else:
                response = self.http.post(url, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.error(f"WhatsApp API {action} timed out after {self.timeout}s")
            raise TransientApiError(f"WhatsApp {action} timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"WhatsApp API {action} request error: {e}")
            raise TransientApiError(f"WhatsApp {action} request failed: {e}") from e

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}

        if status == 429 or status >= 500:
            logger.error(f"WhatsApp API {action} transient error {status}: {response.text[:500]}")
            raise TransientApiError(f"WhatsApp {action} returned {status}", status_code=status)
        if status >= 400:
            error = body.get('error', {}) if isinstance(body, dict) else {}
            code = str(error.get('code', f"HTTP_{status}"))
            description = error.get('message', response.text[:200])
            logger.error(f"WhatsApp API {action} HTTP error {status}: {code} {description}")
            raise ChannelApiError(code, description, status_code=status)
        return body if isinstance(body, dict) else {}

    def _post(self, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        return self._request('POST', self.api_url, action, payload)

    def _send(self, to: str, message_type: str, content: Dict[str, Any], action: str) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": message_type,
            message_type: content,
        }
        response_json = self._post(payload, action)
        messages = response_json.get("messages")
        if not isinstance(messages, list) or not messages or "id" not in messages[0]:
            logger.error(f"WhatsApp API {action} returned unexpected success structure: {response_json}")
            raise ChannelApiError('UNEXPECTED_RESPONSE', 'No message id in WhatsApp response')
        message_wamid = messages[0]["id"]
        logger.info(f"WhatsApp {message_type} message sent to {_mask(to)}. Message WAMID: {message_wamid}")
        return message_wamid

    def send_message(self, to: str, body: str) -> str:
        return self._send(to, 'text', {"preview_url": False, "body": body}, 'send')

    def send_media(self, to: str, media_type: str, link: str, caption: Optional[str] = None,
                   filename: Optional[str] = None) -> str:
        """Sends media by public URL. Audio carries neither caption nor filename."""
        if media_type not in MEDIA_TYPES:
            raise ChannelApiError('UNSUPPORTED_MEDIA_TYPE', f"Cannot send media of type '{media_type}'")
        content: Dict[str, Any] = {"link": link}
        if media_type != 'audio':
            content["caption"] = caption or ''
        if media_type == 'document':
            content["filename"] = filename or 'document'
        return self._send(to, media_type, content, f"send-{media_type}")

    def send_template(self, to: str, template_name: str, language_code: str = DEFAULT_TEMPLATE_LANGUAGE,
                      parameters: Optional[List[str]] = None,
                      button_payloads: Optional[List[str]] = None) -> str:
        """
        Sends a pre-approved template, the only message type allowed outside
        the 24 hour customer service window. Body parameters and quick-reply
        button payloads are optional.
        """
        components = []
        if parameters:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": param} for param in parameters],
            })
        if button_payloads:
            components.append({
                "type": "button",
                "sub_type": "quick_reply",
                "index": 0,
                "parameters": [{"type": "payload", "payload": payload} for payload in button_payloads],
            })
        content: Dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if components:
            content["components"] = components
        return self._send(to, 'template', content, 'send-template')

    def list_templates(self) -> List[Dict[str, Any]]:
        response_json = self._request('GET', self.templates_url, 'list-templates')
        templates = response_json.get('data') or []
        logger.info(f"Listed {len(templates)} WhatsApp message template(s).")
        return templates

    def mark_as_read(self, message_id: str) -> bool:
        """Best-effort read receipt; failures are logged and swallowed."""
        try:
            self._post({"messaging_product": "whatsapp", "status": "read", "message_id": message_id}, 'mark-read')
        except (TransientApiError, ChannelApiError) as e:
            logger.warning(f"Could not mark message {message_id} as read: {e}")
            return False
        logger.debug(f"Message {message_id} marked as read.")
        return True
