# zaptrix_app/services/crm_service.py
# -*- coding: utf-8 -*-
import logging
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from ..exceptions import CrmApiError, PortalNotConfiguredError, RelayError, TransientApiError
from ..schemas import CrmContact
from ..utils.time_utils import utcnow
from .portal_service import normalize_portal_address
from .token_guardian import TokenGuardian

logger = logging.getLogger(__name__)

TOKEN_ERRORS = {'expired_token', 'invalid_token', 'NO_AUTH_FOUND'}


def _coerce_id(result: Any, method: str) -> int:
    """Bitrix24 answers ids as int, numeric string, or a dict holding one."""
    if isinstance(result, dict):
        for key in ('CHAT_ID', 'chat_id', 'ID', 'id'):
            if key in result:
                return _coerce_id(result[key], method)
    try:
        return int(result)
    except (TypeError, ValueError):
        raise CrmApiError('UNEXPECTED_RESULT', f"{method} returned no usable id: {result!r}")


class CrmClient:
    """
    Bitrix24 REST client bound to a single portal.
    Every call obtains its token from the TokenGuardian right before the request;
    the client itself holds no token state.
    """

    def __init__(self, portal_address: str, guardian: TokenGuardian,
                 http_session: Optional[requests.Session] = None, timeout: float = 30.0,
                 connector: str = 'custom', open_line: str = 'zaptrix',
                 chat_greeting: str = 'Conversation started via WhatsApp'):
        self.portal_address = normalize_portal_address(portal_address)
        self.guardian = guardian
        self.http = http_session or requests.Session()
        self.timeout = timeout
        self.connector = connector
        self.open_line = open_line
        self.chat_greeting = chat_greeting

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        """Internal helper to POST to a Bitrix24 REST method and unwrap 'result'."""
        token = self.guardian.get_access_token(self.portal_address)
        url = f"{self.portal_address}/rest/{method}"
        logger.debug(f"Calling Bitrix24 method {method} on {self.portal_address}")

        try:
            response = self.http.post(url, params={'auth': token}, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"Bitrix24 {method} timed out after {self.timeout}s")
            raise TransientApiError(f"Bitrix24 {method} timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"HTTP error calling Bitrix24 {method}: {e}")
            raise TransientApiError(f"Bitrix24 {method} request failed: {e}") from e

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        error_code = body.get('error') if isinstance(body, dict) else None
        description = body.get('error_description', '') if isinstance(body, dict) else ''
        logger.debug(f"Bitrix24 {method} answered {status} (error: {error_code or 'none'})")

        if error_code in TOKEN_ERRORS:
            logger.warning(f"Bitrix24 rejected the access token for {self.portal_address} ({error_code}).")
            self.guardian.invalidate(self.portal_address)
            raise TransientApiError(f"Bitrix24 token rejected: {error_code}", status_code=status)
        if status == 429 or error_code == 'QUERY_LIMIT_EXCEEDED':
            raise TransientApiError(f"Bitrix24 rate limit hit on {method}", status_code=status)
        if status >= 500:
            logger.error(f"Bitrix24 {method} server error {status}: {response.text[:500]}")
            raise TransientApiError(f"Bitrix24 {method} returned {status}", status_code=status)
        if error_code:
            logger.error(f"Bitrix24 {method} reported failure: {error_code} {description}")
            raise CrmApiError(error_code, description, status_code=status)
        if status >= 400 or not isinstance(body, dict):
            raise CrmApiError(f"HTTP_{status}", response.text[:200], status_code=status)
        return body.get('result')

    def create_contact(self, name: str, phone: str) -> int:
        result = self._call('crm.contact.add', {
            'fields': {
                'NAME': name,
                'PHONE': [{'VALUE': phone, 'VALUE_TYPE': 'WORK'}],
            }
        })
        contact_id = _coerce_id(result, 'crm.contact.add')
        logger.info(f"Contact {contact_id} created in Bitrix24.")
        return contact_id

    def create_chat(self, entity_id: str, title: str) -> int:
        """Opens an Open Line chat bound to the external conversation id."""
        result = self._call('imconnector.send.messages', {
            'CONNECTOR': self.connector,
            'LINE': self.open_line,
            'MESSAGES': [{
                'user': {'id': entity_id, 'name': title},
                'chat': {'id': entity_id},
                'message': {
                    'id': f"open-{entity_id}",
                    'date': int(utcnow().timestamp()),
                    'text': self.chat_greeting,
                },
            }],
        })
        chat_id = _coerce_id(result, 'imconnector.send.messages')
        logger.info(f"Open Line chat {chat_id} created for {entity_id}.")
        return chat_id

    def send_message(self, chat_id: int, body: str, is_system: bool = False) -> int:
        result = self._call('im.message.add', {
            'DIALOG_ID': f"chat{chat_id}",
            'MESSAGE': body,
            'SYSTEM': 'Y' if is_system else 'N',
        })
        message_id = _coerce_id(result, 'im.message.add')
        logger.info(f"Message {message_id} posted to Bitrix24 chat {chat_id}.")
        return message_id

    def find_contact_by_phone(self, phone: str) -> Optional[CrmContact]:
        """Best-effort lookup; any failure is logged and reported as no match."""
        try:
            result = self._call('crm.contact.list', {
                'filter': {'PHONE': phone},
                'select': ['ID', 'NAME', 'LAST_NAME', 'PHONE'],
            })
        except RelayError as e:
            logger.warning(f"Contact lookup by phone failed on {self.portal_address}: {e}")
            return None
        if not isinstance(result, list) or not result:
            return None
        try:
            return CrmContact.model_validate(result[0])
        except ValidationError as e:
            logger.warning(f"Unreadable contact in crm.contact.list response: {e}")
            return None


class CrmClientRegistry:
    """Hands out one explicit CrmClient per portal; nothing is shared implicitly across tenants."""

    def __init__(self, guardian: TokenGuardian, default_portal: Optional[str] = None,
                 http_session: Optional[requests.Session] = None, **client_options):
        self.guardian = guardian
        self.default_portal = normalize_portal_address(default_portal) if default_portal else None
        self.http = http_session or requests.Session()
        self.client_options = client_options
        self._clients: Dict[str, CrmClient] = {}

    def for_portal(self, portal_address: Optional[str] = None) -> CrmClient:
        address = normalize_portal_address(portal_address) if portal_address else self.default_portal
        if not address:
            raise PortalNotConfiguredError(portal_address)
        client = self._clients.get(address)
        if client is None:
            client = CrmClient(address, self.guardian, http_session=self.http, **self.client_options)
            self._clients[address] = client
        return client
