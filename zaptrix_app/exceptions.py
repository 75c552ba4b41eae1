# zaptrix_app/exceptions.py
"""
Error taxonomy for the relay pipeline.

Every error carries a ``retryable`` flag. Celery tasks retry only on retryable
errors; everything else is reported as a structured failure result so the queue
does not spend its retry budget on conditions that cannot fix themselves.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for all relay pipeline errors."""
    retryable = False

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message


# --- Retryable ---

class TransientApiError(RelayError):
    """Network failure, timeout, rate limit or upstream 5xx."""
    retryable = True

    def __init__(self, message: str = '', status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthRefreshError(RelayError):
    """The OAuth refresh-token exchange failed for a tenant."""
    retryable = True

    def __init__(self, portal_address: str, message: str = ''):
        super().__init__(message or f"Token refresh failed for portal {portal_address}")
        self.portal_address = portal_address


class MappingCreationError(TransientApiError):
    """Contact, chat or mapping creation failed while onboarding a new identity."""


# --- Non-retryable ---

class ConflictError(RelayError):
    """A mapping already exists for the channel identity or the CRM chat id."""

    def __init__(self, channel_identity: str, crm_chat_id: Optional[int] = None, message: str = ''):
        super().__init__(message or f"Mapping already exists for identity {channel_identity} / chat {crm_chat_id}")
        self.channel_identity = channel_identity
        self.crm_chat_id = crm_chat_id


class PortalNotConfiguredError(RelayError):
    """No credential record exists for the tenant."""

    def __init__(self, portal_address: Optional[str]):
        super().__init__(f"Portal not configured: {portal_address}")
        self.portal_address = portal_address


class MappingNotFoundError(RelayError):
    """No conversation mapping exists for an outbound relay target."""


class MalformedWebhookError(RelayError):
    """Webhook payload could not be parsed (missing fields, bad dialog id, ...)."""


class CrmApiError(RelayError):
    """The CRM answered with an error body or a non-transient error status."""

    def __init__(self, code: str, description: str = '', status_code: Optional[int] = None):
        super().__init__(f"{code}: {description}" if description else code)
        self.code = code
        self.description = description
        self.status_code = status_code


class ChannelApiError(RelayError):
    """The messaging channel rejected a request with a non-transient error."""

    def __init__(self, code: str, description: str = '', status_code: Optional[int] = None):
        super().__init__(f"{code}: {description}" if description else code)
        self.code = code
        self.description = description
        self.status_code = status_code


RETRYABLE_ERRORS = (TransientApiError, AuthRefreshError)
