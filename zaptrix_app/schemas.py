# zaptrix_app/schemas.py
"""Pydantic models for queue payloads, job results and mapping snapshots."""
import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils.time_utils import ensure_utc


class MappingSnapshot(BaseModel):
    """Detached, immutable view of a conversation mapping. Also the cache format."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    channel_identity: str
    crm_contact_id: int
    crm_chat_id: int
    display_name: Optional[str] = None
    last_message_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    @field_validator('last_message_at', 'created_at', 'updated_at')
    @classmethod
    def _as_utc(cls, value):
        return ensure_utc(value)


class CrmContact(BaseModel):
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    id: int = Field(alias='ID')
    name: Optional[str] = Field(default=None, alias='NAME')
    last_name: Optional[str] = Field(default=None, alias='LAST_NAME')


# --- Job payloads ---

class InboundMessageJob(BaseModel):
    message_id: str
    channel_identity: str
    contact_name: str = 'Unknown'
    body: str
    message_type: str = 'text'
    timestamp: Optional[str] = None
    phone_number_id: Optional[str] = None
    portal_address: Optional[str] = None


class OutboundMessageJob(BaseModel):
    message_id: str
    dialog_id: str
    body: str = ''
    from_user_id: Optional[str] = None
    timestamp: Optional[str] = None
    portal_address: Optional[str] = None


class ChannelSendJob(BaseModel):
    """An operator-initiated send. ``type`` selects which content fields are required."""
    to: str = Field(min_length=1)
    type: Literal['text', 'image', 'video', 'document', 'audio', 'template'] = 'text'
    body: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    template_name: Optional[str] = None
    language_code: str = 'pt_BR'
    parameters: List[str] = Field(default_factory=list)
    button_payloads: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def _check_content(self):
        if self.type == 'text' and not self.body:
            raise ValueError("'body' is required for text messages")
        if self.type == 'template' and not self.template_name:
            raise ValueError("'template_name' is required for template messages")
        if self.type not in ('text', 'template') and not self.media_url:
            raise ValueError(f"'media_url' is required for {self.type} messages")
        return self


class CrmSendJob(BaseModel):
    chat_id: int
    body: str = Field(min_length=1)
    is_system: bool = False
    portal_address: Optional[str] = None


class JobResult(BaseModel):
    """Structured completion record returned by every relay handler."""
    success: bool
    status: str
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, status: str, message: Optional[str] = None, **data) -> 'JobResult':
        return cls(success=True, status=status, message=message, data=data)

    @classmethod
    def failed(cls, status: str, error: Exception) -> 'JobResult':
        return cls(success=False, status=status, error=str(error), error_type=type(error).__name__)
