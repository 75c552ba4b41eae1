# zaptrix_app/models/conversation_mapping.py
import uuid
from sqlalchemy import Column, String, BigInteger, DateTime, UniqueConstraint

from . import Base
from ..utils.time_utils import utcnow


class ConversationMapping(Base):
    """
    SQLAlchemy ORM model for the 'conversation_mappings' table.
    Links a WhatsApp identity to the Bitrix24 contact and Open Line chat
    created for it. Both CRM identifiers are written in the same insert.
    """
    __tablename__ = 'conversation_mappings'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_identity = Column(String(64), nullable=False, index=True)
    crm_contact_id = Column(BigInteger, nullable=False)
    crm_chat_id = Column(BigInteger, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    last_message_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('channel_identity', name='uq_conversation_mappings_channel_identity'),
        UniqueConstraint('crm_chat_id', name='uq_conversation_mappings_crm_chat_id'),
    )

    def __repr__(self):
        return (f"<ConversationMapping(channel_identity='{self.channel_identity}', "
                f"crm_contact_id={self.crm_contact_id}, crm_chat_id={self.crm_chat_id})>")
