# zaptrix_app/models/portal_credential.py
import uuid
from sqlalchemy import Column, String, Text, DateTime

from . import Base
from ..utils.time_utils import utcnow


class PortalCredential(Base):
    """
    OAuth state of one Bitrix24 portal (tenant).
    Token columns are rotated only by the token refresh cycle.
    """
    __tablename__ = 'portal_credentials'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    portal_address = Column(String(255), nullable=False, unique=True, index=True)
    client_id = Column(String(255), nullable=False)
    client_secret = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<PortalCredential(portal_address='{self.portal_address}', expires_at={self.token_expires_at})>"
