# zaptrix_app/models/__init__.py
# Defines the declarative Base shared by every ORM model.

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models AFTER defining Base, so they register with its metadata
# (needed by Base.metadata.create_all() and Flask-Migrate).
from .conversation_mapping import ConversationMapping  # noqa: E402
from .portal_credential import PortalCredential  # noqa: E402
