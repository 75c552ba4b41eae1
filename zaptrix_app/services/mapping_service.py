# zaptrix_app/services/mapping_service.py
import logging
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..exceptions import ConflictError, TransientApiError
from ..models.conversation_mapping import ConversationMapping
from ..schemas import MappingSnapshot
from ..utils import db_utils
from ..utils.time_utils import utcnow
from .cache_service import MappingCache

logger = logging.getLogger(__name__)


class ConversationMapper:
    """
    The only component that reads or writes conversation mappings.
    Lookups go cache first, then the table; table hits repopulate the cache
    under both keys. The table is authoritative, the cache is best-effort.
    """

    def __init__(self, cache: MappingCache, session_scope: Callable = db_utils.get_db_session):
        self.cache = cache
        self.session_scope = session_scope

    def _require(self, session, action: str):
        if not session:
            logger.error(f"Cannot {action}: DB session not available.")
            raise TransientApiError(f"Database unavailable while trying to {action}")
        return session

    @contextmanager
    def _session(self, action: str):
        """A required session; database failures other than constraint violations surface as TransientApiError."""
        try:
            with self.session_scope() as session:
                yield self._require(session, action)
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while trying to {action}: {e}")
            raise TransientApiError(f"Database error while trying to {action}") from e

    def _lookup(self, criterion, label: str) -> Optional[MappingSnapshot]:
        with self._session(f"look up mapping by {label}") as session:
            row = session.query(ConversationMapping).filter(criterion).first()
            if not row:
                return None
            return MappingSnapshot.model_validate(row)

    def find_by_channel_identity(self, channel_identity: str) -> Optional[MappingSnapshot]:
        cached = self.cache.get_by_channel_identity(channel_identity)
        if cached:
            logger.debug(f"Mapping cache hit for identity {channel_identity}.")
            return cached

        mapping = self._lookup(ConversationMapping.channel_identity == channel_identity,
                               f"identity {channel_identity}")
        if mapping:
            self.cache.set_mapping(mapping)
        else:
            logger.debug(f"No mapping found for identity {channel_identity}.")
        return mapping

    def find_by_crm_chat_id(self, crm_chat_id: int) -> Optional[MappingSnapshot]:
        cached = self.cache.get_by_crm_chat_id(crm_chat_id)
        if cached:
            logger.debug(f"Mapping cache hit for CRM chat {crm_chat_id}.")
            return cached

        mapping = self._lookup(ConversationMapping.crm_chat_id == crm_chat_id, f"CRM chat {crm_chat_id}")
        if mapping:
            self.cache.set_mapping(mapping)
        else:
            logger.debug(f"No mapping found for CRM chat {crm_chat_id}.")
        return mapping

    def exists(self, channel_identity: str) -> bool:
        return self.find_by_channel_identity(channel_identity) is not None

    def create(self, channel_identity: str, crm_contact_id: int, crm_chat_id: int,
               display_name: Optional[str] = None) -> MappingSnapshot:
        """
        Persists a new mapping, then caches it under both keys.
        Raises ConflictError when either the identity or the chat id is already mapped.
        """
        try:
            with self._session(f"create mapping for identity {channel_identity}") as session:
                existing = session.query(ConversationMapping).filter(or_(
                    ConversationMapping.channel_identity == channel_identity,
                    ConversationMapping.crm_chat_id == crm_chat_id,
                )).first()
                if existing:
                    logger.warning(f"Refusing to create mapping for identity {channel_identity} / chat {crm_chat_id}: "
                                   f"already mapped to identity {existing.channel_identity} / chat {existing.crm_chat_id}.")
                    raise ConflictError(channel_identity, crm_chat_id)

                now = utcnow()
                row = ConversationMapping(
                    channel_identity=channel_identity,
                    crm_contact_id=crm_contact_id,
                    crm_chat_id=crm_chat_id,
                    display_name=display_name,
                    last_message_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                mapping = MappingSnapshot.model_validate(row)
        except IntegrityError as e:
            logger.warning(f"Unique constraint rejected mapping for identity {channel_identity}: {e.orig}")
            raise ConflictError(channel_identity, crm_chat_id) from e

        logger.info(f"New conversation mapping created: identity {channel_identity} -> "
                    f"contact {crm_contact_id}, chat {crm_chat_id}.")
        if not self.cache.set_mapping(mapping):
            logger.warning(f"Mapping for identity {channel_identity} persisted but not cached.")
        return mapping

    def touch(self, channel_identity: str) -> None:
        """Updates last_message_at. Never raises."""
        try:
            with self.session_scope() as session:
                if not session:
                    logger.error(f"Cannot touch mapping for identity {channel_identity}: DB session not available.")
                    return
                now = utcnow()
                updated = session.query(ConversationMapping)\
                    .filter(ConversationMapping.channel_identity == channel_identity)\
                    .update({'last_message_at': now, 'updated_at': now}, synchronize_session=False)
                if not updated:
                    logger.warning(f"Touch found no mapping for identity {channel_identity}.")
        except SQLAlchemyError as e:
            logger.error(f"Error updating last_message_at for identity {channel_identity}: {e}")

    def update_display_name(self, channel_identity: str, display_name: str) -> None:
        """Best-effort rename; refreshes both cache entries."""
        try:
            with self.session_scope() as session:
                if not session:
                    return
                row = session.query(ConversationMapping).filter_by(channel_identity=channel_identity).first()
                if not row or row.display_name == display_name:
                    return
                row.display_name = display_name
                session.flush()
                mapping = MappingSnapshot.model_validate(row)
        except SQLAlchemyError as e:
            logger.error(f"Error updating display name for identity {channel_identity}: {e}")
            return
        self.cache.set_mapping(mapping)

    def delete(self, channel_identity: str) -> bool:
        """Operator action. Resolves the chat id first so the reverse cache key is invalidated too."""
        mapping = self.find_by_channel_identity(channel_identity)
        if not mapping:
            logger.info(f"No mapping to delete for identity {channel_identity}.")
            return False

        self.cache.delete_mapping(channel_identity, mapping.crm_chat_id)
        with self._session(f"delete mapping for identity {channel_identity}") as session:
            deleted = session.query(ConversationMapping)\
                .filter(ConversationMapping.channel_identity == channel_identity)\
                .delete(synchronize_session=False)
        logger.info(f"Conversation mapping removed for identity {channel_identity} (rows: {deleted}).")
        return bool(deleted)
