# zaptrix_app/services/relay_service.py
"""
The four relay job handlers.

Handlers raise only retryable errors (TransientApiError, AuthRefreshError,
MappingCreationError) so the queue can retry them with backoff. Every other
failure is caught here and returned as ``JobResult(success=False)``.
Database and Redis failures count as transient.
"""
import logging
from typing import Iterable, Optional, Tuple

import redis
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import (
    ChannelApiError,
    ConflictError,
    MalformedWebhookError,
    MappingCreationError,
    MappingNotFoundError,
    PortalNotConfiguredError,
    RelayError,
    RETRYABLE_ERRORS,
    TransientApiError,
)
from ..schemas import (
    ChannelSendJob,
    CrmSendJob,
    InboundMessageJob,
    JobResult,
    MappingSnapshot,
    OutboundMessageJob,
)
from ..utils.lock_utils import KeyedLock
from .cache_service import DedupMarkerStore
from .channel_service import ChannelClient
from .crm_service import CrmClient, CrmClientRegistry
from .mapping_service import ConversationMapper
from .metrics_service import RelayMetrics
from .webhook_parser import parse_dialog_id

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERRORS = (SQLAlchemyError, redis.RedisError)


class RelayService:

    def __init__(self, mapper: ConversationMapper, crm_clients: CrmClientRegistry, channel: ChannelClient,
                 dedup: DedupMarkerStore, lock: KeyedLock, metrics: Optional[RelayMetrics] = None,
                 system_user_ids: Iterable[str] = ('0',), create_lock_seconds: int = 150):
        self.mapper = mapper
        self.crm_clients = crm_clients
        self.channel = channel
        self.dedup = dedup
        self.lock = lock
        self.metrics = metrics
        self.system_user_ids = frozenset(str(user_id) for user_id in system_user_ids)
        self.create_lock_seconds = create_lock_seconds

    def _finish(self, direction: str, result: JobResult) -> JobResult:
        if self.metrics is not None:
            self.metrics.record_message(direction, result)
        return result

    # --- Inbound: channel -> CRM ---

    def process_inbound(self, job: InboundMessageJob) -> JobResult:
        identity = job.channel_identity
        log_prefix = f"Inbound {job.message_id} from {identity}:"

        if self.dedup.is_processed(job.message_id):
            logger.info(f"{log_prefix} already processed, skipping.")
            return self._finish('inbound', JobResult.ok('duplicate', 'Message already processed'))

        self.channel.mark_as_read(job.message_id)

        try:
            crm = self.crm_clients.for_portal(job.portal_address)
            mapping = self.mapper.find_by_channel_identity(identity)
            created = False
            if mapping is None:
                mapping, created = self._create_mapping(job, crm)
            else:
                self.mapper.touch(identity)
            crm_message_id = crm.send_message(mapping.crm_chat_id, job.body)
        except RETRYABLE_ERRORS:
            raise
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"{log_prefix} storage failure ({type(e).__name__}): {e}")
            raise TransientApiError(f"Storage unavailable while relaying inbound {job.message_id}") from e
        except RelayError as e:
            logger.error(f"{log_prefix} relay failed permanently ({type(e).__name__}): {e}")
            return self._finish('inbound', JobResult.failed('failed', e))

        self.dedup.mark_processed(job.message_id)
        logger.info(f"{log_prefix} relayed to CRM chat {mapping.crm_chat_id} as message {crm_message_id}.")
        return self._finish('inbound', JobResult.ok(
            'relayed',
            'Message relayed to CRM',
            crm_chat_id=mapping.crm_chat_id,
            crm_message_id=crm_message_id,
            mapping_created=created,
        ))

    def _create_mapping(self, job: InboundMessageJob, crm: CrmClient) -> Tuple[MappingSnapshot, bool]:
        """Onboards a new identity. Serialized per identity so concurrent first messages create one chat."""
        identity = job.channel_identity
        with self.lock.hold(f"mapping-create:{identity}", timeout=self.create_lock_seconds,
                            blocking_timeout=self.create_lock_seconds):
            mapping = self.mapper.find_by_channel_identity(identity)
            if mapping is not None:
                logger.info(f"Mapping for identity {identity} was created by a concurrent job.")
                self.mapper.touch(identity)
                return mapping, False

            logger.info(f"New contact detected ({identity}, '{job.contact_name}'). Creating it in the CRM.")
            try:
                existing = crm.find_contact_by_phone(identity)
                contact_id = existing.id if existing else crm.create_contact(job.contact_name, identity)
                chat_id = crm.create_chat(identity, f"WhatsApp: {job.contact_name}")
                return self.mapper.create(identity, contact_id, chat_id, display_name=job.contact_name), True
            except ConflictError as e:
                mapping = self.mapper.find_by_channel_identity(identity)
                if mapping is not None:
                    logger.warning(f"Mapping conflict for identity {identity}; using the existing mapping.")
                    return mapping, False
                raise MappingCreationError(f"Mapping conflict for identity {identity} with no winner: {e}") from e
            except (MappingCreationError, PortalNotConfiguredError):
                raise
            except RelayError as e:
                logger.error(f"Could not onboard identity {identity}: {e}")
                raise MappingCreationError(f"Mapping creation failed for identity {identity}: {e}") from e

    # --- Outbound: CRM -> channel ---

    def process_outbound(self, job: OutboundMessageJob) -> JobResult:
        log_prefix = f"Outbound {job.message_id} ({job.dialog_id}):"
        try:
            chat_id = parse_dialog_id(job.dialog_id)
        except MalformedWebhookError as e:
            logger.warning(f"{log_prefix} {e}. Dropping.")
            return self._finish('outbound', JobResult.failed('malformed', e))

        try:
            mapping = self.mapper.find_by_crm_chat_id(chat_id)
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"{log_prefix} storage failure ({type(e).__name__}): {e}")
            raise TransientApiError(f"Storage unavailable while relaying outbound {job.message_id}") from e
        if mapping is None:
            error = MappingNotFoundError(f"No conversation mapping for CRM chat {chat_id}")
            logger.warning(f"{log_prefix} {error}. Dropping.")
            return self._finish('outbound', JobResult.failed('mapping_not_found', error))

        # A missing author id is treated like the system sentinel.
        if not job.from_user_id or job.from_user_id in self.system_user_ids:
            logger.info(f"{log_prefix} system message from user {job.from_user_id!r}, not relaying.")
            return self._finish('outbound', JobResult.ok('ignored_system_message', 'System message not relayed'))

        try:
            channel_message_id = self.channel.send_message(mapping.channel_identity, job.body)
        except ChannelApiError as e:
            logger.error(f"{log_prefix} channel rejected the message: {e}")
            return self._finish('outbound', JobResult.failed('failed', e))

        self.mapper.touch(mapping.channel_identity)
        logger.info(f"{log_prefix} relayed to {mapping.channel_identity} as {channel_message_id}.")
        return self._finish('outbound', JobResult.ok(
            'relayed',
            'Message relayed to channel',
            channel_identity=mapping.channel_identity,
            channel_message_id=channel_message_id,
        ))

    # --- Direct sends ---

    def send_channel(self, job: ChannelSendJob) -> JobResult:
        try:
            if job.type == 'text':
                channel_message_id = self.channel.send_message(job.to, job.body)
            elif job.type == 'template':
                channel_message_id = self.channel.send_template(
                    job.to, job.template_name, job.language_code,
                    parameters=job.parameters, button_payloads=job.button_payloads)
            else:
                channel_message_id = self.channel.send_media(
                    job.to, job.type, job.media_url, caption=job.caption, filename=job.filename)
        except ChannelApiError as e:
            logger.error(f"Channel {job.type} send to {job.to} failed: {e}")
            return self._finish('channel-send', JobResult.failed('failed', e))
        return self._finish('channel-send', JobResult.ok('sent', channel_message_id=channel_message_id,
                                                         message_type=job.type))

    def send_crm(self, job: CrmSendJob) -> JobResult:
        try:
            crm_message_id = self.crm_clients.for_portal(job.portal_address)\
                .send_message(job.chat_id, job.body, is_system=job.is_system)
        except RETRYABLE_ERRORS:
            raise
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"CRM send to chat {job.chat_id}: storage failure ({type(e).__name__}): {e}")
            raise TransientApiError(f"Storage unavailable while sending to CRM chat {job.chat_id}") from e
        except RelayError as e:
            logger.error(f"CRM send to chat {job.chat_id} failed: {e}")
            return self._finish('crm-send', JobResult.failed('failed', e))
        return self._finish('crm-send', JobResult.ok('sent', crm_message_id=crm_message_id))
