# zaptrix_app/services/components.py
"""Explicit wiring of the relay components. One container per Flask app."""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import redis
import requests

from ..utils.lock_utils import KeyedLock
from .cache_service import DedupMarkerStore, MappingCache, get_redis_client
from .channel_service import ChannelClient
from .crm_service import CrmClientRegistry
from .mapping_service import ConversationMapper
from .metrics_service import RelayMetrics
from .portal_service import PortalService
from .queue_service import QueueService
from .relay_service import RelayService
from .token_guardian import TokenGuardian

logger = logging.getLogger(__name__)


@dataclass
class Components:
    redis: redis.Redis
    cache: MappingCache
    dedup: DedupMarkerStore
    lock: KeyedLock
    portals: PortalService
    mapper: ConversationMapper
    guardian: TokenGuardian
    crm_clients: CrmClientRegistry
    channel: ChannelClient
    metrics: RelayMetrics
    relay: RelayService
    queues: QueueService


def build_components(config: Mapping, redis_client: Optional[redis.Redis] = None,
                     broker_client: Optional[redis.Redis] = None, lock: Optional[KeyedLock] = None,
                     http_session: Optional[requests.Session] = None) -> Components:
    """Builds every component from a Flask config mapping. Clients can be injected for tests."""
    redis_client = redis_client if redis_client is not None else get_redis_client(config['REDIS_URL'])
    broker_url = str(config.get('broker_url') or '')
    if broker_client is None and broker_url.startswith(('redis://', 'rediss://')):
        broker_client = get_redis_client(broker_url)
    lock = lock if lock is not None else KeyedLock(redis_client)
    http = http_session or requests.Session()
    timeout = config.get('HTTP_TIMEOUT_SECONDS', 30)

    cache = MappingCache(redis_client, ttl_seconds=config.get('MAPPING_CACHE_TTL_SECONDS', 3600))
    dedup = DedupMarkerStore(redis_client, ttl_seconds=config.get('DEDUP_TTL_SECONDS', 300))
    portals = PortalService()
    mapper = ConversationMapper(cache)
    guardian = TokenGuardian(
        portals,
        http_session=http,
        lock=lock,
        refresh_margin_seconds=config.get('TOKEN_REFRESH_MARGIN_SECONDS', 300),
        timeout=timeout,
        lock_timeout_seconds=config.get('TOKEN_REFRESH_LOCK_SECONDS', 45),
    )
    crm_clients = CrmClientRegistry(
        guardian,
        default_portal=config.get('BITRIX_PORTAL_URL'),
        http_session=http,
        timeout=timeout,
        connector=config.get('BITRIX_CONNECTOR', 'custom'),
        open_line=config.get('BITRIX_OPEN_LINE', 'zaptrix'),
        chat_greeting=config.get('BITRIX_CHAT_GREETING', 'Conversation started via WhatsApp'),
    )
    channel = ChannelClient(
        access_token=config.get('META_ACCESS_TOKEN'),
        phone_number_id=config.get('META_PHONE_NUMBER_ID'),
        business_account_id=config.get('META_BUSINESS_ACCOUNT_ID'),
        verify_token=config.get('META_VERIFY_TOKEN'),
        api_version=config.get('META_API_VERSION', 'v18.0'),
        graph_url=config.get('META_GRAPH_URL', 'https://graph.facebook.com'),
        http_session=http,
        timeout=timeout,
    )
    metrics = RelayMetrics()
    relay = RelayService(
        mapper,
        crm_clients,
        channel,
        dedup,
        lock,
        metrics=metrics,
        system_user_ids=config.get('BITRIX_SYSTEM_USER_IDS') or {'0'},
        create_lock_seconds=config.get('MAPPING_CREATE_LOCK_SECONDS') or int(timeout * 4 + 30),
    )
    queues = QueueService(
        redis_client,
        broker_client=broker_client,
        retention_seconds=config.get('QUEUE_JOB_RETENTION_SECONDS', 24 * 3600),
        metrics=metrics,
    )
    logger.info("Relay components wired.")
    return Components(redis_client, cache, dedup, lock, portals, mapper, guardian,
                      crm_clients, channel, metrics, relay, queues)
