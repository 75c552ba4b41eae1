# zaptrix_app/services/cache_service.py
# -*- coding: utf-8 -*-
import logging
from typing import Optional, Dict, Any

import redis
from pydantic import ValidationError

from ..schemas import MappingSnapshot

logger = logging.getLogger(__name__)

CHANNEL_KEY_PREFIX = 'mapping:channel:'
CRM_KEY_PREFIX = 'mapping:crm:'
DEDUP_KEY_PREFIX = 'msg:processed:'


def get_redis_client(redis_url: str) -> redis.Redis:
    return redis.Redis.from_url(redis_url, decode_responses=True)


class MappingCache:
    """
    Write-through cache in front of the conversation_mappings table.
    Every mapping is stored twice, under the channel identity and under the
    CRM chat id, because Redis offers no secondary index.
    Failures are logged and reported as misses; the table stays authoritative.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 3600):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def channel_key(channel_identity: str) -> str:
        return f"{CHANNEL_KEY_PREFIX}{channel_identity}"

    @staticmethod
    def crm_key(crm_chat_id: int) -> str:
        return f"{CRM_KEY_PREFIX}{crm_chat_id}"

    def set_mapping(self, mapping: MappingSnapshot) -> bool:
        payload = mapping.model_dump_json()
        try:
            pipe = self.redis.pipeline()
            pipe.setex(self.channel_key(mapping.channel_identity), self.ttl_seconds, payload)
            pipe.setex(self.crm_key(mapping.crm_chat_id), self.ttl_seconds, payload)
            pipe.execute()
            logger.debug(f"Mapping cached for identity {mapping.channel_identity} / chat {mapping.crm_chat_id}.")
            return True
        except redis.RedisError as e:
            logger.error(f"Error caching mapping for identity {mapping.channel_identity}: {e}")
            return False

    def _get(self, key: str) -> Optional[MappingSnapshot]:
        try:
            data = self.redis.get(key)
        except redis.RedisError as e:
            logger.error(f"Error reading mapping cache key {key}: {e}")
            return None
        if not data:
            return None
        try:
            return MappingSnapshot.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            self._delete(key)
            return None

    def get_by_channel_identity(self, channel_identity: str) -> Optional[MappingSnapshot]:
        return self._get(self.channel_key(channel_identity))

    def get_by_crm_chat_id(self, crm_chat_id: int) -> Optional[MappingSnapshot]:
        return self._get(self.crm_key(crm_chat_id))

    def _delete(self, *keys: str) -> bool:
        try:
            self.redis.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.error(f"Error deleting cache keys {keys}: {e}")
            return False

    def delete_mapping(self, channel_identity: str, crm_chat_id: Optional[int]) -> bool:
        keys = [self.channel_key(channel_identity)]
        if crm_chat_id is not None:
            keys.append(self.crm_key(crm_chat_id))
        removed = self._delete(*keys)
        if removed:
            logger.debug(f"Mapping cache entries removed for identity {channel_identity} / chat {crm_chat_id}.")
        return removed

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        try:
            memory = self.redis.info('memory')
            clients = self.redis.info('clients')
            return {
                'used_memory': memory.get('used_memory_human', 'N/A'),
                'connected_clients': int(clients.get('connected_clients', 0)),
                'total_keys': int(self.redis.dbsize()),
            }
        except redis.RedisError as e:
            logger.error(f"Error reading cache statistics: {e}")
            return {'used_memory': 'N/A', 'connected_clients': 0, 'total_keys': 0}


class DedupMarkerStore:
    """
    Short-lived presence markers for inbound message ids.
    The guarantee only holds inside the TTL window: a redelivery older than
    the TTL is processed again.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(message_id: str) -> str:
        return f"{DEDUP_KEY_PREFIX}{message_id}"

    def is_processed(self, message_id: str) -> bool:
        try:
            return self.redis.exists(self.key(message_id)) == 1
        except redis.RedisError as e:
            logger.error(f"Error checking dedup marker for message {message_id}: {e}")
            return False

    def mark_processed(self, message_id: str) -> None:
        try:
            self.redis.setex(self.key(message_id), self.ttl_seconds, '1')
            logger.debug(f"Message {message_id} marked as processed.")
        except redis.RedisError as e:
            logger.error(f"Error marking message {message_id} as processed: {e}")
