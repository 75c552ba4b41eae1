# zaptrix_app/services/queue_service.py
import logging
from typing import Any, Dict, Optional

import redis

from ..celery_app import QUEUES
from ..celery_tasks import (
    process_inbound_message_task,
    process_outbound_message_task,
    send_channel_message_task,
    send_crm_message_task,
)
from ..schemas import ChannelSendJob, CrmSendJob, InboundMessageJob, OutboundMessageJob
from .metrics_service import RelayMetrics

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = 'queue:job:'


class QueueService:
    """
    Enqueue helpers for the four relay queues.

    The relay queues are deduplicated by natural message id: the first enqueue
    claims ``queue:job:<queue>:<message_id>`` for the retention window and uses
    the message id as the Celery task id; later enqueues of the same id are no-ops.
    """

    def __init__(self, redis_client: redis.Redis, broker_client: Optional[redis.Redis] = None,
                 retention_seconds: int = 24 * 3600, metrics: Optional[RelayMetrics] = None):
        self.redis = redis_client
        self.broker = broker_client
        self.retention_seconds = retention_seconds
        self.metrics = metrics
        self.tasks = {
            'inbound-relay': process_inbound_message_task,
            'outbound-relay': process_outbound_message_task,
            'channel-send': send_channel_message_task,
            'crm-send': send_crm_message_task,
        }

    @staticmethod
    def job_key(queue_name: str, job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}{queue_name}:{job_id}"

    def _claim(self, queue_name: str, job_id: str) -> bool:
        return bool(self.redis.set(self.job_key(queue_name, job_id), '1', nx=True, ex=self.retention_seconds))

    def _enqueue(self, queue_name: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> Optional[str]:
        spec = QUEUES[queue_name]
        if spec.dedupe and job_id:
            if not self._claim(queue_name, job_id):
                logger.info(f"Job {job_id} already enqueued on {queue_name}. Skipping duplicate.")
                return None
        try:
            async_result = self.tasks[queue_name].apply_async(args=[payload], task_id=job_id, queue=queue_name)
        except Exception:
            if spec.dedupe and job_id:
                self.redis.delete(self.job_key(queue_name, job_id))
            logger.exception(f"Failed to enqueue job {job_id or 'N/A'} on {queue_name}.")
            raise
        logger.info(f"Job {async_result.id} enqueued on {queue_name}.")
        return async_result.id

    def enqueue_inbound(self, job: InboundMessageJob) -> Optional[str]:
        """Returns the task id, or None when the message id was already enqueued."""
        return self._enqueue('inbound-relay', job.model_dump(), job_id=job.message_id)

    def enqueue_outbound(self, job: OutboundMessageJob) -> Optional[str]:
        return self._enqueue('outbound-relay', job.model_dump(), job_id=job.message_id)

    def enqueue_channel_send(self, job: ChannelSendJob) -> str:
        return self._enqueue('channel-send', job.model_dump())

    def enqueue_crm_send(self, job: CrmSendJob) -> str:
        return self._enqueue('crm-send', job.model_dump())

    def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {}
        for name, spec in QUEUES.items():
            waiting = None
            if self.broker is not None:
                try:
                    waiting = int(self.broker.llen(name))
                except redis.RedisError as e:
                    logger.error(f"Could not read length of queue {name}: {e}")
            entry = {'waiting': waiting, 'concurrency': spec.concurrency, 'attempts': spec.attempts}
            if self.metrics is not None:
                entry['completed'] = int(self.metrics.processed_count(name, 'completed'))
                entry['failed'] = int(self.metrics.processed_count(name, 'failed'))
            stats[name] = entry
        return stats
