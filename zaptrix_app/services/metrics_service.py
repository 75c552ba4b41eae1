# zaptrix_app/services/metrics_service.py
import logging
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from ..schemas import JobResult

logger = logging.getLogger(__name__)

DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10)


class RelayMetrics:
    """Prometheus collectors for webhooks and relay jobs, on a private registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.webhooks_received = Counter(
            'zaptrix_webhook_received_total', 'Webhooks received',
            ['source', 'type'], registry=self.registry)
        self.messages_processed = Counter(
            'zaptrix_messages_processed_total', 'Relayed messages by outcome',
            ['direction', 'status'], registry=self.registry)
        self.messages_failed = Counter(
            'zaptrix_messages_failed_total', 'Failed messages by error type',
            ['direction', 'error_type'], registry=self.registry)
        self.jobs_completed = Counter(
            'zaptrix_queue_jobs_total', 'Queue jobs by outcome',
            ['queue', 'status'], registry=self.registry)
        self.job_duration = Histogram(
            'zaptrix_queue_job_duration_seconds', 'Queue job processing time',
            ['queue', 'status'], buckets=DURATION_BUCKETS, registry=self.registry)

    def record_webhook(self, source: str, event_type: str) -> None:
        self.webhooks_received.labels(source=source, type=event_type or 'unknown').inc()

    def record_message(self, direction: str, result: JobResult) -> None:
        self.messages_processed.labels(direction=direction, status=result.status).inc()
        if not result.success:
            self.messages_failed.labels(direction=direction, error_type=result.error_type or 'unknown').inc()

    def record_job_outcome(self, queue: str, result: JobResult, duration_seconds: Optional[float] = None) -> None:
        outcome = 'completed' if result.success else 'failed'
        self.jobs_completed.labels(queue=queue, status=outcome).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue, status=outcome).observe(duration_seconds)

    def record_retry(self, queue: str) -> None:
        self.jobs_completed.labels(queue=queue, status='retried').inc()

    def processed_count(self, queue: str, status: str = 'completed') -> float:
        value = self.registry.get_sample_value('zaptrix_queue_jobs_total', {'queue': queue, 'status': status})
        return value or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)
