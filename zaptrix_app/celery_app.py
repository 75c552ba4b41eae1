# zaptrix_app/celery_app.py

from typing import NamedTuple

from celery import Celery
from kombu import Queue

from .config import Config


class QueueSpec(NamedTuple):
    name: str
    task: str
    concurrency: int
    attempts: int
    dedupe: bool


QUEUES = {
    spec.name: spec for spec in (
        QueueSpec('inbound-relay', 'zaptrix_app.celery_tasks.process_inbound_message_task',
                  Config.INBOUND_RELAY_CONCURRENCY, 3, True),
        QueueSpec('outbound-relay', 'zaptrix_app.celery_tasks.process_outbound_message_task',
                  Config.OUTBOUND_RELAY_CONCURRENCY, 3, True),
        QueueSpec('channel-send', 'zaptrix_app.celery_tasks.send_channel_message_task',
                  Config.CHANNEL_SEND_CONCURRENCY, 5, False),
        QueueSpec('crm-send', 'zaptrix_app.celery_tasks.send_crm_message_task',
                  Config.CRM_SEND_CONCURRENCY, 5, False),
    )
}

celery_app = Celery(
    'zaptrix_tasks',
    broker=Config.broker_url,
    backend=Config.result_backend,
    include=['zaptrix_app.celery_tasks'],
)

celery_app.conf.update(
    task_serializer=getattr(Config, 'task_serializer', 'json'),
    accept_content=getattr(Config, 'accept_content', ['json']),
    result_serializer=getattr(Config, 'result_serializer', 'json'),
    timezone=getattr(Config, 'timezone', 'UTC'),
    enable_utc=getattr(Config, 'enable_utc', True),
    broker_connection_retry_on_startup=True,
    result_expires=Config.QUEUE_JOB_RETENTION_SECONDS,
    task_queues=[Queue(name) for name in QUEUES],
    task_default_queue='inbound-relay',
    task_routes={spec.task: {'queue': spec.name} for spec in QUEUES.values()},
    # Redelivery if a worker dies mid-job; handlers are idempotent through the dedup markers.
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

# --- FLASK APP CONTEXT FOR TASKS (PER TASK, NOT GLOBAL) ---

_flask_app_for_celery_context = None


def get_celery_flask_app():
    """Create or return the Flask app instance for Celery task context."""
    global _flask_app_for_celery_context
    if _flask_app_for_celery_context is None:
        from zaptrix_app import create_app  # Import here to avoid circular imports
        _flask_app_for_celery_context = create_app()
    return _flask_app_for_celery_context


class FlaskTask(celery_app.Task):
    """Task base that pushes a Flask app context per task."""
    def __call__(self, *args, **kwargs):
        flask_app = get_celery_flask_app()
        with flask_app.app_context():
            return self.run(*args, **kwargs)


def worker_argv(queue_name: str, loglevel: str = 'INFO') -> list:
    spec = QUEUES[queue_name]
    return [
        'worker',
        f'--queues={spec.name}',
        f'--concurrency={spec.concurrency}',
        f'--hostname={spec.name}@%h',
        f'--loglevel={loglevel}',
    ]


if __name__ == '__main__':
    print("To start a worker: flask --app zaptrix_app.run worker inbound-relay")
