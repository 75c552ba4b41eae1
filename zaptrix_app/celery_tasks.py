# zaptrix_app/celery_tasks.py

import logging
import time
from typing import Any, Callable, Dict, Type

from flask import current_app
from pydantic import BaseModel, ValidationError

from .celery_app import celery_app, FlaskTask, QUEUES
from .config import Config
from .exceptions import RETRYABLE_ERRORS
from .schemas import ChannelSendJob, CrmSendJob, InboundMessageJob, JobResult, OutboundMessageJob

logger = logging.getLogger(__name__)

_RETRY_OPTIONS = dict(
    autoretry_for=RETRYABLE_ERRORS,
    retry_backoff=1,
    retry_backoff_max=Config.QUEUE_BACKOFF_MAX_SECONDS,
    retry_jitter=False,
    rate_limit=Config.QUEUE_RATE_LIMIT,
    acks_late=True,
)


def _components():
    return current_app.extensions['zaptrix']


def _run_job(task, queue_name: str, payload: Dict[str, Any], model: Type[BaseModel],
             handler: Callable[[Any], JobResult]) -> Dict[str, Any]:
    """Validates the payload, runs the handler and records the completion record."""
    task_id = task.request.id
    attempt = task.request.retries + 1
    metrics = _components().metrics
    logger.info(f"Task {task_id} [{queue_name}]: starting attempt {attempt}/{QUEUES[queue_name].attempts}.")
    started = time.monotonic()

    try:
        job = model.model_validate(payload)
    except ValidationError as val_err:
        logger.error(f"Task {task_id} [{queue_name}]: payload validation error: {val_err.errors()}")
        result = JobResult(success=False, status='invalid_payload', error=str(val_err), error_type='ValidationError')
        metrics.record_job_outcome(queue_name, result, time.monotonic() - started)
        return result.model_dump()

    try:
        result = handler(job)
    except RETRYABLE_ERRORS as e:
        if task.request.retries >= task.max_retries:
            logger.error(f"Task {task_id} [{queue_name}]: giving up after {attempt} attempts: {e}")
            metrics.record_job_outcome(queue_name, JobResult.failed('exhausted', e), time.monotonic() - started)
        else:
            logger.warning(f"Task {task_id} [{queue_name}]: retryable {type(e).__name__} on attempt {attempt}: {e}")
            metrics.record_retry(queue_name)
        raise
    except Exception as e:
        logger.error(f"Task {task_id} [{queue_name}]: unexpected {type(e).__name__}: {e}", exc_info=True)
        metrics.record_job_outcome(queue_name, JobResult.failed('crashed', e), time.monotonic() - started)
        raise

    metrics.record_job_outcome(queue_name, result, time.monotonic() - started)
    logger.info(f"Task {task_id} [{queue_name}]: finished with status '{result.status}' "
                f"(success={result.success}).")
    return result.model_dump()


# --- TASKS ---

@celery_app.task(bind=True, base=FlaskTask, name=QUEUES['inbound-relay'].task,
                 max_retries=QUEUES['inbound-relay'].attempts - 1, **_RETRY_OPTIONS)
def process_inbound_message_task(self, job_data: Dict[str, Any]):
    return _run_job(self, 'inbound-relay', job_data, InboundMessageJob, _components().relay.process_inbound)


@celery_app.task(bind=True, base=FlaskTask, name=QUEUES['outbound-relay'].task,
                 max_retries=QUEUES['outbound-relay'].attempts - 1, **_RETRY_OPTIONS)
def process_outbound_message_task(self, job_data: Dict[str, Any]):
    return _run_job(self, 'outbound-relay', job_data, OutboundMessageJob, _components().relay.process_outbound)


@celery_app.task(bind=True, base=FlaskTask, name=QUEUES['channel-send'].task,
                 max_retries=QUEUES['channel-send'].attempts - 1, **_RETRY_OPTIONS)
def send_channel_message_task(self, job_data: Dict[str, Any]):
    return _run_job(self, 'channel-send', job_data, ChannelSendJob, _components().relay.send_channel)


@celery_app.task(bind=True, base=FlaskTask, name=QUEUES['crm-send'].task,
                 max_retries=QUEUES['crm-send'].attempts - 1, **_RETRY_OPTIONS)
def send_crm_message_task(self, job_data: Dict[str, Any]):
    return _run_job(self, 'crm-send', job_data, CrmSendJob, _components().relay.send_crm)
