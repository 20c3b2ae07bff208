# herald/tasks/email_sender.py
"""
Celery tasks for email announcements.

``publish_email`` runs a whole publish request in one worker;
``publish_email_runs`` splits a request into one task per run and
dispatches them as a group so runs are delivered in parallel.
"""

import asyncio
import copy
from typing import Any, Dict, Optional

from celery import Celery, group
from celery.signals import task_failure, task_postrun, task_prerun, worker_process_init
from celery.utils.log import get_task_logger

from herald.config.settings import DeliveryConfig, configure_logging
from herald.core.target_store import JsonTargetStore, TargetStore
from herald.services.email_publisher import EmailPublisher, PublishRequest
from herald.services.publish_events import PublishEvents, RedisPublishEvents

logger = get_task_logger(__name__)

celery_app = Celery('herald')
celery_app.conf.update({
    'broker_url': DeliveryConfig.CELERY_BROKER_URL,
    'result_backend': DeliveryConfig.CELERY_RESULT_BACKEND,

    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    'timezone': 'UTC',
    'enable_utc': True,

    # One bounded attempt per send; no broker-level redelivery
    'task_acks_late': False,
    'worker_prefetch_multiplier': 1,

    'result_expires': 3600,

    'task_routes': {
        'herald.tasks.email_sender.publish_email': {'queue': 'email_publishing'},
        'herald.tasks.email_sender.publish_email_runs': {'queue': 'email_publishing'},
    },

    'worker_send_task_events': True,
    'task_send_sent_event': True,
    'worker_hijack_root_logger': False,
})


def build_publisher(store: Optional[TargetStore] = None,
                    events: Optional[PublishEvents] = None) -> EmailPublisher:
    """Publisher wired with the configured target data and Redis events"""
    return EmailPublisher(
        store=store or JsonTargetStore(),
        events=events or RedisPublishEvents(),
    )


async def _publish(payload: Dict[str, Any]) -> Dict[str, Any]:
    publisher = build_publisher()
    report = await publisher.publish(PublishRequest.from_dict(payload))

    # Give timed-out sends a chance to settle before the loop closes
    still_running = await publisher.dispatcher.drain(timeout=DeliveryConfig.SEND_TIMEOUT_SECONDS)
    if still_running:
        logger.warning(f"{still_running} timed-out send(s) still running at task exit")
    return report.to_dict()


@celery_app.task(bind=True)
def publish_email(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Publish one request.

    Args:
        payload: Request in the ``PublishRequest.from_dict`` shape

    Returns:
        Serialised PublishReport; never raises for delivery failures
    """
    request_id = payload.get('requestId') or self.request.id
    logger.info(f"Starting publish task {self.request.id} for request {request_id}")

    try:
        return asyncio.run(_publish({**payload, 'requestId': request_id}))
    except Exception as exc:
        logger.error(f"Unexpected error publishing request {request_id}: {str(exc)}", exc_info=True)
        return {'requestId': request_id, 'success': False, 'error': str(exc), 'runs': []}


def split_runs(payload: Dict[str, Any]):
    """One payload per run, each carrying the shared credentials and files"""
    request_id = payload.get('requestId') or 'request'
    for index, run in enumerate(payload.get('runs') or []):
        single = copy.deepcopy(payload)
        single['runs'] = [run]
        single['requestId'] = f"{request_id}:{run.get('runId') or run.get('id') or index + 1}"
        yield single


@celery_app.task(bind=True)
def publish_email_runs(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fan a request out into one ``publish_email`` task per run.

    Returns the group id; results are collected from the result backend.
    """
    payloads = list(split_runs(payload))
    if not payloads:
        logger.error(f"Publish task {self.request.id} received no runs")
        return {'success': False, 'error': 'no runs', 'runs': []}

    job_group = group(publish_email.s(single) for single in payloads)
    result = job_group.apply_async()
    result.save()
    logger.info(f"Dispatched {len(payloads)} run(s) as group {result.id}")
    return {'groupId': result.id, 'runs': len(payloads)}


@worker_process_init.connect
def worker_process_init_handler(**kwargs):
    configure_logging()


@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **extra):
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
