"""
Celery tasks driving the periodic delivery workers.

Both tasks are fired by celery beat (see CELERY_BEAT_SCHEDULE). They hold no
state between runs; overlapping runs are safe because outbox rows are
claimed in the database.
"""
import logging

from celery import shared_task
from django.db import OperationalError

from messaging.services.outbox import process_outbox_batch
from messaging.services.send_jobs import process_send_jobs

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(OperationalError,),
    retry_backoff=10,
    retry_backoff_max=40,
    max_retries=2,
    retry_jitter=False
)
def run_outbox_worker(self, batch_size: int = None):
    """
    Claim and deliver one batch of outbox rows.

    A database outage fails the whole run; it is retried briefly and
    otherwise left to the next beat tick.
    """
    summary = process_outbox_batch(batch_size=batch_size)
    logger.info(f"Outbox worker task {self.request.id} finished: {summary}")
    return summary


@shared_task(
    bind=True,
    autoretry_for=(OperationalError,),
    retry_backoff=10,
    retry_backoff_max=40,
    max_retries=2,
    retry_jitter=False
)
def run_send_job_worker(self):
    """Advance in-flight bulk send jobs by one slice each."""
    summary = process_send_jobs()
    logger.info(f"Send job worker task {self.request.id} finished: {summary}")
    return summary
