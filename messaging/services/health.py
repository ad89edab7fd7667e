"""
Worker heartbeat telemetry.
"""
import logging
from datetime import timedelta
from typing import Optional

from django.utils import timezone

from messaging.models import WorkerHeartbeat

logger = logging.getLogger(__name__)


def record_worker_heartbeat(
    worker_name: str,
    status: str,
    counts: dict,
    error_count: int = 0,
    last_error: Optional[str] = None,
    next_run_in: timedelta = timedelta(minutes=2),
    worker_type: str = 'cron',
) -> None:
    """
    Store the outcome of a worker run.

    Best effort: a failure here is logged and never reaches the caller.
    """
    now = timezone.now()
    try:
        WorkerHeartbeat.objects.update_or_create(
            worker_name=worker_name,
            defaults={
                'worker_type': worker_type,
                'status': status,
                'last_run_at': now,
                'next_run_at': now + next_run_in,
                'error_count': error_count,
                'last_error': last_error,
                'metadata': counts,
            },
        )
    except Exception as e:
        logger.error(f"Failed to record heartbeat for {worker_name}: {e}", exc_info=True)
