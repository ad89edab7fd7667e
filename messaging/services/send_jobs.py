"""
Bulk template campaigns ("send jobs").

A job is created with one SendJobItem per recipient, parameters already
resolved. A periodic worker advances in-flight jobs: each run sends a bounded
slice of queued items per job, never more than the job's per-minute rate
limit over a trailing 60 second window, and logs every attempt to SendLog.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from messaging.models import (
    Contact,
    SendJob,
    SendJobItem,
    SendLog,
    Template,
    TemplateParamDef,
)
from messaging.services import gateway_client
from messaging.services.connections import (
    CONNECTION_MISSING,
    CONNECTION_NOT_FOUND,
    ConfigurationError,
    TEMPLATE_NOT_FOUND,
    TOKEN_NOT_FOUND,
    find_connection,
    resolve_token,
)
from messaging.services.health import record_worker_heartbeat
from messaging.services.mapping import ParamMapping, resolve_params
from messaging.services.normalization import hash_phone
from messaging.services.payloads import template_request
from messaging.services.validation import validate_job_request

logger = logging.getLogger(__name__)

WORKER_NAME = 'send-job-worker'

RATE_LIMIT_WINDOW = timedelta(seconds=60)
DEFAULT_RATE_LIMIT_PER_MINUTE = 60
NO_CONTACTS_FOUND = 'no_contacts_found'


class JobCreationError(ValueError):
    """Raised when a send job cannot be created; ``reason`` is an API-facing code."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _select_audience(workspace_id: str, contact_ids=None, tag_ids=None) -> List[Contact]:
    contacts = Contact.objects.filter(workspace_id=workspace_id).order_by('id')
    if contact_ids:
        contacts = contacts.filter(id__in=list(contact_ids))

    selected = list(contacts)
    if tag_ids:
        wanted = set(tag_ids)
        selected = [c for c in selected if wanted.intersection(c.tags or [])]
    return selected


def _param_mappings(workspace_id: str, template: Template, param_mapping) -> List[ParamMapping]:
    """
    Mappings to resolve with.

    A supplied mapping replaces the template's stored definitions; otherwise
    the stored definitions are used.
    """
    if param_mapping:
        mappings = [ParamMapping.from_request(m) for m in param_mapping]
        TemplateParamDef.objects.filter(workspace_id=workspace_id, template=template).delete()
        TemplateParamDef.objects.bulk_create([
            TemplateParamDef(
                workspace_id=workspace_id,
                template=template,
                param_index=m.param_index,
                source_type=m.source_type,
                source_value=m.source_value,
                default_value=m.default_value,
            )
            for m in mappings
        ])
        return mappings

    return [
        ParamMapping.from_def(d)
        for d in TemplateParamDef.objects.filter(workspace_id=workspace_id, template=template)
    ]


@transaction.atomic
def create_send_job(
    workspace_id: str,
    connection_id: int,
    template_id: int,
    name: str,
    contact_ids: Optional[Iterable[int]] = None,
    tag_ids: Optional[Iterable[str]] = None,
    global_values: Optional[dict] = None,
    param_mapping: Optional[List[dict]] = None,
    rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
    created_by: Optional[str] = None,
) -> SendJob:
    """
    Create a bulk campaign and its per-recipient items.

    Raises:
        JobCreationError: invalid request, connection/template not in the
            workspace, or an empty audience
    """
    is_valid, reason = validate_job_request(name, rate_limit_per_minute, param_mapping)
    if not is_valid:
        raise JobCreationError(reason)

    try:
        connection = find_connection(connection_id)
    except ConfigurationError:
        raise JobCreationError(CONNECTION_NOT_FOUND)
    if connection.workspace_id != workspace_id:
        raise JobCreationError(CONNECTION_NOT_FOUND)

    template = Template.objects.filter(id=template_id, workspace_id=workspace_id).first()
    if template is None:
        raise JobCreationError(TEMPLATE_NOT_FOUND)

    contacts = [
        c for c in _select_audience(workspace_id, contact_ids, tag_ids)
        if c.phone or c.wa_id
    ]
    if not contacts:
        raise JobCreationError(NO_CONTACTS_FOUND)

    global_values = {str(k): str(v) for k, v in (global_values or {}).items()}
    mappings = _param_mappings(workspace_id, template, param_mapping)

    job = SendJob.objects.create(
        workspace_id=workspace_id,
        connection=connection,
        template=template,
        name=name,
        status=SendJob.Status.PENDING,
        total_count=len(contacts),
        queued_count=len(contacts),
        sent_count=0,
        failed_count=0,
        global_values=global_values,
        rate_limit_per_minute=rate_limit_per_minute,
        created_by=created_by,
    )

    SendJobItem.objects.bulk_create([
        SendJobItem(
            job=job,
            workspace_id=workspace_id,
            contact=contact,
            to_phone=contact.phone or contact.wa_id,
            params=resolve_params(contact, template.variable_count, mappings, global_values),
            status=SendJobItem.Status.QUEUED,
        )
        for contact in contacts
    ])

    logger.info(f"SendJob {job.id} created for workspace {workspace_id}, total_count={len(contacts)}")
    return job


def cancel_send_job(job_id: int, now: Optional[datetime] = None) -> bool:
    """
    Cancel a job that has not finished yet; its queued items become skipped.

    Returns:
        False if the job was already terminal (or does not exist)
    """
    now = now or timezone.now()
    with transaction.atomic():
        cancelled = SendJob.objects.filter(
            id=job_id,
            status__in=[SendJob.Status.PENDING, SendJob.Status.PROCESSING],
        ).update(status=SendJob.Status.CANCELLED, completed_at=now)
        if not cancelled:
            return False
        SendJobItem.objects.filter(job_id=job_id, status=SendJobItem.Status.QUEUED).update(
            status=SendJobItem.Status.SKIPPED
        )

    job = SendJob.objects.get(id=job_id)
    refresh_job_counts(job, now)
    logger.info(f"SendJob {job_id} cancelled")
    return True


def refresh_job_counts(job: SendJob, now: Optional[datetime] = None) -> SendJob:
    """
    Recompute aggregate counts from the item table and advance the status.

    An in-flight job with no queued items left becomes ``completed``;
    terminal jobs only get their counts refreshed.
    """
    now = now or timezone.now()
    counts = dict(
        SendJobItem.objects
        .filter(job_id=job.id)
        .order_by()
        .values_list('status')
        .annotate(n=Count('id'))
    )
    sent_count = counts.get(SendJobItem.Status.SENT, 0)
    failed_count = counts.get(SendJobItem.Status.FAILED, 0)
    queued_count = counts.get(SendJobItem.Status.QUEUED, 0)

    SendJob.objects.filter(id=job.id).update(
        sent_count=sent_count,
        failed_count=failed_count,
        queued_count=queued_count,
    )
    if queued_count == 0:
        SendJob.objects.filter(
            id=job.id,
            status__in=[SendJob.Status.PENDING, SendJob.Status.PROCESSING],
        ).update(status=SendJob.Status.COMPLETED, completed_at=now)

    job.refresh_from_db()
    return job


def recent_successful_sends(job: SendJob, now: datetime) -> int:
    """Successful sends of a job within the trailing rate-limit window."""
    return SendLog.objects.filter(
        job_id=job.id,
        success=True,
        sent_at__gte=now - RATE_LIMIT_WINDOW,
    ).count()


def _fail_queued_items(job: SendJob, reason: str) -> int:
    failed = SendJobItem.objects.filter(job_id=job.id, status=SendJobItem.Status.QUEUED).update(
        status=SendJobItem.Status.FAILED,
        error_message=reason,
    )
    logger.error(f"SendJob {job.id}: {reason}, failed {failed} queued items")
    return failed


def claim_item(item_id: int) -> bool:
    """
    Move one item from ``queued`` to ``sending``.

    The UPDATE re-checks the status, so an item is sent by at most one run.
    """
    updated = (
        SendJobItem.objects
        .filter(id=item_id, status=SendJobItem.Status.QUEUED)
        .update(status=SendJobItem.Status.SENDING)
    )
    return updated == 1


def _send_item(job: SendJob, item: SendJobItem, template: Template,
               phone_number_id: str, token: str, now: datetime) -> bool:
    """
    Deliver one claimed job item and log the attempt.

    Returns:
        True on success
    """

    params = [str(p) for p in item.params] if isinstance(item.params, list) else []
    request = template_request(item.to_phone, template.name, template.language, params)

    success = False
    message_id = None
    error_message = None
    http_status = None
    response_json = None

    try:
        result = gateway_client.send_message(phone_number_id, token, request)
        http_status = result.http_status
        response_json = result.raw_response
        if result.ok:
            success = True
            message_id = result.message_id
        else:
            error_message = result.error_message or 'send_failed'
    except Exception as e:
        error_message = str(e) or 'unknown_error'
        logger.error(f"SendJob {job.id} item {item.id} send exception: {error_message}")

    SendJobItem.objects.filter(id=item.id).update(
        status=SendJobItem.Status.SENT if success else SendJobItem.Status.FAILED,
        wa_message_id=message_id,
        error_message=error_message,
        sent_at=now if success else None,
    )

    SendLog.objects.create(
        workspace_id=job.workspace_id,
        connection_id=job.connection_id,
        template_id=job.template_id,
        job=job,
        job_item=item,
        to_phone_hash=hash_phone(item.to_phone),
        template_name=template.name,
        template_language=template.language,
        params=params,
        success=success,
        wa_message_id=message_id,
        http_status=http_status,
        error_message=error_message,
        response_json=response_json,
        sent_at=now,
    )
    return success


def process_send_job(
    job: SendJob,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[int, int, int]:
    """
    Advance one job by at most one slice.

    Returns:
        Tuple of (processed, sent, failed) for this run
    """
    fixed_now = now
    now = now or timezone.now()

    if job.status == SendJob.Status.PENDING:
        SendJob.objects.filter(id=job.id, status=SendJob.Status.PENDING).update(
            status=SendJob.Status.PROCESSING, started_at=now
        )

    items = list(
        SendJobItem.objects
        .filter(job_id=job.id, status=SendJobItem.Status.QUEUED)
        .order_by('id')[:settings.SEND_JOB_BATCH_SIZE]
    )
    if not items:
        refresh_job_counts(job, now)
        return 0, 0, 0

    # Resolved once per job; a missing piece fails every queued item
    try:
        connection = find_connection(job.connection_id)
        token = resolve_token(job.workspace_id, connection.phone_number_id, connection.waba_id)
        if not token:
            raise ConfigurationError(TOKEN_NOT_FOUND)
        template = Template.objects.filter(id=job.template_id).first()
        if template is None:
            raise ConfigurationError(TEMPLATE_NOT_FOUND)
    except ConfigurationError as e:
        reason = CONNECTION_NOT_FOUND if e.reason == CONNECTION_MISSING else e.reason
        _fail_queued_items(job, reason)
        refresh_job_counts(job, now)
        return 0, 0, 0

    rate_limit = job.rate_limit_per_minute or DEFAULT_RATE_LIMIT_PER_MINUTE
    recent_sent = recent_successful_sends(job, now)
    available_slots = rate_limit - recent_sent
    if available_slots <= 0:
        logger.info(f"SendJob {job.id} rate limit reached ({recent_sent}/{rate_limit} per minute)")
        return 0, 0, 0

    processed = sent = failed = 0
    for item in items[:available_slots]:
        if not claim_item(item.id):
            logger.info(f"SendJob {job.id} item {item.id} taken by another run, skipped")
            continue
        if processed:
            sleep(settings.SEND_JOB_THROTTLE_SECONDS)
        processed += 1
        sent_at = fixed_now or timezone.now()
        try:
            if _send_item(job, item, template, connection.phone_number_id, token, sent_at):
                sent += 1
            else:
                failed += 1
        except Exception as e:
            logger.error(f"SendJob {job.id} item {item.id} processing failed: {e}", exc_info=True)
            SendJobItem.objects.filter(id=item.id).update(
                status=SendJobItem.Status.FAILED, error_message=str(e)
            )
            failed += 1

    refresh_job_counts(job, now)
    return processed, sent, failed


def process_send_jobs(
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """
    One bulk send worker run over the oldest in-flight jobs.

    Returns:
        Summary dict with processed/sent/failed counts
    """
    jobs = list(
        SendJob.objects
        .filter(status__in=[SendJob.Status.PENDING, SendJob.Status.PROCESSING])
        .order_by('created_at', 'id')[:settings.SEND_JOB_MAX_JOBS]
    )
    if not jobs:
        return {'ok': True, 'processed': 0, 'sent': 0, 'failed': 0, 'message': 'no_pending_jobs'}

    total_processed = total_sent = total_failed = 0
    for job in jobs:
        try:
            processed, sent, failed = process_send_job(job, now, sleep)
        except Exception as e:
            logger.error(f"SendJob {job.id} processing failed: {e}", exc_info=True)
            continue
        total_processed += processed
        total_sent += sent
        total_failed += failed

    logger.info(
        f"Send job batch completed: processed={total_processed}, "
        f"sent={total_sent}, failed={total_failed}"
    )
    record_worker_heartbeat(
        WORKER_NAME,
        status='completed',
        counts={'jobs': len(jobs), 'processed': total_processed, 'sent': total_sent, 'failed': total_failed},
        error_count=total_failed,
        last_error=f"{total_failed} items failed" if total_failed else None,
    )
    return {'ok': True, 'processed': total_processed, 'sent': total_sent, 'failed': total_failed}
