"""
Outbox queue for single outbound messages.

Application code enqueues a reply (``enqueue_message``); a periodic worker
claims due rows and delivers them (``process_outbox_batch``).

Claiming is a conditional UPDATE per row (compare-and-swap on the lock
columns), so two overlapping worker runs can never both own the same row.
Leases older than OUTBOX_LOCK_TIMEOUT_SECONDS are considered abandoned and
can be claimed again.
"""
import dataclasses
import hashlib
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from messaging.models import Conversation, Message, OutboxMessage
from messaging.services import gateway_client
from messaging.services.connections import (
    ConfigurationError,
    TOKEN_OR_PHONE_MISSING,
    find_connection,
    resolve_connection,
    resolve_token,
)
from messaging.services.health import record_worker_heartbeat
from messaging.services.payloads import (
    SendPayload,
    TemplateSend,
    build_gateway_request,
    parse_send_payload,
)
from messaging.services.validation import validate_send_payload

logger = logging.getLogger(__name__)

WORKER_NAME = 'outbox-worker'

BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 3600
FAR_FUTURE = timedelta(days=365)
IDEMPOTENCY_BUCKET_SECONDS = 30

OUTCOME_SENT = 'sent'
OUTCOME_FAILED = 'failed'
OUTCOME_REQUEUED = 'requeued'


def compute_backoff(attempt: int) -> timedelta:
    """
    Delay before retry number ``attempt`` (1-based).

    60s, 120s, 240s, ... capped at one hour.
    """
    attempt = max(attempt, 1)
    seconds = min(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1), BACKOFF_MAX_SECONDS)
    return timedelta(seconds=seconds)


def make_idempotency_key(
    workspace_id: str,
    thread_id: Optional[int],
    content: str,
    client_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Key collapsing duplicate send requests into one outbox row.

    A caller-supplied key wins; otherwise the same workspace, thread and content
    within one 30 second bucket produce the same key.
    """
    client_key = (client_key or '').strip()
    if client_key:
        return f"req:{client_key}"

    now = now or timezone.now()
    bucket = int(now.timestamp()) // IDEMPOTENCY_BUCKET_SECONDS
    seed = f"{workspace_id}|{thread_id or ''}|{content}|{bucket}"
    return f"auto:{hashlib.sha256(seed.encode('utf-8')).hexdigest()}"


def _message_text(send: SendPayload) -> str:
    if isinstance(send, TemplateSend):
        return f"[template:{send.template_name}]"
    return send.text


def enqueue_message(
    conversation: Conversation,
    send: SendPayload,
    idempotency_key: Optional[str] = None,
    connection=None,
    now: Optional[datetime] = None,
) -> Tuple[Message, OutboxMessage, bool]:
    """
    Queue one outbound reply on a conversation.

    Creates the outbound Message (status ``queued``) and its OutboxMessage.
    Re-enqueuing the same logical send returns the existing rows.

    Args:
        conversation: Thread to reply on; its contact is the recipient
        send: TextSend or TemplateSend (``message_id`` is filled in here)
        idempotency_key: Optional caller key (e.g. Idempotency-Key header)
        connection: Connection to send from; defaults to the workspace's

    Returns:
        Tuple of (message, outbox_row, created)
    """
    now = now or timezone.now()
    workspace_id = conversation.workspace_id
    key = make_idempotency_key(
        workspace_id, conversation.id, send.content_key(), idempotency_key, now
    )

    existing = OutboxMessage.objects.filter(idempotency_key=key).first()
    if existing is not None:
        logger.info(f"Outbox enqueue deduplicated, outbox_id={existing.id}")
        message_id = parse_send_payload(existing.message_type, existing.payload).message_id
        return Message.objects.filter(pk=message_id).first(), existing, False

    contact = conversation.contact
    to_phone = contact.phone or contact.wa_id
    connection = connection or resolve_connection(workspace_id)

    with transaction.atomic():
        message = Message.objects.create(
            workspace_id=workspace_id,
            conversation=conversation,
            direction=Message.Direction.OUT,
            text=_message_text(send),
            ts=now,
            status=Message.Status.QUEUED,
        )
        send = dataclasses.replace(
            send,
            message_id=message.id,
            connection_id=send.connection_id or (connection.id if connection else None),
        )
        outbox, created = OutboxMessage.objects.get_or_create(
            idempotency_key=key,
            defaults={
                'workspace_id': workspace_id,
                'thread': conversation,
                'connection': connection,
                'to_phone': to_phone,
                'message_type': send.message_type,
                'payload': send.to_payload(),
                'status': OutboxMessage.Status.QUEUED,
                'attempts': 0,
                'next_run_at': now,
            },
        )
        if not created:
            # Lost an enqueue race; the winner's message is the canonical one.
            message.delete()
            message_id = parse_send_payload(outbox.message_type, outbox.payload).message_id
            message = Message.objects.filter(pk=message_id).first()

    logger.info(
        f"Outbox {outbox.id} queued for conversation {conversation.id}, "
        f"type={send.message_type}, created={created}"
    )
    return message, outbox, created


def _claimable(now: datetime) -> Q:
    stale_before = now - timedelta(seconds=settings.OUTBOX_LOCK_TIMEOUT_SECONDS)
    return (
        Q(status=OutboxMessage.Status.QUEUED, next_run_at__lte=now)
        & (Q(locked_at__isnull=True) | Q(locked_at__lt=stale_before))
    )


def claim_row(row_id: int, worker_id: str, now: datetime) -> bool:
    """
    Try to take the lease on one row.

    The UPDATE re-checks claimability, so at most one concurrent caller
    gets a row count of 1.
    """
    updated = (
        OutboxMessage.objects
        .filter(_claimable(now), id=row_id)
        .update(locked_at=now, locked_by=worker_id)
    )
    return updated == 1


def claim_outbox(batch_size: int, worker_id: str, now: Optional[datetime] = None) -> List[OutboxMessage]:
    """
    Claim up to ``batch_size`` due rows for ``worker_id``.

    Returns:
        The rows this worker now owns
    """
    now = now or timezone.now()
    candidate_ids = list(
        OutboxMessage.objects
        .filter(_claimable(now))
        .order_by('next_run_at')
        .values_list('id', flat=True)[:batch_size]
    )
    claimed_ids = [row_id for row_id in candidate_ids if claim_row(row_id, worker_id, now)]
    if len(claimed_ids) < len(candidate_ids):
        logger.debug(f"{len(candidate_ids) - len(claimed_ids)} outbox rows taken by another worker")
    return list(OutboxMessage.objects.filter(id__in=claimed_ids, locked_by=worker_id))


def _update_outbox(item: OutboxMessage, now: datetime, **values) -> None:
    """Write back a processed row and release its lease."""
    OutboxMessage.objects.filter(id=item.id).update(
        locked_at=None,
        locked_by=None,
        updated_at=now,
        **values
    )


def _finish_terminal(item: OutboxMessage, status: str, attempts: int, error: Optional[str], now: datetime) -> None:
    _update_outbox(
        item, now,
        status=status,
        attempts=attempts,
        last_error=error,
        next_run_at=now + FAR_FUTURE,
    )


def mark_message_status(
    message_id: Optional[int],
    status: str,
    wa_message_id: Optional[str],
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Mirror an outbox outcome on the canonical Message row."""
    if message_id is None:
        return
    now = now or timezone.now()
    Message.objects.filter(pk=message_id).update(
        status=status,
        status_updated_at=now,
        wa_message_id=wa_message_id,
        error_reason=error_message,
        failed_at=now if status == Message.Status.FAILED else None,
        sent_at=now if status == Message.Status.SENT else None,
    )


def _deliver(phone_number_id: str, token: str, request: dict, message_id: int, now: datetime):
    """
    Hand one request to the gateway.

    Returns:
        Tuple of (wa_message_id, send_error)
    """
    if not settings.ENABLE_WA_SEND:
        # Dry run: no network call, fabricate an id
        fake_id = hashlib.md5(f"{message_id}:{now.timestamp()}".encode('utf-8')).hexdigest()
        logger.info(f"ENABLE_WA_SEND is off, message {message_id} marked sent without delivery")
        return fake_id, None

    try:
        result = gateway_client.send_message(phone_number_id, token, request)
    except Exception as e:
        return None, str(e) or 'send_exception'

    if not result.ok:
        return result.message_id, result.error_message or 'send_failed'
    return result.message_id, None


def process_outbox_item(item: OutboxMessage, now: Optional[datetime] = None) -> str:
    """
    Deliver one claimed row.

    Returns:
        'sent', 'failed' or 'requeued'
    """
    now = now or timezone.now()
    attempts = item.attempts or 0
    next_attempt = attempts + 1
    send = parse_send_payload(item.message_type, item.payload)

    is_valid, rejection_reason = validate_send_payload(item.to_phone, send)
    if not is_valid:
        logger.error(f"Outbox {item.id} FAILED: {rejection_reason}")
        mark_message_status(send.message_id, Message.Status.FAILED, None, rejection_reason, now)
        _finish_terminal(item, OutboxMessage.Status.FAILED, next_attempt, rejection_reason, now)
        return OUTCOME_FAILED

    try:
        connection = find_connection(send.connection_id or item.connection_id)
        token = resolve_token(connection.workspace_id, connection.phone_number_id, connection.waba_id)
        phone_number_id = send.phone_number_id or connection.phone_number_id
        if not token or not phone_number_id:
            raise ConfigurationError(TOKEN_OR_PHONE_MISSING)
    except ConfigurationError as e:
        # Terminal, no retry
        logger.error(f"Outbox {item.id} FAILED: {e.reason}")
        mark_message_status(send.message_id, Message.Status.FAILED, None, e.reason, now)
        _finish_terminal(item, OutboxMessage.Status.FAILED, next_attempt, e.reason, now)
        return OUTCOME_FAILED

    request = build_gateway_request(item.to_phone, send)
    wa_message_id, send_error = _deliver(phone_number_id, token, request, send.message_id, now)

    if send_error is None:
        mark_message_status(send.message_id, Message.Status.SENT, wa_message_id, None, now)
        _finish_terminal(item, OutboxMessage.Status.SENT, next_attempt, None, now)
        logger.info(f"Outbox {item.id} SENT, wa_message_id={wa_message_id}")
        return OUTCOME_SENT

    if next_attempt >= settings.OUTBOX_MAX_ATTEMPTS:
        mark_message_status(send.message_id, Message.Status.FAILED, wa_message_id, send_error, now)
        _finish_terminal(item, OutboxMessage.Status.FAILED, next_attempt, send_error, now)
        logger.error(
            f"Outbox {item.id} FAILED permanently after {next_attempt} attempts: {send_error}"
        )
        return OUTCOME_FAILED

    next_run_at = now + compute_backoff(next_attempt)
    mark_message_status(send.message_id, Message.Status.QUEUED, wa_message_id, send_error, now)
    _update_outbox(
        item, now,
        status=OutboxMessage.Status.QUEUED,
        attempts=next_attempt,
        last_error=send_error,
        next_run_at=next_run_at,
    )
    logger.warning(
        f"Outbox {item.id} send failed, will retry at {next_run_at.isoformat()} "
        f"(attempt {next_attempt}/{settings.OUTBOX_MAX_ATTEMPTS}): {send_error}"
    )
    return OUTCOME_REQUEUED


def _fail_message_quietly(item: OutboxMessage, error: str, now: datetime) -> None:
    """Mirror an unexpected terminal failure on the Message; errors here are only logged."""
    try:
        message_id = parse_send_payload(item.message_type, item.payload).message_id
        mark_message_status(message_id, Message.Status.FAILED, None, error, now)
    except Exception as e:
        logger.error(f"Outbox {item.id}: could not mark message failed: {e}", exc_info=True)


def _process_claimed(item: OutboxMessage, now: datetime) -> str:
    """Deliver a row this worker owns; unexpected errors fail it terminally."""
    try:
        return process_outbox_item(item, now)
    except Exception as e:
        logger.error(f"Outbox {item.id} processing failed: {e}", exc_info=True)
        _finish_terminal(item, OutboxMessage.Status.FAILED, (item.attempts or 0) + 1, str(e), now)
        _fail_message_quietly(item, str(e), now)
        return OUTCOME_FAILED


def make_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def process_outbox_batch(
    batch_size: Optional[int] = None,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    One outbox worker run: claim a batch and deliver it row by row.

    Errors are contained per row; only a failing claim propagates.

    Returns:
        Summary dict with processed/sent/failed/requeued counts
    """
    batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
    worker_id = worker_id or make_worker_id()

    logger.info(f"Outbox worker {worker_id} starting batch, batch_size={batch_size}")
    items = claim_outbox(batch_size, worker_id, now)
    logger.info(f"Outbox worker {worker_id} claimed {len(items)} items")

    counts = {OUTCOME_SENT: 0, OUTCOME_FAILED: 0, OUTCOME_REQUEUED: 0}

    for item in items:
        outcome = _process_claimed(item, now or timezone.now())
        counts[outcome] += 1

    logger.info(
        f"Outbox batch completed: sent={counts[OUTCOME_SENT]}, "
        f"failed={counts[OUTCOME_FAILED]}, requeued={counts[OUTCOME_REQUEUED]}"
    )

    record_worker_heartbeat(
        WORKER_NAME,
        status='completed',
        counts=dict(counts),
        error_count=counts[OUTCOME_FAILED],
        last_error=f"{counts[OUTCOME_FAILED]} items failed" if counts[OUTCOME_FAILED] else None,
    )

    return {
        'ok': True,
        'processed': len(items),
        'sent': counts[OUTCOME_SENT],
        'failed': counts[OUTCOME_FAILED],
        'requeued': counts[OUTCOME_REQUEUED],
    }


def process_outbox_row(row_id: int, worker_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """
    Deliver a single row as soon as it is queued (database webhook trigger).

    The row is claimed exactly like a batch row, so a concurrent batch run
    and the trigger never both send it. A row that is not due, already
    leased or no longer queued is left to the batch worker.

    Returns:
        ``{'ok': True, 'skipped': True, 'reason': 'not_claimable'}`` or
        ``{'ok': <not failed>, 'outcome': 'sent'|'failed'|'requeued'}``
    """
    now = now or timezone.now()
    worker_id = worker_id or f"trigger-{make_worker_id()}"

    if not claim_row(row_id, worker_id, now):
        logger.info(f"Outbox {row_id} not claimable by trigger, left to the batch worker")
        return {'ok': True, 'skipped': True, 'reason': 'not_claimable'}

    item = OutboxMessage.objects.get(id=row_id)
    outcome = _process_claimed(item, now)
    return {'ok': outcome != OUTCOME_FAILED, 'outcome': outcome}
