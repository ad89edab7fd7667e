"""
Conversation SLA computation.

Response and resolution due-by timestamps are derived from the last customer
message and the conversation priority.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from django.utils import timezone

from messaging.models import Conversation

logger = logging.getLogger(__name__)

# priority -> (response minutes, resolution minutes)
SLA_CONFIG = {
    Conversation.Priority.LOW: (60, 24 * 60),
    Conversation.Priority.MED: (30, 12 * 60),
    Conversation.Priority.HIGH: (15, 4 * 60),
    Conversation.Priority.URGENT: (5, 2 * 60),
}

SLA_DUE_SOON_MINUTES = 15

CLOSED_TICKET_STATUSES = (Conversation.TicketStatus.SOLVED, Conversation.TicketStatus.SPAM)


@dataclass
class SlaResult:
    next_response_due_at: Optional[datetime]
    resolution_due_at: Optional[datetime]
    sla_status: str


def compute_sla(
    priority: Optional[str],
    ticket_status: Optional[str],
    last_customer_message_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> SlaResult:
    """
    Compute due-by timestamps and SLA status.

    - solved/spam tickets and conversations without a customer message are 'ok'
      with no due dates
    - past the response due date: 'breached'
    - within SLA_DUE_SOON_MINUTES of it: 'due_soon'
    """
    now = now or timezone.now()
    status = ticket_status or Conversation.TicketStatus.OPEN

    if status in CLOSED_TICKET_STATUSES or last_customer_message_at is None:
        return SlaResult(None, None, Conversation.SlaStatus.OK)

    response_minutes, resolution_minutes = SLA_CONFIG.get(
        priority, SLA_CONFIG[Conversation.Priority.LOW]
    )
    next_response_due_at = last_customer_message_at + timedelta(minutes=response_minutes)
    resolution_due_at = last_customer_message_at + timedelta(minutes=resolution_minutes)

    if now > next_response_due_at:
        sla_status = Conversation.SlaStatus.BREACHED
    elif next_response_due_at - now <= timedelta(minutes=SLA_DUE_SOON_MINUTES):
        sla_status = Conversation.SlaStatus.DUE_SOON
    else:
        sla_status = Conversation.SlaStatus.OK

    return SlaResult(next_response_due_at, resolution_due_at, sla_status)


def recompute_conversation_sla(
    workspace_id: str,
    conversation_id: int,
    overrides: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Recompute and persist the SLA fields of one conversation.

    ``overrides`` may carry ``priority``, ``ticket_status`` and
    ``last_customer_message_at``; overridden status/timestamp are persisted too.

    Returns:
        False if the conversation does not exist in the workspace
    """
    overrides = overrides or {}
    conversation = Conversation.objects.filter(
        workspace_id=workspace_id, id=conversation_id
    ).first()
    if conversation is None:
        logger.warning(f"SLA recompute skipped: conversation {conversation_id} not found")
        return False

    last_customer_message_at = (
        overrides.get('last_customer_message_at')
        or conversation.last_customer_message_at
        or conversation.last_message_at
    )
    result = compute_sla(
        priority=overrides.get('priority') or conversation.priority,
        ticket_status=overrides.get('ticket_status') or conversation.ticket_status,
        last_customer_message_at=last_customer_message_at,
        now=now,
    )

    patch = {
        'next_response_due_at': result.next_response_due_at,
        'resolution_due_at': result.resolution_due_at,
        'sla_status': result.sla_status,
        'updated_at': timezone.now(),
    }
    if 'last_customer_message_at' in overrides:
        patch['last_customer_message_at'] = overrides['last_customer_message_at']
    if 'ticket_status' in overrides:
        patch['ticket_status'] = overrides['ticket_status']

    Conversation.objects.filter(id=conversation.id).update(**patch)
    logger.debug(f"Conversation {conversation_id} SLA -> {result.sla_status}")
    return True
