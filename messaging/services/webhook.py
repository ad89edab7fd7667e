"""
Processing of gateway webhook deliveries.

One POST body carries entries -> changes -> value, and each value may hold
delivery receipts (``statuses``) and inbound customer messages
(``messages``, with profile hints in ``contacts``). Receipts update outbound
messages; inbound messages are ingested exactly once per gateway message id.

Every receipt and every inbound message is handled inside its own error
boundary, so one bad event never drops the rest of the delivery.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from messaging.models import Contact, Conversation, Message, MessageEvent
from messaging.services import gateway_client, sla
from messaging.services.connections import find_workspace_for_phone_number, resolve_token
from messaging.services.normalization import as_dict, as_list, as_text, normalize_phone

logger = logging.getLogger(__name__)

STATUS_MAP = {
    'sent': Message.Status.SENT,
    'delivered': Message.Status.DELIVERED,
    'read': Message.Status.READ,
    'failed': Message.Status.FAILED,
}

MEDIA_TYPES = ('image', 'document', 'video', 'audio')
MEDIA_SENTINEL_PREFIX = 'wa-media://'

WORKSPACE_NOT_FOUND = 'workspace_not_found'


@dataclass
class WebhookResult:
    """Summary of one webhook delivery."""
    processed_messages: int = 0
    processed_statuses: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class InboundContent:
    text: str
    media_id: Optional[str] = None
    media_mime: Optional[str] = None
    media_sha256: Optional[str] = None


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    """
    Check a subscription handshake.

    Returns:
        The challenge to echo back, or None if the handshake is rejected
    """
    expected = settings.WA_VERIFY_TOKEN
    if mode != 'subscribe' or not expected or not token:
        return None
    if not hmac.compare_digest(str(token).encode('utf-8'), str(expected).encode('utf-8')):
        logger.warning("Webhook verification failed: token mismatch")
        return None
    return challenge or ''


def verify_signature(body: bytes, signature: Optional[str]) -> bool:
    """
    Check ``X-Hub-Signature-256`` against the app secret.

    Without a configured WA_APP_SECRET every body is accepted.
    """
    secret = settings.WA_APP_SECRET
    if not secret:
        return True
    if not signature or not signature.startswith('sha256='):
        return False

    expected = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len('sha256='):].encode('utf-8'), expected.encode('utf-8'))


def normalize_status(status) -> Optional[str]:
    """Map a gateway status string onto Message.Status; unknown values give None."""
    if not isinstance(status, str):
        return None
    return STATUS_MAP.get(status)


def parse_timestamp(raw) -> datetime:
    """Epoch seconds (string or number) to an aware datetime; now if absent or bad."""
    try:
        return datetime.fromtimestamp(int(float(raw)), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return timezone.now()


def extract_content(msg: dict) -> InboundContent:
    """
    Text and media reference of an inbound message, by type.

    Media types fall back to their caption (documents also to the filename)
    and then to a ``[type]`` label; audio is always ``[audio]``.
    """
    msg_type = as_text(msg.get('type'))

    if msg_type == 'text':
        return InboundContent(text=as_text(as_dict(msg.get('text')).get('body')))

    if msg_type in MEDIA_TYPES:
        media = as_dict(msg.get(msg_type))
        if msg_type == 'audio':
            label = '[audio]'
        elif msg_type == 'document':
            label = as_text(media.get('caption')) or as_text(media.get('filename')) or '[document]'
        else:
            label = as_text(media.get('caption')) or f'[{msg_type}]'
        return InboundContent(
            text=label,
            media_id=as_text(media.get('id')) or None,
            media_mime=as_text(media.get('mime_type')) or None,
            media_sha256=as_text(media.get('sha256')) or None,
        )

    return InboundContent(text=f"[{msg_type or 'message'}]")


def resolve_media_url(media_id: Optional[str], token: Optional[str] = None) -> Optional[str]:
    """
    Playable URL of an inbound media object.

    A failed lookup yields ``wa-media://<id>`` so the message is still stored.
    """
    if not media_id:
        return None
    try:
        return gateway_client.fetch_media_url(media_id, token)['url']
    except Exception as e:
        logger.warning(f"Media lookup failed for {media_id}: {e}")
        return f"{MEDIA_SENTINEL_PREFIX}{media_id}"


class WorkspaceResolver:
    """Per-delivery cache of phone number id / business account id -> workspace."""

    def __init__(self, default_workspace_id: Optional[str], result: WebhookResult):
        self.default_workspace_id = default_workspace_id or None
        self.result = result
        self._cache: Dict[Tuple[str, str], Optional[str]] = {}

    def resolve(self, phone_number_id: Optional[str], waba_id: Optional[str]) -> Optional[str]:
        if not phone_number_id and not waba_id:
            return self.default_workspace_id

        key = (phone_number_id or '', waba_id or '')
        if key in self._cache:
            return self._cache[key]

        workspace_id = find_workspace_for_phone_number(phone_number_id, waba_id)
        if workspace_id is None:
            self.result.errors.append(WORKSPACE_NOT_FOUND)
            workspace_id = self.default_workspace_id
            if workspace_id:
                logger.info(f"Webhook workspace fallback used for phone_number_id={phone_number_id}")
            else:
                logger.warning(
                    f"Webhook workspace not found for phone_number_id={phone_number_id}, waba_id={waba_id}"
                )

        self._cache[key] = workspace_id
        return workspace_id


def process_status(status_payload: dict, now: Optional[datetime] = None) -> bool:
    """
    Apply one delivery receipt.

    Returns:
        True if a known message was updated
    """
    wa_message_id = as_text(status_payload.get('id'))
    mapped = normalize_status(status_payload.get('status'))
    if not wa_message_id or not mapped:
        return False

    message = Message.objects.filter(wa_message_id=wa_message_id).first()
    if message is None:
        logger.debug(f"Status {mapped} for unknown message {wa_message_id}, skipped")
        return False

    error_reason = None
    if mapped == Message.Status.FAILED:
        first_error = as_dict((as_list(status_payload.get('errors')) or [{}])[0])
        error_reason = as_text(first_error.get('title')) or as_text(first_error.get('message')) or None

    now = now or timezone.now()
    with transaction.atomic():
        Message.objects.filter(id=message.id).update(
            status=mapped,
            error_reason=error_reason,
            status_updated_at=now,
        )
        MessageEvent.objects.create(
            message=message,
            event_type=f"status.{mapped}",
            payload=status_payload,
        )

    logger.info(f"Message {message.id} status -> {mapped}")
    return True


def _upsert_contact(workspace_id: str, phone: str, name: str, ts: datetime) -> Contact:
    contact, created = Contact.objects.get_or_create(
        workspace_id=workspace_id,
        phone_norm=normalize_phone(phone),
        defaults={
            'name': name,
            'phone': phone,
            'wa_id': phone,
            'tags': [],
            'last_seen_at': ts,
        },
    )
    if created:
        logger.info(f"Contact {contact.id} created from inbound message")
    return contact


def _upsert_conversation(workspace_id: str, contact: Contact, ts: datetime) -> Conversation:
    conversation, created = Conversation.objects.get_or_create(
        workspace_id=workspace_id,
        contact=contact,
        defaults={
            'ticket_status': Conversation.TicketStatus.OPEN,
            'priority': Conversation.Priority.LOW,
            'unread_count': 0,
            'last_message_at': ts,
            'last_customer_message_at': ts,
        },
    )
    if created:
        logger.info(f"Conversation {conversation.id} created for contact {contact.id}")
    return conversation


def process_inbound_message(
    workspace_id: str,
    msg: dict,
    profiles: List[dict],
    media_token: Optional[str] = None,
) -> Optional[Message]:
    """
    Ingest one inbound customer message.

    Returns:
        The new Message, or None if it was a redelivery or unusable
    """
    wa_message_id = as_text(msg.get('id'))
    from_phone = as_text(msg.get('from'))
    if not wa_message_id or not from_phone:
        return None

    if Message.objects.filter(wa_message_id=wa_message_id).exists():
        logger.debug(f"Inbound message {wa_message_id} already stored, skipped")
        return None

    ts = parse_timestamp(msg.get('timestamp'))
    content = extract_content(msg)
    media_url = resolve_media_url(content.media_id, media_token)

    profile = next((p for p in profiles if as_text(p.get('wa_id')) == from_phone), {})
    contact_name = as_text(as_dict(profile.get('profile')).get('name')) or from_phone

    with transaction.atomic():
        contact = _upsert_contact(workspace_id, from_phone, contact_name, ts)
        conversation = _upsert_conversation(workspace_id, contact, ts)

        message = Message.objects.create(
            workspace_id=workspace_id,
            conversation=conversation,
            direction=Message.Direction.IN,
            text=content.text,
            ts=ts,
            status=None,
            wa_message_id=wa_message_id,
            media_url=media_url,
            media_mime=content.media_mime,
            media_sha256=content.media_sha256,
        )

        Conversation.objects.filter(id=conversation.id).update(
            last_message_at=ts,
            last_customer_message_at=ts,
            unread_count=F('unread_count') + 1,
            updated_at=timezone.now(),
        )
        Contact.objects.filter(id=contact.id).update(last_seen_at=ts)

        MessageEvent.objects.create(
            message=message,
            event_type='inbound.message',
            payload=msg,
        )

        sla.recompute_conversation_sla(
            workspace_id,
            conversation.id,
            overrides={
                'last_customer_message_at': ts,
                'ticket_status': Conversation.TicketStatus.OPEN,
            },
        )

    logger.info(f"Inbound message {message.id} stored on conversation {conversation.id}")
    return message


def process_whatsapp_payload(payload: dict, default_workspace_id: Optional[str] = None) -> WebhookResult:
    """
    Process one webhook POST body.

    Args:
        payload: Decoded JSON body
        default_workspace_id: Workspace for inbound messages whose phone
            number is not registered; without it they are ignored

    Returns:
        WebhookResult with counts and error codes
    """
    result = WebhookResult()
    resolver = WorkspaceResolver(default_workspace_id, result)

    for entry in as_list(as_dict(payload).get('entry')):
        entry = as_dict(entry)
        waba_id = as_text(entry.get('id')) or None

        for change in as_list(entry.get('changes')):
            value = as_dict(as_dict(change).get('value'))
            phone_number_id = as_text(as_dict(value.get('metadata')).get('phone_number_id')) or None

            for status_payload in as_list(value.get('statuses')):
                try:
                    if process_status(as_dict(status_payload)):
                        result.processed_statuses += 1
                except Exception as e:
                    logger.error(f"Status processing failed: {e}", exc_info=True)
                    result.errors.append('status_update_failed')

            inbound = as_list(value.get('messages'))
            if not inbound:
                continue

            workspace_id = resolver.resolve(phone_number_id, waba_id)
            if not workspace_id:
                continue

            profiles = [as_dict(p) for p in as_list(value.get('contacts'))]
            media_token = None
            if phone_number_id:
                media_token = resolve_token(workspace_id, phone_number_id, waba_id)

            for msg in inbound:
                try:
                    if process_inbound_message(workspace_id, as_dict(msg), profiles, media_token):
                        result.processed_messages += 1
                except Exception as e:
                    logger.error(f"Inbound message processing failed: {e}", exc_info=True)
                    result.errors.append('message_processing_failed')

    logger.info(
        f"Webhook processed: messages={result.processed_messages}, "
        f"statuses={result.processed_statuses}, errors={len(result.errors)}"
    )
    return result
