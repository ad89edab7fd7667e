"""
Validation rules for outbound sends and bulk job requests.
"""
import logging
from typing import Iterable, Optional, Tuple

from messaging.services.payloads import SendPayload, TemplateSend

logger = logging.getLogger(__name__)

PAYLOAD_INCOMPLETE = 'payload_missing_message_id_or_phone'
TEMPLATE_INCOMPLETE = 'payload_missing_template'
INVALID_JOB_NAME = 'invalid_job_name'
INVALID_RATE_LIMIT = 'invalid_rate_limit'
INVALID_PARAM_MAPPING = 'invalid_param_mapping'

MAX_RATE_LIMIT_PER_MINUTE = 200
VALID_SOURCE_TYPES = ('manual', 'contact_field', 'expression')


def validate_send_payload(to_phone: Optional[str], send: SendPayload) -> Tuple[bool, Optional[str]]:
    """
    Validates that an outbox row can be handed to the gateway.

    Rules:
    1. The payload must reference the canonical Message it delivers
    2. The row must have a recipient phone
    3. Template sends must name a template and a language

    Returns:
        Tuple of (is_valid, rejection_reason)
    """
    if send.message_id is None or not (to_phone or '').strip():
        logger.debug("Send payload rejected: message_id=%s, has_phone=%s",
                     send.message_id, bool(to_phone))
        return False, PAYLOAD_INCOMPLETE

    if isinstance(send, TemplateSend) and (not send.template_name or not send.language):
        logger.debug("Send payload rejected: template name/language missing")
        return False, TEMPLATE_INCOMPLETE

    return True, None


def validate_job_request(
    name: str,
    rate_limit_per_minute: int,
    param_mapping: Optional[Iterable[dict]] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Validates the caller-supplied part of a bulk send job.

    - name: 1..255 characters
    - rate_limit_per_minute: 1..200
    - each mapping: paramIndex >= 1, sourceType one of manual/contact_field/expression
    """
    if not name or len(name) > 255:
        return False, INVALID_JOB_NAME

    if isinstance(rate_limit_per_minute, bool) or not isinstance(rate_limit_per_minute, int):
        return False, INVALID_RATE_LIMIT
    if not 1 <= rate_limit_per_minute <= MAX_RATE_LIMIT_PER_MINUTE:
        return False, INVALID_RATE_LIMIT

    for mapping in param_mapping or []:
        if not isinstance(mapping, dict):
            return False, INVALID_PARAM_MAPPING
        index = mapping.get('paramIndex')
        if isinstance(index, bool) or not isinstance(index, int) or index < 1:
            return False, INVALID_PARAM_MAPPING
        if mapping.get('sourceType') not in VALID_SOURCE_TYPES:
            return False, INVALID_PARAM_MAPPING

    return True, None
