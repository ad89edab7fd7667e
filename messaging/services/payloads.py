"""
Typed send payloads stored on outbox rows and turned into gateway requests.

An outbox row's JSON ``payload`` is either a free-text reply or a template
send; both carry the id of the canonical Message they deliver.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from messaging.services.normalization import as_dict, as_list, as_text

logger = logging.getLogger(__name__)

MESSAGING_PRODUCT = 'whatsapp'


@dataclass(frozen=True)
class TextSend:
    """A free-text message."""
    message_id: Optional[int]
    text: str
    connection_id: Optional[int] = None
    phone_number_id: Optional[str] = None

    message_type = 'text'

    def to_payload(self) -> dict:
        return {
            'message_id': self.message_id,
            'text': self.text,
            'connection_id': self.connection_id,
            'phone_number_id': self.phone_number_id,
        }

    def content_key(self) -> str:
        return self.text


@dataclass(frozen=True)
class TemplateSend:
    """A pre-approved template with positional body parameters."""
    message_id: Optional[int]
    template_name: str
    language: str
    parameters: List[str] = field(default_factory=list)
    connection_id: Optional[int] = None
    phone_number_id: Optional[str] = None

    message_type = 'template'

    def to_payload(self) -> dict:
        return {
            'message_id': self.message_id,
            'template_name': self.template_name,
            'language': self.language,
            'parameters': [{'type': 'text', 'text': p} for p in self.parameters],
            'connection_id': self.connection_id,
            'phone_number_id': self.phone_number_id,
        }

    def content_key(self) -> str:
        return f"{self.template_name}:{self.language}:{'|'.join(self.parameters)}"


SendPayload = Union[TextSend, TemplateSend]


def _as_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_send_payload(message_type: str, raw) -> SendPayload:
    """
    Interpret a stored outbox payload.

    Unknown or missing fields degrade to empty values; whether the result is
    deliverable is decided by ``validation.validate_send_payload``.
    """
    data = as_dict(raw)
    message_id = _as_int(data.get('message_id'))
    connection_id = _as_int(data.get('connection_id'))
    phone_number_id = as_text(data.get('phone_number_id')) or None

    if message_type == TemplateSend.message_type:
        parameters = []
        for param in as_list(data.get('parameters')):
            if isinstance(param, dict):
                parameters.append(as_text(param.get('text')))
            else:
                parameters.append(as_text(param))
        return TemplateSend(
            message_id=message_id,
            template_name=as_text(data.get('template_name')),
            language=as_text(data.get('language')),
            parameters=parameters,
            connection_id=connection_id,
            phone_number_id=phone_number_id,
        )

    return TextSend(
        message_id=message_id,
        text=as_text(data.get('text')),
        connection_id=connection_id,
        phone_number_id=phone_number_id,
    )


def template_request(to_phone: str, name: str, language: str, parameters: List[str]) -> dict:
    """Gateway request body for a template send."""
    return {
        'messaging_product': MESSAGING_PRODUCT,
        'to': to_phone,
        'type': 'template',
        'template': {
            'name': name,
            'language': {'code': language},
            'components': [
                {
                    'type': 'body',
                    'parameters': [{'type': 'text', 'text': p} for p in parameters],
                },
            ],
        },
    }


def build_gateway_request(to_phone: str, send: SendPayload) -> dict:
    """Gateway request body for an outbox send."""
    if isinstance(send, TemplateSend):
        return template_request(to_phone, send.template_name, send.language, send.parameters)
    return {
        'messaging_product': MESSAGING_PRODUCT,
        'to': to_phone,
        'type': 'text',
        'text': {'body': send.text},
    }
