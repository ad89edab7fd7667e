"""
Unit tests for send payload parsing and validation.
"""
import pytest

from messaging.services.payloads import (
    TemplateSend,
    TextSend,
    build_gateway_request,
    parse_send_payload,
)
from messaging.services.validation import (
    INVALID_JOB_NAME,
    INVALID_PARAM_MAPPING,
    INVALID_RATE_LIMIT,
    PAYLOAD_INCOMPLETE,
    TEMPLATE_INCOMPLETE,
    validate_job_request,
    validate_send_payload,
)


class TestParseSendPayload:
    """Tests for parse_send_payload function."""

    def test_text_payload(self):
        send = parse_send_payload('text', {'message_id': '42', 'text': 'hi', 'connection_id': 3})

        assert send == TextSend(message_id=42, text='hi', connection_id=3)

    def test_template_parameters_as_objects_or_strings(self):
        send = parse_send_payload('template', {
            'message_id': 7,
            'template_name': 'order_update',
            'language': 'id',
            'parameters': [{'type': 'text', 'text': 'Budi'}, 'INV-7'],
        })

        assert isinstance(send, TemplateSend)
        assert send.parameters == ['Budi', 'INV-7']

    def test_garbage_degrades_to_empty_text(self):
        send = parse_send_payload('text', 'not a dict')

        assert send.message_id is None
        assert send.text == ''

    def test_non_numeric_message_id(self):
        assert parse_send_payload('text', {'message_id': 'm1', 'text': 'hi'}).message_id is None

    def test_payload_survives_storage(self):
        send = TemplateSend(message_id=1, template_name='t', language='en', parameters=['a'])

        assert parse_send_payload('template', send.to_payload()) == send


class TestBuildGatewayRequest:

    def test_text_request(self):
        assert build_gateway_request('+6281234', TextSend(message_id=1, text='hi')) == {
            'messaging_product': 'whatsapp',
            'to': '+6281234',
            'type': 'text',
            'text': {'body': 'hi'},
        }

    def test_template_request(self):
        request = build_gateway_request(
            '+6281234', TemplateSend(message_id=1, template_name='welcome', language='en')
        )

        assert request['template']['name'] == 'welcome'
        assert request['template']['components'] == [{'type': 'body', 'parameters': []}]


class TestValidateSendPayload:
    """Tests for validate_send_payload function."""

    def test_valid_text(self):
        assert validate_send_payload('+6281234', TextSend(message_id=1, text='hi')) == (True, None)

    def test_missing_message_id(self):
        assert validate_send_payload('+6281234', TextSend(message_id=None, text='hi')) == (
            False, PAYLOAD_INCOMPLETE
        )

    @pytest.mark.parametrize('phone', ['', '   ', None])
    def test_missing_phone(self, phone):
        is_valid, reason = validate_send_payload(phone, TextSend(message_id=1, text='hi'))

        assert is_valid is False
        assert reason == 'payload_missing_message_id_or_phone'

    def test_template_without_name(self):
        send = TemplateSend(message_id=1, template_name='', language='en')

        assert validate_send_payload('+6281234', send) == (False, TEMPLATE_INCOMPLETE)


class TestValidateJobRequest:
    """Tests for validate_job_request function."""

    def test_valid(self):
        assert validate_job_request('Promo', 60, [{'paramIndex': 1, 'sourceType': 'manual'}]) == (True, None)

    @pytest.mark.parametrize('name', ['', 'x' * 256])
    def test_invalid_name(self, name):
        assert validate_job_request(name, 60) == (False, INVALID_JOB_NAME)

    @pytest.mark.parametrize('rate_limit', [0, 201, True, '60', 1.5])
    def test_invalid_rate_limit(self, rate_limit):
        assert validate_job_request('Promo', rate_limit) == (False, INVALID_RATE_LIMIT)

    @pytest.mark.parametrize('rate_limit', [1, 200])
    def test_rate_limit_bounds_inclusive(self, rate_limit):
        assert validate_job_request('Promo', rate_limit)[0] is True

    @pytest.mark.parametrize('mapping', [
        {'paramIndex': 0, 'sourceType': 'manual'},
        {'paramIndex': 1, 'sourceType': 'sql'},
        {'sourceType': 'manual'},
        'manual',
    ])
    def test_invalid_mapping(self, mapping):
        assert validate_job_request('Promo', 60, [mapping]) == (False, INVALID_PARAM_MAPPING)
