"""
WhatsApp Cloud API client for sending messages and resolving media.
"""
import logging
import json
from dataclasses import dataclass
from typing import Optional

import httpx
from django.conf import settings

from messaging.services.normalization import as_dict, as_list, as_text

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the gateway answers a lookup with an error."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


@dataclass
class SendResult:
    """Outcome of one send call."""
    ok: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    http_status: Optional[int] = None
    raw_response: Optional[dict] = None


def _format_response(response: httpx.Response) -> str:
    """Return a readable response string (pretty JSON if possible)."""
    try:
        data = response.json()
        return json.dumps(data, indent=2, ensure_ascii=False)
    except Exception:
        return response.text


def _response_json(response: httpx.Response) -> Optional[dict]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {'data': data}


def _error_message(data: Optional[dict], status_code: int) -> str:
    error = (data or {}).get('error')
    if isinstance(error, dict):
        message = error.get('error_user_msg') or error.get('message')
        if message:
            return str(message)
    return f"http_{status_code}"


def _base_url() -> str:
    return settings.WA_GRAPH_API_URL.rstrip('/')


def send_message(phone_number_id: str, token: str, payload: dict) -> SendResult:
    """
    Sends one message payload from a phone number identity.

    Args:
        phone_number_id: Gateway phone number id of the sender
        token: Access token for that phone number
        payload: Request body (see payloads.build_gateway_request)

    Returns:
        SendResult; non-2xx answers are returned as ``ok=False``

    Raises:
        httpx.HTTPError: On network/timeout errors
    """
    url = f"{_base_url()}/{phone_number_id}/messages"
    headers = {
        'Authorization': f'Bearer {token}',
        'Content-Type': 'application/json',
    }

    logger.info(f"Sending {payload.get('type')} message via phone number {phone_number_id}")

    try:
        response = httpx.post(
            url,
            json=payload,
            headers=headers,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS
        )
    except httpx.TimeoutException as e:
        logger.error(f"Timeout sending to gateway: {e}")
        raise
    except httpx.ConnectError as e:
        logger.error(f"Connection error sending to gateway: {e}")
        raise
    except httpx.HTTPError as e:
        logger.error(f"HTTP error sending to gateway: {e}")
        raise

    logger.info(f"Gateway response: {response.status_code}")
    logger.debug("Gateway response body:\n%s", _format_response(response))

    data = _response_json(response)

    if 200 <= response.status_code < 300:
        first = as_dict((as_list((data or {}).get('messages')) or [{}])[0])
        message_id = as_text(first.get('id')) or None
        return SendResult(
            ok=True,
            message_id=message_id,
            http_status=response.status_code,
            raw_response=data,
        )

    return SendResult(
        ok=False,
        error_message=_error_message(data, response.status_code),
        http_status=response.status_code,
        raw_response=data,
    )


def fetch_media_url(media_id: str, token: Optional[str] = None) -> dict:
    """
    Looks up the download URL of an inbound media object.

    Returns:
        Dict with at least ``url``

    Raises:
        GatewayError: On non-2xx answers or a response without a URL
        httpx.HTTPError: On network/timeout errors
    """
    token = token or settings.WA_GRAPH_TOKEN
    url = f"{_base_url()}/{media_id}"

    response = httpx.get(
        url,
        headers={'Authorization': f'Bearer {token}'},
        timeout=settings.GATEWAY_TIMEOUT_SECONDS
    )
    data = _response_json(response)

    if not 200 <= response.status_code < 300:
        raise GatewayError(_error_message(data, response.status_code), response.status_code)
    if not (data or {}).get('url'):
        raise GatewayError('media_url_missing', response.status_code)

    return data
