"""
API views for the WhatsApp delivery gateway.
"""
import hmac
import logging
import uuid

from django.conf import settings
from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.exceptions import ParseError
from rest_framework.response import Response
from rest_framework.views import APIView

from messaging.services.normalization import as_dict, as_text
from messaging.services.outbox import process_outbox_batch, process_outbox_row
from messaging.services.send_jobs import process_send_jobs
from messaging.services.webhook import (
    process_whatsapp_payload,
    verify_signature,
    verify_subscription,
)

logger = logging.getLogger(__name__)


def check_cron_auth(request, worker_name: str, secret_setting: str = 'CRON_SECRET'):
    """
    Authenticate a trigger via ``Authorization: Bearer <secret>``.

    Args:
        secret_setting: Name of the setting holding the shared secret

    Returns:
        None if the caller may proceed, otherwise the error Response
    """
    secret = getattr(settings, secret_setting, '')
    auth_header = request.META.get('HTTP_AUTHORIZATION', '')

    if not secret:
        if settings.APP_ENV == 'production':
            logger.error(f"[{worker_name}] {secret_setting} not configured in production")
            return Response(
                {'error': f'{secret_setting} not configured'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        logger.warning(f"[{worker_name}] {secret_setting} not set, allowing in development")
        return None

    if not hmac.compare_digest(auth_header.encode('utf-8'), f"Bearer {secret}".encode('utf-8')):
        logger.warning(f"[{worker_name}] Unauthorized trigger attempt")
        return Response({'error': 'unauthorized'}, status=status.HTTP_401_UNAUTHORIZED)

    return None


@method_decorator(csrf_exempt, name='dispatch')
class OutboxWorkerView(APIView):
    """
    Cron trigger for the outbox worker.

    POST /workers/outbox/
    - 200 {ok, processed, sent, failed, requeued}
    - 401 wrong secret, 500 secret missing in production or claim failure
    """

    def post(self, request):
        denied = check_cron_auth(request, 'outbox-worker')
        if denied is not None:
            return denied

        try:
            summary = process_outbox_batch()
        except Exception as e:
            logger.error(f"[outbox-worker] Claim failed: {e}", exc_info=True)
            return Response(
                {'error': 'claim_failed', 'message': str(e)},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        return Response(summary, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class OutboxTriggerView(APIView):
    """
    Database webhook fired when an outbox row is inserted or requeued.

    POST /webhooks/outbox-trigger/
    Body: {"type": "INSERT"|"UPDATE", "record": {"id": ..., "status": ...}}
    - 200 {ok, outcome} after delivering the row
    - 200 {ok, skipped, reason} when the row is not queued or not claimable
    - 400 invalid JSON or missing record id
    - 401 wrong secret, 500 secret missing in production or database failure
    """

    def post(self, request):
        denied = check_cron_auth(request, 'outbox-trigger', secret_setting='WEBHOOK_SECRET')
        if denied is not None:
            return denied

        try:
            data = request.data
        except ParseError:
            return Response({'error': 'invalid_json'}, status=status.HTTP_400_BAD_REQUEST)

        record = as_dict(as_dict(data).get('record'))
        try:
            row_id = int(as_text(record.get('id')))
        except ValueError:
            logger.warning("[outbox-trigger] Missing record id")
            return Response({'error': 'missing_record_id'}, status=status.HTTP_400_BAD_REQUEST)

        record_status = as_text(record.get('status'))
        if record_status and record_status != 'queued':
            logger.info(f"[outbox-trigger] Outbox {row_id} is {record_status}, skipped")
            return Response({'ok': True, 'skipped': True, 'reason': 'not_queued'})

        try:
            result = process_outbox_row(row_id)
        except Exception as e:
            logger.error(f"[outbox-trigger] Outbox {row_id} failed: {e}", exc_info=True)
            return Response({'error': 'db_error'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response(result, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class SendJobWorkerView(APIView):
    """
    Cron trigger for the bulk send worker.

    POST /workers/send-jobs/
    - 200 {ok, processed, sent, failed}
    - 401 wrong secret, 500 secret missing in production or database failure
    """

    def post(self, request):
        denied = check_cron_auth(request, 'send-job-worker')
        if denied is not None:
            return denied

        try:
            summary = process_send_jobs()
        except Exception as e:
            logger.error(f"[send-job-worker] Batch failed: {e}", exc_info=True)
            return Response({'error': 'db_error'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        return Response(summary, status=status.HTTP_200_OK)


@method_decorator(csrf_exempt, name='dispatch')
class WhatsAppWebhookView(APIView):
    """
    Webhook endpoint for the WhatsApp Cloud API.

    GET /webhooks/whatsapp/
    - hub.mode=subscribe: echo hub.challenge if hub.verify_token matches, else 403
    - anything else: 200 OK (liveness check)

    POST /webhooks/whatsapp/
    - Delivery receipts and inbound messages
    - Always 200, whatever happened inside
    """

    def get(self, request):
        mode = request.query_params.get('hub.mode')
        if mode != 'subscribe':
            return HttpResponse('OK', content_type='text/plain')

        challenge = verify_subscription(
            mode,
            request.query_params.get('hub.verify_token'),
            request.query_params.get('hub.challenge'),
        )
        if challenge is None:
            return HttpResponse('Forbidden', status=403, content_type='text/plain')

        logger.info("Webhook subscription verified")
        return HttpResponse(challenge, content_type='text/plain')

    def post(self, request):
        correlation_id = str(uuid.uuid4())

        try:
            if not verify_signature(request.body, request.META.get('HTTP_X_HUB_SIGNATURE_256')):
                logger.warning(f"Webhook signature mismatch, discarded, correlation_id={correlation_id}")
                return Response({'status': 'ok'}, status=status.HTTP_200_OK)

            payload = request.data
            result = process_whatsapp_payload(
                payload if isinstance(payload, dict) else {},
                default_workspace_id=settings.WA_DEFAULT_WORKSPACE_ID or None,
            )
            logger.info(
                f"Webhook handled: messages={result.processed_messages}, "
                f"statuses={result.processed_statuses}, correlation_id={correlation_id}"
            )

        except ParseError as e:
            logger.warning(f"Malformed webhook JSON: {e}, correlation_id={correlation_id}")
        except Exception as e:
            logger.error(
                f"Error processing webhook: {e}, correlation_id={correlation_id}",
                exc_info=True
            )

        return Response({'status': 'ok'}, status=status.HTTP_200_OK)
