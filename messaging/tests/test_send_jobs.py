"""
Tests for bulk send jobs: creation, the rate-limited worker, cancellation.
"""
import hashlib
from datetime import timedelta
from itertools import count
from unittest.mock import patch

import httpx
import pytest
from django.utils import timezone

from messaging.models import (
    Connection,
    SendJob,
    SendJobItem,
    SendLog,
    TemplateParamDef,
    WorkerHeartbeat,
)
from messaging.services.gateway_client import SendResult
from messaging.services.send_jobs import (
    JobCreationError,
    cancel_send_job,
    claim_item,
    create_send_job,
    process_send_jobs,
    refresh_job_counts,
)

SEND_MESSAGE = 'messaging.services.gateway_client.send_message'


def _no_sleep(seconds):
    return None


def _ok_results():
    """Endless successful send results with distinct gateway ids."""
    ids = count(1)

    def _send(phone_number_id, token, payload):
        return SendResult(ok=True, message_id=f'wamid.J{next(ids)}', http_status=200, raw_response={})

    return _send


@pytest.fixture
def job_factory(workspace_id, connection, template):
    def _make(contacts, rate_limit_per_minute=60, **kwargs):
        return create_send_job(
            workspace_id=workspace_id,
            connection_id=connection.id,
            template_id=template.id,
            name='October promo',
            contact_ids=[c.id for c in contacts],
            rate_limit_per_minute=rate_limit_per_minute,
            **kwargs
        )
    return _make


@pytest.mark.django_db
class TestCreateSendJob:
    """Creating a job explodes it into per-recipient items."""

    def test_params_resolved_per_contact(self, job_factory, contact, template):
        job = job_factory(
            [contact],
            param_mapping=[
                {'paramIndex': 1, 'sourceType': 'contact_field', 'sourceValue': 'name'},
                {'paramIndex': 2, 'sourceType': 'manual', 'defaultValue': 'N/A'},
            ],
            global_values={'2': 'INV-7'},
        )

        assert job.status == SendJob.Status.PENDING
        assert job.total_count == 1
        assert job.queued_count == 1
        item = job.items.get()
        assert item.params == ['Budi', 'INV-7']
        assert item.to_phone == '+6281234'
        assert item.status == SendJobItem.Status.QUEUED
        assert TemplateParamDef.objects.filter(template=template).count() == 2

    def test_stored_mapping_reused(self, job_factory, contact, template, workspace_id):
        TemplateParamDef.objects.create(
            workspace_id=workspace_id, template=template, param_index=1,
            source_type='expression', source_value='{{contact.name}} from {{contact.city}}',
        )

        job = job_factory([contact], global_values={'2': 'X'})

        assert job.items.get().params == ['Budi from Bandung', 'X']

    def test_new_mapping_replaces_stored(self, job_factory, contact, template, workspace_id):
        TemplateParamDef.objects.create(
            workspace_id=workspace_id, template=template, param_index=2,
            source_type='manual', default_value='old',
        )

        job_factory([contact], param_mapping=[
            {'paramIndex': 1, 'sourceType': 'contact_field', 'sourceValue': 'email'},
        ])

        defs = list(TemplateParamDef.objects.filter(template=template))
        assert [(d.param_index, d.source_value) for d in defs] == [(1, 'email')]

    def test_tag_selection(self, workspace_id, connection, template, make_contacts):
        vip = make_contacts(2, tags=['vip'])
        make_contacts(3, tags=['cold'], prefix='62813000')

        job = create_send_job(
            workspace_id=workspace_id,
            connection_id=connection.id,
            template_id=template.id,
            name='VIP only',
            tag_ids=['vip'],
        )

        assert job.total_count == 2
        assert set(job.items.values_list('contact_id', flat=True)) == {c.id for c in vip}

    def test_wa_id_used_without_phone(self, job_factory, contact):
        contact.phone = ''
        contact.save()

        job = job_factory([contact])

        assert job.items.get().to_phone == '6281234'

    def test_no_contacts(self, job_factory):
        with pytest.raises(JobCreationError) as exc_info:
            job_factory([])

        assert exc_info.value.reason == 'no_contacts_found'
        assert SendJob.objects.count() == 0

    def test_connection_from_other_workspace(self, workspace_id, template, contact):
        foreign = Connection.objects.create(
            workspace_id='ws-other', phone_number_id='999', access_token='t'
        )

        with pytest.raises(JobCreationError) as exc_info:
            create_send_job(workspace_id, foreign.id, template.id, 'x', contact_ids=[contact.id])

        assert exc_info.value.reason == 'connection_not_found'

    def test_unknown_template(self, workspace_id, connection, contact):
        with pytest.raises(JobCreationError) as exc_info:
            create_send_job(workspace_id, connection.id, 424242, 'x', contact_ids=[contact.id])

        assert exc_info.value.reason == 'template_not_found'

    @pytest.mark.parametrize('rate_limit', [0, 201, -5])
    def test_rate_limit_bounds(self, job_factory, contact, rate_limit):
        with pytest.raises(JobCreationError) as exc_info:
            job_factory([contact], rate_limit_per_minute=rate_limit)

        assert exc_info.value.reason == 'invalid_rate_limit'

    def test_invalid_mapping_rolls_back(self, job_factory, contact, template):
        with pytest.raises(JobCreationError):
            job_factory([contact], param_mapping=[{'paramIndex': 0, 'sourceType': 'manual'}])

        assert SendJob.objects.count() == 0
        assert TemplateParamDef.objects.filter(template=template).count() == 0

    def test_job_creation_error_is_value_error(self):
        assert issubclass(JobCreationError, ValueError)


@pytest.mark.django_db
@pytest.mark.usefixtures('gateway_settings')
class TestSendJobWorker:
    """One worker cycle over in-flight jobs."""

    @patch(SEND_MESSAGE)
    def test_sends_and_logs(self, mock_send, job_factory, contact):
        mock_send.side_effect = _ok_results()
        job = job_factory([contact], global_values={'1': 'Budi', '2': 'INV-7'})

        summary = process_send_jobs(sleep=_no_sleep)

        assert summary == {'ok': True, 'processed': 1, 'sent': 1, 'failed': 0}
        item = job.items.get()
        assert item.status == SendJobItem.Status.SENT
        assert item.wa_message_id == 'wamid.J1'
        assert item.sent_at is not None

        phone_number_id, token, request = mock_send.call_args.args
        assert phone_number_id == '1098765'
        assert token == 'EAAG-test-token'
        assert request['to'] == '+6281234'
        assert request['template']['name'] == 'order_update'

        log = SendLog.objects.get()
        assert log.success is True
        assert log.job_id == job.id
        assert log.job_item_id == item.id
        assert log.template_name == 'order_update'
        assert log.params == ['Budi', 'INV-7']
        assert log.http_status == 200

    @patch(SEND_MESSAGE)
    def test_log_holds_hashed_phone_only(self, mock_send, job_factory, contact):
        mock_send.side_effect = _ok_results()
        job_factory([contact])

        process_send_jobs(sleep=_no_sleep)

        log = SendLog.objects.get()
        assert log.to_phone_hash == hashlib.sha256(b'+6281234').hexdigest()
        stored = ' '.join(str(v) for v in SendLog.objects.values().get().values())
        assert '6281234' not in stored.replace(log.to_phone_hash, '')

    @patch(SEND_MESSAGE)
    def test_first_run_marks_processing(self, mock_send, job_factory, make_contacts):
        mock_send.side_effect = _ok_results()
        job = job_factory(make_contacts(15))
        now = timezone.now()

        process_send_jobs(now=now, sleep=_no_sleep)

        job.refresh_from_db()
        assert job.status == SendJob.Status.PROCESSING
        assert job.started_at == now
        assert job.sent_count == 10
        assert job.queued_count == 5
        assert job.sent_count + job.failed_count + job.queued_count == job.total_count

    @patch(SEND_MESSAGE)
    def test_gateway_failure_is_terminal_for_item(self, mock_send, job_factory, make_contacts):
        mock_send.side_effect = [
            SendResult(ok=True, message_id='wamid.1', http_status=200),
            SendResult(ok=False, error_message='Invalid parameter', http_status=400,
                       raw_response={'error': {'message': 'Invalid parameter'}}),
            httpx.ReadTimeout('timed out'),
        ]
        job = job_factory(make_contacts(3))

        summary = process_send_jobs(sleep=_no_sleep)

        assert summary['sent'] == 1
        assert summary['failed'] == 2
        statuses = list(job.items.order_by('id').values_list('status', 'error_message'))
        assert statuses == [
            (SendJobItem.Status.SENT, None),
            (SendJobItem.Status.FAILED, 'Invalid parameter'),
            (SendJobItem.Status.FAILED, 'timed out'),
        ]
        assert SendLog.objects.filter(success=False).count() == 2

        job.refresh_from_db()
        assert job.status == SendJob.Status.COMPLETED
        assert job.queued_count == 0
        assert job.failed_count == 2

    @patch(SEND_MESSAGE)
    def test_throttle_between_sends(self, mock_send, settings, job_factory, make_contacts):
        settings.SEND_JOB_THROTTLE_SECONDS = 0.1
        mock_send.side_effect = _ok_results()
        job_factory(make_contacts(3))
        sleeps = []

        process_send_jobs(sleep=sleeps.append)

        assert sleeps == [0.1, 0.1]

    @patch(SEND_MESSAGE)
    def test_oldest_jobs_first_and_capped(self, mock_send, settings, job_factory, make_contacts):
        settings.SEND_JOB_MAX_JOBS = 2
        mock_send.side_effect = _ok_results()
        jobs = [job_factory(make_contacts(1, prefix=f'6281{n}00')) for n in range(3)]

        process_send_jobs(sleep=_no_sleep)

        statuses = [SendJob.objects.get(id=j.id).status for j in jobs]
        assert statuses == [SendJob.Status.COMPLETED, SendJob.Status.COMPLETED, SendJob.Status.PENDING]

    @patch(SEND_MESSAGE)
    def test_no_jobs(self, mock_send):
        summary = process_send_jobs(sleep=_no_sleep)

        assert summary['processed'] == 0
        assert summary['message'] == 'no_pending_jobs'

    @patch(SEND_MESSAGE)
    def test_heartbeat_recorded(self, mock_send, job_factory, contact):
        mock_send.side_effect = _ok_results()
        job_factory([contact])

        process_send_jobs(sleep=_no_sleep)

        heartbeat = WorkerHeartbeat.objects.get(worker_name='send-job-worker')
        assert heartbeat.metadata['sent'] == 1


@pytest.mark.django_db
@pytest.mark.usefixtures('gateway_settings')
class TestSendJobConfigurationFailures:
    """A job that cannot send fails all of its queued items at once."""

    @patch(SEND_MESSAGE)
    def test_connection_gone(self, mock_send, job_factory, make_contacts, connection):
        job = job_factory(make_contacts(12))
        Connection.objects.filter(id=connection.id).update(is_active=False)

        process_send_jobs(sleep=_no_sleep)

        mock_send.assert_not_called()
        assert set(job.items.values_list('status', 'error_message')) == {
            (SendJobItem.Status.FAILED, 'connection_not_found')
        }
        job.refresh_from_db()
        assert job.status == SendJob.Status.COMPLETED
        assert job.failed_count == 12
        assert job.queued_count == 0

    @patch(SEND_MESSAGE)
    def test_token_missing(self, mock_send, job_factory, contact, connection):
        job = job_factory([contact])
        Connection.objects.filter(id=connection.id).update(access_token=None)

        process_send_jobs(sleep=_no_sleep)

        assert job.items.get().error_message == 'token_not_found'

    @patch(SEND_MESSAGE)
    def test_template_missing(self, mock_send, job_factory, contact):
        job = job_factory([contact])
        SendJob.objects.filter(id=job.id).update(template=None)

        process_send_jobs(sleep=_no_sleep)

        assert job.items.get().error_message == 'template_not_found'
        mock_send.assert_not_called()


@pytest.mark.django_db
@pytest.mark.usefixtures('gateway_settings')
class TestSendJobRateLimit:
    """
    rate_limit_per_minute=10 with 50 queued items: no rolling 60 second
    window ever holds more than 10 successful sends.
    """

    @patch(SEND_MESSAGE)
    def test_rolling_window_respected(self, mock_send, job_factory, make_contacts):
        mock_send.side_effect = _ok_results()
        job = job_factory(make_contacts(50), rate_limit_per_minute=10)
        start = timezone.now()

        for second in range(0, 181, 15):
            process_send_jobs(now=start + timedelta(seconds=second), sleep=_no_sleep)

        sent_times = list(
            SendLog.objects.filter(job=job, success=True).order_by('sent_at').values_list('sent_at', flat=True)
        )
        assert sent_times
        for window_start in sent_times:
            in_window = [t for t in sent_times if window_start <= t < window_start + timedelta(seconds=60)]
            assert len(in_window) <= 10

        # 0s, 75s and 150s each open a fresh window
        assert len(sent_times) == 30
        job.refresh_from_db()
        assert job.status == SendJob.Status.PROCESSING
        assert job.queued_count == 20

    @patch(SEND_MESSAGE)
    def test_exhausted_budget_skips_job(self, mock_send, job_factory, make_contacts):
        mock_send.side_effect = _ok_results()
        job_factory(make_contacts(20), rate_limit_per_minute=5)
        now = timezone.now()

        first = process_send_jobs(now=now, sleep=_no_sleep)
        second = process_send_jobs(now=now + timedelta(seconds=30), sleep=_no_sleep)

        assert first['sent'] == 5
        assert second['processed'] == 0
        assert mock_send.call_count == 5

    @patch(SEND_MESSAGE)
    def test_failed_sends_do_not_consume_budget(self, mock_send, job_factory, make_contacts):
        mock_send.return_value = SendResult(ok=False, error_message='http_500', http_status=500)
        job_factory(make_contacts(20), rate_limit_per_minute=5)
        now = timezone.now()

        process_send_jobs(now=now, sleep=_no_sleep)
        second = process_send_jobs(now=now + timedelta(seconds=1), sleep=_no_sleep)

        assert second['processed'] == 5


@pytest.mark.django_db
@pytest.mark.usefixtures('gateway_settings')
class TestSendJobOverlappingRuns:
    """A run that starts while another is mid-slice never resends its items."""

    @patch(SEND_MESSAGE)
    def test_second_run_mid_slice(self, mock_send, job_factory, make_contacts):
        ok = _ok_results()
        recipients = []
        started = []
        nested = []

        def _send(phone_number_id, token, payload):
            recipients.append(payload['to'])
            if not started:
                started.append(True)
                nested.append(process_send_jobs(sleep=_no_sleep))
            return ok(phone_number_id, token, payload)

        mock_send.side_effect = _send
        job = job_factory(make_contacts(4))

        outer = process_send_jobs(sleep=_no_sleep)

        assert len(recipients) == 4
        assert len(set(recipients)) == 4
        assert nested[0]['sent'] == 3
        assert outer['processed'] == 1
        assert outer['sent'] == 1
        assert SendLog.objects.filter(job=job).count() == 4

        job.refresh_from_db()
        assert job.sent_count == 4
        assert job.queued_count == 0

    def test_claim_item_only_once(self, job_factory, contact):
        item = job_factory([contact]).items.get()

        assert claim_item(item.id) is True
        assert claim_item(item.id) is False

        item.refresh_from_db()
        assert item.status == SendJobItem.Status.SENDING

    @patch(SEND_MESSAGE)
    def test_each_send_stamped_when_it_happens(self, mock_send, job_factory, make_contacts):
        mock_send.side_effect = _ok_results()
        job = job_factory(make_contacts(3))
        start = timezone.now()
        ticks = count(1)

        with patch('django.utils.timezone.now', side_effect=lambda: start + timedelta(seconds=next(ticks))):
            process_send_jobs(sleep=_no_sleep)

        logs = list(SendLog.objects.filter(job=job).select_related('job_item').order_by('id'))
        stamps = [log.sent_at for log in logs]
        assert len(set(stamps)) == 3
        assert stamps == sorted(stamps)
        for log in logs:
            assert log.job_item.sent_at == log.sent_at


@pytest.mark.django_db
@pytest.mark.usefixtures('gateway_settings')
class TestSendJobCompletion:
    """Finished jobs become completed and stay that way."""

    @patch(SEND_MESSAGE)
    def test_completed_on_next_cycle(self, mock_send, job_factory, make_contacts):
        job = job_factory(make_contacts(3))
        SendJob.objects.filter(id=job.id).update(status=SendJob.Status.PROCESSING)
        job.items.update(status=SendJobItem.Status.FAILED, error_message='manual')

        process_send_jobs(sleep=_no_sleep)

        job.refresh_from_db()
        assert job.status == SendJob.Status.COMPLETED
        assert job.queued_count == 0
        assert job.failed_count == 3
        assert job.completed_at is not None
        mock_send.assert_not_called()

    @patch(SEND_MESSAGE)
    def test_completed_never_regresses(self, mock_send, job_factory, contact):
        mock_send.side_effect = _ok_results()
        job = job_factory([contact])
        process_send_jobs(sleep=_no_sleep)
        job.refresh_from_db()
        completed_at = job.completed_at

        refresh_job_counts(job)
        process_send_jobs(sleep=_no_sleep)

        job.refresh_from_db()
        assert job.status == SendJob.Status.COMPLETED
        assert job.completed_at == completed_at


@pytest.mark.django_db
class TestCancelSendJob:

    def test_queued_items_skipped(self, job_factory, make_contacts):
        job = job_factory(make_contacts(4))
        first = job.items.order_by('id').first()
        SendJobItem.objects.filter(id=first.id).update(status=SendJobItem.Status.SENT)

        assert cancel_send_job(job.id) is True

        job.refresh_from_db()
        assert job.status == SendJob.Status.CANCELLED
        assert job.queued_count == 0
        assert job.sent_count == 1
        assert job.items.filter(status=SendJobItem.Status.SKIPPED).count() == 3

    def test_terminal_job_untouched(self, job_factory, contact):
        job = job_factory([contact])
        SendJob.objects.filter(id=job.id).update(status=SendJob.Status.COMPLETED)

        assert cancel_send_job(job.id) is False
        assert job.items.get().status == SendJobItem.Status.QUEUED

    def test_cancelled_job_not_processed(self, settings, job_factory, contact):
        settings.SEND_JOB_THROTTLE_SECONDS = 0
        job = job_factory([contact])
        cancel_send_job(job.id)

        with patch(SEND_MESSAGE) as mock_send:
            summary = process_send_jobs(sleep=_no_sleep)

        mock_send.assert_not_called()
        assert summary['processed'] == 0
