"""
Data models for the WhatsApp delivery gateway.

Workspaces are owned by an external tenant service; every row here carries a
plain ``workspace_id`` reference instead of a foreign key.
"""
from django.db import models


class Connection(models.Model):
    """A gateway phone number identity and its access token for one workspace."""

    workspace_id = models.CharField(max_length=64, db_index=True)
    phone_number_id = models.CharField(max_length=64, db_index=True)
    waba_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    display_phone = models.CharField(max_length=32, blank=True, default='')
    access_token = models.TextField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Connection {self.phone_number_id} ({self.workspace_id})"


class Template(models.Model):
    """An approved message template registered with the gateway."""

    workspace_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=255)
    language = models.CharField(max_length=16, default='en')
    variable_count = models.PositiveIntegerField(default=0)
    body = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.name} [{self.language}]"


class TemplateParamDef(models.Model):
    """
    How to fill one ``{{n}}`` placeholder of a template for a recipient.
    """

    class SourceType(models.TextChoices):
        MANUAL = 'manual', 'Manual'
        CONTACT_FIELD = 'contact_field', 'Contact field'
        EXPRESSION = 'expression', 'Expression'

    workspace_id = models.CharField(max_length=64, db_index=True)
    template = models.ForeignKey(
        Template,
        on_delete=models.CASCADE,
        related_name='param_defs'
    )
    param_index = models.PositiveIntegerField()
    source_type = models.CharField(max_length=20, choices=SourceType.choices)
    source_value = models.TextField(null=True, blank=True)
    default_value = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ['template', 'param_index']
        constraints = [
            models.UniqueConstraint(
                fields=['template', 'param_index'],
                name='uniq_template_param_index'
            ),
        ]

    def __str__(self):
        return f"{{{{{self.param_index}}}}} <- {self.source_type}"


class Contact(models.Model):
    """A customer reachable on the gateway within one workspace."""

    workspace_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=255, blank=True, default='')
    phone = models.CharField(max_length=32, blank=True, default='')
    phone_norm = models.CharField(max_length=32)
    email = models.CharField(max_length=255, blank=True, default='')
    wa_id = models.CharField(max_length=32, blank=True, default='')
    data = models.JSONField(default=dict, blank=True)
    tags = models.JSONField(default=list, blank=True)
    last_seen_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['workspace_id', 'phone_norm'],
                name='uniq_contact_workspace_phone'
            ),
        ]

    def __str__(self):
        return f"Contact {self.id} - {self.name or self.phone_norm}"


class Conversation(models.Model):
    """
    Per-workspace, per-contact conversation thread with its SLA state.
    """

    class TicketStatus(models.TextChoices):
        OPEN = 'open', 'Open'
        PENDING = 'pending', 'Pending'
        SOLVED = 'solved', 'Solved'
        SPAM = 'spam', 'Spam'

    class Priority(models.TextChoices):
        LOW = 'low', 'Low'
        MED = 'med', 'Medium'
        HIGH = 'high', 'High'
        URGENT = 'urgent', 'Urgent'

    class SlaStatus(models.TextChoices):
        OK = 'ok', 'OK'
        DUE_SOON = 'due_soon', 'Due soon'
        BREACHED = 'breached', 'Breached'

    workspace_id = models.CharField(max_length=64, db_index=True)
    contact = models.ForeignKey(
        Contact,
        on_delete=models.CASCADE,
        related_name='conversations'
    )
    ticket_status = models.CharField(
        max_length=16,
        choices=TicketStatus.choices,
        default=TicketStatus.OPEN
    )
    priority = models.CharField(
        max_length=16,
        choices=Priority.choices,
        default=Priority.LOW
    )
    unread_count = models.PositiveIntegerField(default=0)
    last_message_at = models.DateTimeField(null=True, blank=True)
    last_customer_message_at = models.DateTimeField(null=True, blank=True)
    next_response_due_at = models.DateTimeField(null=True, blank=True)
    resolution_due_at = models.DateTimeField(null=True, blank=True)
    sla_status = models.CharField(
        max_length=16,
        choices=SlaStatus.choices,
        default=SlaStatus.OK
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['workspace_id', 'contact'],
                name='uniq_conversation_contact'
            ),
        ]

    def __str__(self):
        return f"Conversation {self.id} - {self.ticket_status}"


class Message(models.Model):
    """
    Canonical inbound or outbound message row.

    ``wa_message_id`` is the gateway-assigned id; it is the dedup key for
    inbound webhooks and the correlation key for delivery receipts.
    """

    class Direction(models.TextChoices):
        IN = 'in', 'Inbound'
        OUT = 'out', 'Outbound'

    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENT = 'sent', 'Sent'
        DELIVERED = 'delivered', 'Delivered'
        READ = 'read', 'Read'
        FAILED = 'failed', 'Failed'

    workspace_id = models.CharField(max_length=64, db_index=True)
    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name='messages',
        null=True,
        blank=True
    )
    direction = models.CharField(max_length=3, choices=Direction.choices)
    text = models.TextField(blank=True, default='')
    ts = models.DateTimeField(db_index=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        null=True,
        blank=True
    )
    wa_message_id = models.CharField(max_length=128, null=True, blank=True, unique=True)
    error_reason = models.TextField(null=True, blank=True)
    media_url = models.TextField(null=True, blank=True)
    media_mime = models.CharField(max_length=128, null=True, blank=True)
    media_sha256 = models.CharField(max_length=128, null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    status_updated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['ts']

    def __str__(self):
        return f"Message {self.id} ({self.direction}) - {self.status}"


class MessageEvent(models.Model):
    """Append-only audit trail of what happened to a message."""

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name='events'
    )
    event_type = models.CharField(max_length=64)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['message', 'created_at']

    def __str__(self):
        return f"{self.event_type} for Message {self.message_id}"


class OutboxMessage(models.Model):
    """
    One pending single-message delivery.

    A row is owned by a worker while ``locked_at`` is set and younger than
    the lock timeout. Terminal rows get ``next_run_at`` pushed far into the
    future so they are never claimed again.
    """

    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    class MessageType(models.TextChoices):
        TEXT = 'text', 'Text'
        TEMPLATE = 'template', 'Template'

    workspace_id = models.CharField(max_length=64, db_index=True)
    thread = models.ForeignKey(
        Conversation,
        on_delete=models.SET_NULL,
        related_name='outbox_messages',
        null=True,
        blank=True
    )
    connection = models.ForeignKey(
        Connection,
        on_delete=models.SET_NULL,
        related_name='outbox_messages',
        null=True,
        blank=True
    )
    to_phone = models.CharField(max_length=32, blank=True, default='')
    message_type = models.CharField(
        max_length=16,
        choices=MessageType.choices,
        default=MessageType.TEXT
    )
    payload = models.JSONField(default=dict)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.QUEUED,
        db_index=True
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(null=True, blank=True)
    idempotency_key = models.CharField(max_length=128, unique=True)
    next_run_at = models.DateTimeField(db_index=True)
    locked_at = models.DateTimeField(null=True, blank=True)
    locked_by = models.CharField(max_length=128, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['next_run_at']
        indexes = [
            models.Index(fields=['status', 'next_run_at'], name='outbox_status_next_run_idx'),
        ]

    def __str__(self):
        return f"Outbox {self.id} - {self.status} (attempt {self.attempts})"


class SendJob(models.Model):
    """
    A bulk template campaign, exploded into one SendJobItem per recipient.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PROCESSING = 'processing', 'Processing'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'
        CANCELLED = 'cancelled', 'Cancelled'

    workspace_id = models.CharField(max_length=64, db_index=True)
    connection = models.ForeignKey(
        Connection,
        on_delete=models.PROTECT,
        related_name='send_jobs',
        null=True
    )
    template = models.ForeignKey(
        Template,
        on_delete=models.PROTECT,
        related_name='send_jobs',
        null=True
    )
    name = models.CharField(max_length=255)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    total_count = models.PositiveIntegerField(default=0)
    queued_count = models.PositiveIntegerField(default=0)
    sent_count = models.PositiveIntegerField(default=0)
    failed_count = models.PositiveIntegerField(default=0)
    global_values = models.JSONField(default=dict, blank=True)
    rate_limit_per_minute = models.PositiveIntegerField(default=60)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_by = models.CharField(max_length=64, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)

    class Meta:
        ordering = ['created_at']

    def __str__(self):
        return f"SendJob {self.id} '{self.name}' - {self.status}"


class SendJobItem(models.Model):
    """One recipient of a SendJob with its pre-resolved template params."""

    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENDING = 'sending', 'Sending'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'
        SKIPPED = 'skipped', 'Skipped'

    job = models.ForeignKey(
        SendJob,
        on_delete=models.CASCADE,
        related_name='items'
    )
    workspace_id = models.CharField(max_length=64)
    contact = models.ForeignKey(
        Contact,
        on_delete=models.SET_NULL,
        related_name='send_job_items',
        null=True,
        blank=True
    )
    to_phone = models.CharField(max_length=32)
    params = models.JSONField(default=list, blank=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.QUEUED
    )
    wa_message_id = models.CharField(max_length=128, null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        indexes = [
            models.Index(fields=['job', 'status'], name='sendjobitem_job_status_idx'),
        ]

    def __str__(self):
        return f"Item {self.id} of SendJob {self.job_id} - {self.status}"


class SendLog(models.Model):
    """
    Append-only record of every bulk delivery attempt.

    Holds a SHA-256 of the recipient phone, never the raw number. Also the
    source of truth for the per-job rolling rate limit.
    """

    workspace_id = models.CharField(max_length=64)
    connection_id = models.BigIntegerField(null=True, blank=True)
    template_id = models.BigIntegerField(null=True, blank=True)
    job = models.ForeignKey(
        SendJob,
        on_delete=models.CASCADE,
        related_name='logs',
        null=True,
        blank=True
    )
    job_item = models.ForeignKey(
        SendJobItem,
        on_delete=models.SET_NULL,
        related_name='logs',
        null=True,
        blank=True
    )
    to_phone_hash = models.CharField(max_length=64)
    template_name = models.CharField(max_length=255, blank=True, default='')
    template_language = models.CharField(max_length=16, blank=True, default='')
    params = models.JSONField(default=list, blank=True)
    success = models.BooleanField(default=False)
    wa_message_id = models.CharField(max_length=128, null=True, blank=True)
    http_status = models.PositiveIntegerField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    response_json = models.JSONField(null=True, blank=True)
    sent_at = models.DateTimeField(db_index=True)

    class Meta:
        ordering = ['sent_at']
        indexes = [
            models.Index(fields=['job', 'success', 'sent_at'], name='sendlog_job_rate_idx'),
        ]

    def __str__(self):
        return f"SendLog {self.id} job={self.job_id} - {'Success' if self.success else 'Failed'}"


class WorkerHeartbeat(models.Model):
    """Last known run of each periodic worker."""

    worker_name = models.CharField(max_length=64, unique=True)
    worker_type = models.CharField(max_length=32, default='cron')
    status = models.CharField(max_length=32)
    last_run_at = models.DateTimeField(null=True, blank=True)
    next_run_at = models.DateTimeField(null=True, blank=True)
    error_count = models.PositiveIntegerField(default=0)
    last_error = models.TextField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.worker_name} - {self.status}"
