"""
Django admin configuration for messaging app.

Outbox rows, jobs and the send log are delivery audit trails; they are
read-only here.
"""
from django.contrib import admin
from messaging.models import OutboxMessage, SendJob, SendJobItem, SendLog, WorkerHeartbeat


class ReadOnlyAdminMixin:
    """Disable manual creation and deletion."""

    def has_add_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class SendJobItemInline(ReadOnlyAdminMixin, admin.TabularInline):
    """Inline display of the recipients of a job."""
    model = SendJobItem
    extra = 0
    fields = ('id', 'to_phone', 'status', 'params', 'wa_message_id', 'error_message', 'sent_at')
    readonly_fields = fields
    can_delete = False


@admin.register(OutboxMessage)
class OutboxMessageAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin interface for OutboxMessage model."""

    list_display = ('id', 'workspace_id', 'message_type', 'status', 'attempts', 'next_run_at', 'locked_by')
    list_filter = ('status', 'message_type')
    search_fields = ('id', 'workspace_id', 'idempotency_key', 'last_error')
    readonly_fields = ('id', 'workspace_id', 'thread', 'connection', 'to_phone', 'message_type',
                       'payload', 'status', 'attempts', 'last_error', 'idempotency_key',
                       'next_run_at', 'locked_at', 'locked_by', 'created_at', 'updated_at')

    fieldsets = (
        ('Status', {
            'fields': ('id', 'status', 'attempts', 'last_error')
        }),
        ('Scheduling', {
            'fields': ('next_run_at', 'locked_at', 'locked_by', 'created_at', 'updated_at')
        }),
        ('Delivery', {
            'fields': ('workspace_id', 'thread', 'connection', 'to_phone', 'message_type', 'idempotency_key')
        }),
        ('Payload', {
            'fields': ('payload',),
            'classes': ('collapse',)
        }),
    )


@admin.register(SendJob)
class SendJobAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin interface for SendJob model."""

    list_display = ('id', 'name', 'workspace_id', 'status', 'total_count', 'sent_count',
                    'failed_count', 'queued_count', 'created_at')
    list_filter = ('status', 'created_at')
    search_fields = ('id', 'name', 'workspace_id')
    readonly_fields = ('id', 'workspace_id', 'connection', 'template', 'name', 'status',
                       'total_count', 'queued_count', 'sent_count', 'failed_count',
                       'global_values', 'rate_limit_per_minute', 'started_at',
                       'completed_at', 'created_by', 'created_at')
    inlines = [SendJobItemInline]


@admin.register(SendLog)
class SendLogAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Admin interface for SendLog model."""

    list_display = ('id', 'job', 'template_name', 'success', 'http_status', 'sent_at')
    list_filter = ('success', 'sent_at')
    search_fields = ('job__id', 'wa_message_id', 'to_phone_hash')
    readonly_fields = ('workspace_id', 'connection_id', 'template_id', 'job', 'job_item',
                       'to_phone_hash', 'template_name', 'template_language', 'params',
                       'success', 'wa_message_id', 'http_status', 'error_message',
                       'response_json', 'sent_at')

    fieldsets = (
        ('Attempt', {
            'fields': ('job', 'job_item', 'to_phone_hash', 'sent_at', 'success')
        }),
        ('Template', {
            'fields': ('template_id', 'template_name', 'template_language', 'params')
        }),
        ('Response', {
            'fields': ('http_status', 'wa_message_id', 'error_message', 'response_json')
        }),
    )


@admin.register(WorkerHeartbeat)
class WorkerHeartbeatAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ('worker_name', 'status', 'last_run_at', 'next_run_at', 'error_count')
    readonly_fields = ('worker_name', 'worker_type', 'status', 'last_run_at', 'next_run_at',
                       'error_count', 'last_error', 'metadata', 'updated_at')
