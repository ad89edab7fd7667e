"""
URL configuration for messaging app.
"""
from django.urls import path
from messaging.views import OutboxTriggerView, OutboxWorkerView, SendJobWorkerView, WhatsAppWebhookView

urlpatterns = [
    path('workers/outbox/', OutboxWorkerView.as_view(), name='outbox-worker'),
    path('workers/send-jobs/', SendJobWorkerView.as_view(), name='send-job-worker'),
    path('webhooks/whatsapp/', WhatsAppWebhookView.as_view(), name='whatsapp-webhook'),
    path('webhooks/outbox-trigger/', OutboxTriggerView.as_view(), name='outbox-trigger'),
]
