"""
Celery configuration for the WhatsApp delivery gateway.
"""
import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'wa_gateway.settings')

app = Celery('wa_gateway')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
