"""
Django settings for wa_gateway project.
"""
import os
import sys
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', 'True').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

# 'production' turns a missing CRON_SECRET into a hard failure
APP_ENV = os.getenv('APP_ENV', 'development').lower()

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'messaging',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'wa_gateway.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'wa_gateway.wsgi.application'

# Database configuration
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('DB_NAME', 'wa_gateway'),
        'USER': os.getenv('DB_USER', 'postgres'),
        'PASSWORD': os.getenv('DB_PASSWORD', 'postgres'),
        'HOST': os.getenv('DB_HOST', 'localhost'),
        'PORT': os.getenv('DB_PORT', '5432'),
    }
}

# Use SQLite for tests to avoid requiring a running PostgreSQL server
if (
    os.getenv('USE_SQLITE_FOR_TESTS', '').lower() == 'true'
    or any('pytest' in arg for arg in sys.argv)
    or os.getenv('PYTEST_CURRENT_TEST')
):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_NAME', ':memory:'),
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Celery configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
# Hard ceiling per worker invocation; unfinished claims are picked up again
# once their lease expires.
CELERY_TASK_TIME_LIMIT = int(os.getenv('CELERY_TASK_TIME_LIMIT', '60'))

CELERY_BEAT_SCHEDULE = {
    'outbox-worker': {
        'task': 'messaging.tasks.run_outbox_worker',
        'schedule': timedelta(minutes=1),
    },
    'send-job-worker': {
        'task': 'messaging.tasks.run_send_job_worker',
        'schedule': timedelta(minutes=1),
    },
}

# Worker trigger authentication
CRON_SECRET = os.getenv('CRON_SECRET', '')
# Database webhook that delivers one outbox row on insert
WEBHOOK_SECRET = os.getenv('WEBHOOK_SECRET') or CRON_SECRET

# WhatsApp Cloud API configuration
WA_GRAPH_API_URL = os.getenv('WA_GRAPH_API_URL', 'https://graph.facebook.com/v19.0')
WA_GRAPH_TOKEN = os.getenv('WA_GRAPH_TOKEN', '')
WA_VERIFY_TOKEN = os.getenv('WA_VERIFY_TOKEN', '')
WA_APP_SECRET = os.getenv('WA_APP_SECRET', '')
WA_DEFAULT_WORKSPACE_ID = os.getenv('WA_DEFAULT_WORKSPACE_ID', '')
ENABLE_WA_SEND = os.getenv('ENABLE_WA_SEND', 'false').lower() == 'true'
GATEWAY_TIMEOUT_SECONDS = float(os.getenv('GATEWAY_TIMEOUT_SECONDS', '15'))

# Outbox worker
OUTBOX_BATCH_SIZE = int(os.getenv('WORKER_BATCH_SIZE', '20') or 20)
OUTBOX_MAX_ATTEMPTS = int(os.getenv('WORKER_MAX_ATTEMPTS', '5') or 5)
OUTBOX_LOCK_TIMEOUT_SECONDS = int(os.getenv('OUTBOX_LOCK_TIMEOUT_SECONDS', '300'))

# Bulk send worker
SEND_JOB_BATCH_SIZE = int(os.getenv('SEND_JOB_BATCH_SIZE', '10'))
SEND_JOB_MAX_JOBS = int(os.getenv('SEND_JOB_MAX_JOBS', '5'))
SEND_JOB_THROTTLE_SECONDS = float(os.getenv('SEND_JOB_THROTTLE_SECONDS', '0.1'))

# Logging configuration
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'messaging': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
    },
}

# REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
}
