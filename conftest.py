import os
import sys
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'wa_gateway.settings')

WORKSPACE_ID = 'ws-test'


@pytest.fixture
def workspace_id():
    """Workspace every fixture row belongs to."""
    return WORKSPACE_ID


@pytest.fixture
def gateway_settings(settings):
    """Live sending enabled, no throttling, known secrets."""
    settings.ENABLE_WA_SEND = True
    settings.SEND_JOB_THROTTLE_SECONDS = 0
    settings.CRON_SECRET = 'test-cron-secret'
    settings.WA_VERIFY_TOKEN = 'test-verify-token'
    settings.WA_APP_SECRET = ''
    settings.WA_DEFAULT_WORKSPACE_ID = ''
    settings.WA_GRAPH_API_URL = 'https://graph.example.test/v19.0'
    settings.WA_GRAPH_TOKEN = 'app-token'
    settings.OUTBOX_MAX_ATTEMPTS = 5
    settings.OUTBOX_BATCH_SIZE = 20
    settings.SEND_JOB_BATCH_SIZE = 10
    settings.SEND_JOB_MAX_JOBS = 5
    return settings


@pytest.fixture
def connection(db, workspace_id):
    from messaging.models import Connection
    return Connection.objects.create(
        workspace_id=workspace_id,
        phone_number_id='1098765',
        waba_id='waba-1',
        display_phone='+62 811 000',
        access_token='EAAG-test-token',
    )


@pytest.fixture
def template(db, workspace_id):
    from messaging.models import Template
    return Template.objects.create(
        workspace_id=workspace_id,
        name='order_update',
        language='id',
        variable_count=2,
        body='Hi {{1}}, your order {{2}} is on its way',
    )


@pytest.fixture
def contact(db, workspace_id):
    from messaging.models import Contact
    return Contact.objects.create(
        workspace_id=workspace_id,
        name='Budi',
        phone='+6281234',
        phone_norm='6281234',
        email='budi@example.com',
        wa_id='6281234',
        data={'city': 'Bandung'},
        tags=['vip'],
    )


@pytest.fixture
def conversation(db, workspace_id, contact):
    from messaging.models import Conversation
    return Conversation.objects.create(workspace_id=workspace_id, contact=contact)


@pytest.fixture
def make_contacts(db, workspace_id):
    """Factory creating ``count`` contacts with distinct phone numbers."""
    from messaging.models import Contact

    def _make(count, tags=None, prefix='62812000'):
        contacts = []
        for i in range(count):
            phone = f"+{prefix}{i:04d}"
            contacts.append(Contact.objects.create(
                workspace_id=workspace_id,
                name=f'Contact {i}',
                phone=phone,
                phone_norm=phone.lstrip('+'),
                tags=list(tags or []),
            ))
        return contacts

    return _make
