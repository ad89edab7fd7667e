"""
Live e2e tests against running services.

Requires the API (with WA_DEFAULT_WORKSPACE_ID set), PostgreSQL and
tools/mock_graph_api.py running. Set LIVE_E2E=1 to enable.
"""
import os
import time
import uuid
import logging

import httpx
import psycopg2
import pytest


LIVE_E2E = os.getenv("LIVE_E2E", "").lower() in {"1", "true", "yes"}
API_BASE_URL = os.getenv("LIVE_E2E_API_URL", "http://localhost:8004")

logger = logging.getLogger(__name__)


pytestmark = pytest.mark.skipif(
    not LIVE_E2E,
    reason="LIVE_E2E not enabled (set LIVE_E2E=1)",
)


def _ensure_reachable(url: str, name: str) -> None:
    try:
        logger.info("Checking reachability for %s at %s", name, url)
        httpx.get(url, timeout=3.0)
    except httpx.HTTPError:
        pytest.skip(f"{name} not reachable at {url}. Start the e2e stack first.")


def _get_db_conn():
    db_name = os.getenv("LIVE_E2E_DB_NAME", os.getenv("DB_NAME", "wa_gateway"))
    db_user = os.getenv("LIVE_E2E_DB_USER", os.getenv("DB_USER", "postgres"))
    db_password = os.getenv("LIVE_E2E_DB_PASSWORD", os.getenv("DB_PASSWORD", "postgres"))
    db_host = os.getenv("LIVE_E2E_DB_HOST", os.getenv("DB_HOST", "localhost"))
    db_port = int(os.getenv("LIVE_E2E_DB_PORT", os.getenv("DB_PORT", "5432")))

    try:
        return psycopg2.connect(
            dbname=db_name,
            user=db_user,
            password=db_password,
            host=db_host,
            port=db_port,
        )
    except psycopg2.OperationalError:
        pytest.skip("PostgreSQL not reachable. Ensure the e2e DB is up and ports are exposed.")


def _inbound_message_rows(wa_message_id: str):
    with _get_db_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT m.direction, c.unread_count
                FROM messaging_message m
                JOIN messaging_conversation c ON c.id = m.conversation_id
                WHERE m.wa_message_id = %s
                """,
                (wa_message_id,),
            )
            return cur.fetchall()


def _wait_for_rows(wa_message_id: str, expected: int, timeout_seconds: int = 10):
    deadline = time.time() + timeout_seconds
    rows = []
    while time.time() < deadline:
        rows = _inbound_message_rows(wa_message_id)
        if len(rows) >= expected:
            return rows
        time.sleep(0.5)
    return rows


def _webhook_payload(wa_message_id: str, sender: str) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": os.getenv("LIVE_E2E_WABA_ID", "e2e-waba"),
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "contacts": [{"wa_id": sender, "profile": {"name": "E2E Customer"}}],
                    "messages": [{
                        "id": wa_message_id,
                        "from": sender,
                        "timestamp": str(int(time.time())),
                        "type": "text",
                        "text": {"body": "halo dari e2e"},
                    }],
                },
            }],
        }],
    }


def test_live_inbound_message_ingested_once():
    _ensure_reachable(f"{API_BASE_URL}/webhooks/whatsapp/", "Webhook API")

    wa_message_id = f"wamid.E2E{uuid.uuid4().hex[:12]}"
    sender = f"62899{int(time.time()) % 10_000_000:07d}"
    payload = _webhook_payload(wa_message_id, sender)

    for _ in range(2):
        logger.info("Posting inbound message %s to %s/webhooks/whatsapp/", wa_message_id, API_BASE_URL)
        response = httpx.post(f"{API_BASE_URL}/webhooks/whatsapp/", json=payload, timeout=10.0)
        assert response.status_code == 200

    rows = _wait_for_rows(wa_message_id, expected=1)
    logger.info("Rows for %s: %s", wa_message_id, rows)
    assert rows == [("in", 1)]


def test_live_outbox_trigger_requires_secret():
    _ensure_reachable(f"{API_BASE_URL}/webhooks/whatsapp/", "Webhook API")

    response = httpx.post(
        f"{API_BASE_URL}/workers/outbox/",
        headers={"Authorization": "Bearer definitely-wrong"},
        timeout=10.0,
    )
    assert response.status_code in (401, 500)


def test_live_outbox_trigger_runs_batch():
    cron_secret = os.getenv("CRON_SECRET")
    if not cron_secret:
        pytest.skip("CRON_SECRET not set for live e2e")
    _ensure_reachable(f"{API_BASE_URL}/webhooks/whatsapp/", "Webhook API")

    response = httpx.post(
        f"{API_BASE_URL}/workers/outbox/",
        headers={"Authorization": f"Bearer {cron_secret}"},
        timeout=30.0,
    )
    logger.info("Outbox trigger response: %s", response.text)
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert set(body) >= {"processed", "sent", "failed", "requeued"}
