"""Tests for the HTTP surface using aiohttp TestClient."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from aiohttp.test_utils import TestClient, TestServer

from dreamflow.dropbox.auth import OAuthError
from dreamflow.dropbox.vault import Credential
from dreamflow.pipeline.motifs import MotifCounter
from dreamflow.pipeline.processor import ProcessOutcome, RecordNotFound
from dreamflow.records.models import Record
from dreamflow.webhook.server import DreamflowServer, create_app
from dreamflow.webhook.signature import SIGNATURE_HEADER, compute_signature

APP_SECRET = "app-secret"
API_SECRET = "api-secret"
AUTH = {"X-API-Secret": API_SECRET}


@pytest.fixture
def webhook():
    mock = MagicMock()
    mock.handle = AsyncMock(return_value={"success": True, "processed_files": 1, "results": []})
    return mock


@pytest.fixture
def vault():
    mock = MagicMock()
    mock.begin_authorization = AsyncMock(
        return_value=("https://www.dropbox.com/oauth2/authorize?state=s", "s")
    )
    mock.complete_authorization = AsyncMock(
        return_value=Credential("user-1", "tok", account_id="dbid:1")
    )
    mock.status = AsyncMock(return_value={"connected": False})
    mock.revoke = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def pipeline():
    mock = MagicMock()
    mock.process = AsyncMock()
    mock.sweep = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def records():
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.list_by_user = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def motifs():
    mock = MagicMock()
    mock.list_for_user = AsyncMock(return_value=[])
    return mock


def _server(webhook, vault, pipeline, records, motifs, **overrides) -> DreamflowServer:
    kwargs = {
        "webhook": webhook,
        "vault": vault,
        "pipeline": pipeline,
        "records": records,
        "motifs": motifs,
        "app_key": "app-key",
        "app_secret": APP_SECRET,
        "api_secret": API_SECRET,
    }
    kwargs.update(overrides)
    return DreamflowServer(**kwargs)


@pytest.fixture
async def client(webhook, vault, pipeline, records, motifs):
    app = _server(webhook, vault, pipeline, records, motifs).create_app()
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


@pytest.fixture
async def unconfigured_client(webhook, vault, pipeline, records, motifs):
    server = _server(webhook, vault, pipeline, records, motifs, app_key=None, app_secret=None)
    async with TestClient(TestServer(server.create_app())) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestAuth:
    """Tests for the API secret check."""

    def test_no_secret_always_passes(self, webhook, vault, pipeline, records, motifs):
        server = _server(webhook, vault, pipeline, records, motifs, api_secret=None)
        assert server._check_auth(MagicMock()) is True

    def test_wrong_secret_rejected(self, webhook, vault, pipeline, records, motifs):
        server = _server(webhook, vault, pipeline, records, motifs)
        request = MagicMock()
        request.headers.get.return_value = "wrong"
        assert server._check_auth(request) is False

    def test_non_ascii_secret_rejected(self, webhook, vault, pipeline, records, motifs):
        server = _server(webhook, vault, pipeline, records, motifs)
        request = MagicMock()
        request.headers.get.return_value = "cafÃ©"
        assert server._check_auth(request) is False

    async def test_health_is_public(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}

    async def test_protected_route_requires_secret(self, client, records):
        resp = await client.get(f"/records/{uuid4()}")
        assert resp.status == 401
        assert await resp.json() == {"error": "Unauthorized"}
        records.get.assert_not_awaited()


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestWebhookVerify:
    """Tests for the GET challenge echo."""

    async def test_challenge_echoed(self, client):
        resp = await client.get("/webhook", params={"challenge": "abc123"})
        assert resp.status == 200
        assert await resp.text() == "abc123"
        assert resp.content_type == "text/plain"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    async def test_no_challenge(self, client):
        resp = await client.get("/webhook")
        assert resp.status == 200
        assert await resp.text() == "Webhook endpoint ready"

    async def test_unconfigured(self, unconfigured_client):
        resp = await unconfigured_client.get("/webhook", params={"challenge": "abc"})
        assert resp.status == 500


class TestWebhookNotify:
    """Tests for the signed POST notification."""

    async def test_valid_signature(self, client, webhook):
        body = json.dumps({"list_folder": {"accounts": ["dbid:1"]}}).encode()

        resp = await client.post(
            "/webhook",
            data=body,
            headers={SIGNATURE_HEADER: compute_signature(body, APP_SECRET)},
        )

        assert resp.status == 200
        assert (await resp.json())["processed_files"] == 1
        webhook.handle.assert_awaited_once_with({"list_folder": {"accounts": ["dbid:1"]}})

    async def test_missing_signature(self, client, webhook):
        resp = await client.post("/webhook", data=b"{}")
        assert resp.status == 401
        assert await resp.text() == "Missing signature"
        webhook.handle.assert_not_awaited()

    async def test_invalid_signature(self, client, webhook):
        """A signature over different bytes is rejected before any side effect."""
        signature = compute_signature(b'{"other": 1}', APP_SECRET)
        resp = await client.post("/webhook", data=b"{}", headers={SIGNATURE_HEADER: signature})
        assert resp.status == 401
        assert await resp.text() == "Invalid signature"
        webhook.handle.assert_not_awaited()

    async def test_non_ascii_signature(self, client, webhook):
        resp = await client.post("/webhook", data=b"{}", headers={SIGNATURE_HEADER: "café"})
        assert resp.status == 401
        assert await resp.text() == "Invalid signature"
        webhook.handle.assert_not_awaited()

    async def test_unconfigured_secret(self, unconfigured_client, webhook):
        resp = await unconfigured_client.post(
            "/webhook", data=b"{}", headers={SIGNATURE_HEADER: "00"}
        )
        assert resp.status == 500
        webhook.handle.assert_not_awaited()

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    async def test_invalid_json(self, client, webhook, body):
        resp = await client.post(
            "/webhook", data=body, headers={SIGNATURE_HEADER: compute_signature(body, APP_SECRET)}
        )
        assert resp.status == 400
        webhook.handle.assert_not_awaited()

    async def test_handler_error(self, client, webhook):
        webhook.handle.side_effect = RuntimeError("db down")
        body = b"{}"
        resp = await client.post(
            "/webhook", data=body, headers={SIGNATURE_HEADER: compute_signature(body, APP_SECRET)}
        )
        assert resp.status == 500
        assert await resp.json() == {"error": "Internal server error"}


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    """Tests for the OAuth handshake routes."""

    async def test_authorize_redirects(self, client, vault):
        resp = await client.get(
            "/oauth/authorize", params={"user_id": "user-1"}, allow_redirects=False
        )
        assert resp.status == 302
        assert resp.headers["Location"].startswith("https://www.dropbox.com/oauth2/authorize")
        vault.begin_authorization.assert_awaited_once_with("user-1")

    async def test_authorize_requires_user(self, client):
        resp = await client.get("/oauth/authorize", allow_redirects=False)
        assert resp.status == 400

    async def test_callback_success(self, client, vault):
        resp = await client.get("/oauth/callback", params={"code": "c", "state": "s"})
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert data["user_id"] == "user-1"
        assert data["account_id"] == "dbid:1"
        vault.complete_authorization.assert_awaited_once_with("s", "c")

    async def test_callback_denied(self, client, vault):
        resp = await client.get(
            "/oauth/callback",
            params={"error": "access_denied", "error_description": "user said no"},
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "access_denied"
        vault.complete_authorization.assert_not_awaited()

    async def test_callback_missing_code(self, client):
        resp = await client.get("/oauth/callback", params={"state": "s"})
        assert resp.status == 400

    async def test_callback_bad_state(self, client, vault):
        vault.complete_authorization.side_effect = OAuthError("Invalid or expired state")
        resp = await client.get("/oauth/callback", params={"code": "c", "state": "s"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid or expired state"

    async def test_status_requires_secret(self, client):
        resp = await client.get("/oauth/status", params={"user_id": "user-1"})
        assert resp.status == 401

    async def test_status(self, client):
        resp = await client.get("/oauth/status", params={"user_id": "user-1"}, headers=AUTH)
        assert resp.status == 200
        assert await resp.json() == {"connected": False}

    async def test_revoke(self, client, vault):
        resp = await client.post("/oauth/revoke", json={"user_id": "user-1"}, headers=AUTH)
        assert resp.status == 200
        assert await resp.json() == {"success": True, "revoked": True}
        vault.revoke.assert_awaited_once_with("user-1")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestProcessRoute:
    """Tests for re-entry into the pipeline."""

    @pytest.mark.parametrize(
        ("status", "http_status"),
        [("complete", 200), ("skipped", 200), ("exhausted", 409), ("failed", 502)],
    )
    async def test_outcome_status(self, client, pipeline, status, http_status):
        record_id = uuid4()
        pipeline.process.return_value = ProcessOutcome(record_id, status)

        resp = await client.post(f"/records/{record_id}/process", headers=AUTH)

        assert resp.status == http_status
        assert (await resp.json())["status"] == status
        pipeline.process.assert_awaited_once_with(record_id)

    async def test_unknown_record(self, client, pipeline):
        pipeline.process.side_effect = RecordNotFound("missing")
        resp = await client.post(f"/records/{uuid4()}/process", headers=AUTH)
        assert resp.status == 404

    async def test_invalid_id(self, client, pipeline):
        resp = await client.post("/records/not-a-uuid/process", headers=AUTH)
        assert resp.status == 400
        pipeline.process.assert_not_awaited()


class TestReadRoutes:
    """Tests for the record and motif reads."""

    async def test_get_record(self, client, records):
        record = Record(blob_path="k", user_id="user-1")
        records.get.return_value = record

        resp = await client.get(f"/records/{record.id}", headers=AUTH)

        assert resp.status == 200
        assert (await resp.json())["id"] == str(record.id)

    async def test_get_missing_record(self, client):
        resp = await client.get(f"/records/{uuid4()}", headers=AUTH)
        assert resp.status == 404

    async def test_list_records(self, client, records):
        records.list_by_user.return_value = [Record(blob_path="k", user_id="user-1")]

        resp = await client.get(
            "/users/user-1/records", params={"q": "water", "limit": "500"}, headers=AUTH
        )

        assert resp.status == 200
        assert len((await resp.json())["records"]) == 1
        records.list_by_user.assert_awaited_once_with("user-1", query="water", limit=200)

    @pytest.mark.parametrize("limit", ["0", "-1", "ten"])
    async def test_list_records_bad_limit(self, client, limit):
        resp = await client.get("/users/user-1/records", params={"limit": limit}, headers=AUTH)
        assert resp.status == 400

    async def test_list_motifs(self, client, motifs):
        motifs.list_for_user.return_value = [
            MotifCounter("user-1", "door", "symbol", date(2025, 6, 1), date(2025, 6, 2), 2)
        ]

        resp = await client.get("/users/user-1/motifs", headers=AUTH)

        assert resp.status == 200
        data = await resp.json()
        assert data["motifs"][0]["motif"] == "door"
        motifs.list_for_user.assert_awaited_once_with("user-1", limit=50)


def test_create_app_routes(webhook, vault, pipeline, records):
    app = create_app(webhook=webhook, vault=vault, pipeline=pipeline, records=records)
    paths = {route.resource.canonical for route in app.router.routes()}
    assert {
        "/health",
        "/webhook",
        "/oauth/authorize",
        "/oauth/callback",
        "/oauth/status",
        "/oauth/revoke",
        "/records/{record_id}/process",
        "/records/{record_id}",
        "/users/{user_id}/records",
        "/users/{user_id}/motifs",
    } <= paths
