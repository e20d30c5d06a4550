"""Tests for the FastAPI backend."""
import asyncio
import json
import time
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from sqlalchemy import select

from opsinbox.ai_triage import TriageEngine
from opsinbox.cache import TriageCache
from opsinbox.config import Config
from opsinbox.database import TriageResultRecord, init_db
from opsinbox.gmail_client import EmailDetail, EmailMeta, EmailPage, GmailApiError, GmailClient
from opsinbox.repository import OpsStateRepository
from opsinbox.token_store import TokenStore
from opsinbox.triage_rules import TriageResult
from opsinbox.web import create_app, parse_limit

TOKENS = {"access_token": "ya29.access", "refresh_token": "1//refresh"}
ACCOUNT_EMAIL = "ops@example.com"


def make_config(tmp_path: Path, **overrides) -> Config:
    values = dict(
        port=3000,
        frontend_redirect_url=None,
        cors_origins=[],
        token_encryption_key=None,
        db_path=tmp_path / "opsinbox.db",
        token_path=tmp_path / "token.json",
        google_client_id="id",
        google_client_secret="secret",
        google_redirect_uri="http://localhost:3000/oauth2callback",
        log_level="INFO",
        claude_model="test-model",
        ai_triage_timeout=5,
        triage_cache_ttl=30,
    )
    values.update(overrides)
    return Config(**values)


def sample_page():
    return EmailPage(
        items=[
            EmailMeta("msg_1", "t1", "alerts@example.com", "Security alert", "suspicious sign-in",
                      "Mon, 16 Feb 2026 10:00:00 +0000"),
            EmailMeta("msg_2", "t2", "friend@example.com", "Lunch?", "Want to catch up",
                      "Mon, 16 Feb 2026 11:00:00 +0000"),
        ],
        next_page_token="page-2",
    )


@pytest.fixture()
def gmail():
    client = MagicMock()
    client.list_email_metas_page.return_value = sample_page()
    client.list_email_metas.return_value = sample_page().items
    client.get_profile_email.return_value = ACCOUNT_EMAIL
    client.credentials = None
    return client


@pytest.fixture()
def oauth():
    fake = MagicMock()
    fake.authorization_url.return_value = "https://accounts.google.com/o/oauth2/auth?client_id=id"
    fake.exchange_code.return_value = {"access_token": "fresh-access"}
    return fake


@pytest.fixture()
def session_factory(tmp_path):
    return init_db(tmp_path / "opsinbox.db")


@pytest.fixture()
def repository(session_factory):
    return OpsStateRepository(session_factory)


@pytest.fixture()
def token_store(tmp_path):
    return TokenStore(tmp_path / "token.json")


@pytest.fixture()
def build_client(tmp_path, repository, token_store, oauth, gmail):
    """Return a factory for TestClients over a freshly built app."""
    def build(authenticated=True, engine=None, raise_server_exceptions=True, **config_overrides):
        if authenticated:
            token_store.save(TOKENS)
            repository.link_google_account(ACCOUNT_EMAIL)
        app = create_app(
            make_config(tmp_path, **config_overrides),
            repository=repository,
            token_store=token_store,
            oauth=oauth,
            gmail_client_factory=lambda tokens: gmail,
            triage_engine=engine or TriageEngine(),
            cache=TriageCache(ttl_seconds=30),
        )
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)
    return build


@pytest.fixture()
def client(build_client):
    return build_client()


@pytest.fixture()
def anon_client(build_client):
    return build_client(authenticated=False)


# --- status ---

def test_root(client):
    assert client.get("/").json() == {"status": "API running"}


def test_health_endpoint(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_requests_are_recorded_in_activity_log(client, repository):
    client.get("/health")
    entry = repository.list_activity()[0]
    assert entry["event"] == "http_request"
    assert entry["payload"]["path"] == "/health"
    assert entry["payload"]["status"] == 200


def test_request_audit_keeps_query_string(client, repository):
    client.get("/triage", params={"limit": 2, "pageToken": "p1"})
    entry = repository.list_activity()[0]
    assert entry["event"] == "http_request"
    assert entry["payload"]["path"] == "/triage?limit=2&pageToken=p1"


def test_unhandled_errors_use_error_envelope(build_client, repository, monkeypatch):
    client = build_client(raise_server_exceptions=False)
    monkeypatch.setattr(repository, "save_triage_result", MagicMock(side_effect=RuntimeError("disk full")))
    resp = client.get("/triage")
    assert resp.status_code == 500
    assert resp.json() == {
        "message": "error",
        "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
    }


@pytest.mark.parametrize("raw,expected", [
    (None, (10, None)),
    ("1", (1, None)),
    ("100", (100, None)),
    ("25.0", (25, None)),
])
def test_parse_limit_accepts(raw, expected):
    assert parse_limit(raw) == expected


@pytest.mark.parametrize("raw", ["0", "101", "2.5", "abc", "", "-1"])
def test_parse_limit_rejects(raw):
    value, error = parse_limit(raw)
    assert value == 10
    assert error == "limit must be an integer between 1 and 100"


# --- auth ---

def test_auth_google_redirects_to_consent(client):
    resp = client.get("/auth/google", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://accounts.google.com/")


def test_auth_status_authenticated(client, repository):
    context = repository.get_active_context()
    assert client.get("/auth/status").json() == {
        "authenticated": True,
        "hasRefreshToken": True,
        "tokenFilePresent": True,
        "userId": context.user_id,
        "workspaceId": context.workspace_id,
        "inboxAccountId": context.inbox_account_id,
        "user": {"id": context.user_id, "email": ACCOUNT_EMAIL},
    }


def test_auth_status_anonymous(anon_client):
    assert anon_client.get("/auth/status").json() == {
        "authenticated": False,
        "hasRefreshToken": False,
        "tokenFilePresent": False,
        "userId": None,
        "workspaceId": None,
        "inboxAccountId": None,
        "user": None,
    }


def test_tokens_without_linked_account_are_not_authenticated(build_client, token_store):
    token_store.save(TOKENS)
    client = build_client(authenticated=False)
    status = client.get("/auth/status").json()
    assert status["authenticated"] is False
    assert status["hasRefreshToken"] is True
    assert status["userId"] is None
    assert client.get("/triage").status_code == 401


def test_oauth_callback_requires_code(anon_client):
    resp = anon_client.get("/oauth2callback")
    assert resp.status_code == 400
    assert resp.json()["error"] == {"code": "BAD_REQUEST", "message": "Missing code"}


def test_oauth_callback_persists_merged_tokens(client, token_store, oauth):
    resp = client.get("/oauth2callback", params={"code": "abc"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "OAuth successful"
    assert [e["id"] for e in body["emails"]] == ["msg_1", "msg_2"]
    oauth.exchange_code.assert_called_once_with("abc")
    assert token_store.load() == {"access_token": "fresh-access", "refresh_token": "1//refresh"}


def test_oauth_callback_links_account(anon_client, repository):
    body = anon_client.get("/oauth2callback", params={"code": "abc"}).json()
    context = repository.get_active_context()
    assert context.email == ACCOUNT_EMAIL
    assert body["userId"] == context.user_id
    assert body["workspaceId"] == context.workspace_id
    assert body["inboxAccountId"] == context.inbox_account_id
    success = [a for a in repository.list_activity() if a["event"] == "auth_oauth_success"]
    assert success[0]["payload"]["userId"] == context.user_id
    assert anon_client.get("/auth/status").json()["user"] == {"id": context.user_id, "email": ACCOUNT_EMAIL}


def test_oauth_callback_without_account_email(anon_client, gmail, repository):
    gmail.get_profile_email.return_value = None
    resp = anon_client.get("/oauth2callback", params={"code": "abc"})
    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "Google account email not available"
    assert repository.get_active_context() is None


def test_oauth_callback_redirects_to_frontend(build_client):
    client = build_client(authenticated=False, frontend_redirect_url="http://localhost:5173/")
    resp = client.get("/oauth2callback", params={"code": "abc"}, follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "http://localhost:5173/?oauth=success"


def test_oauth_callback_failure(anon_client, oauth, repository):
    oauth.exchange_code.side_effect = ValueError("invalid_grant")
    resp = anon_client.get("/oauth2callback", params={"code": "bad"})
    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "invalid_grant"
    assert "auth_oauth_failed" in [a["event"] for a in repository.list_activity()]


def test_logout_clears_credentials(client, token_store):
    resp = client.post("/auth/logout")
    assert resp.json() == {"message": "logged_out"}
    assert not token_store.exists()
    assert client.get("/auth/status").json()["authenticated"] is False
    assert client.get("/triage").status_code == 401


# --- authentication guard ---

@pytest.mark.parametrize("method,path", [
    ("get", "/gmail/messages"),
    ("get", "/gmail/messages/msg_1"),
    ("get", "/triage"),
    ("get", "/triage/overrides"),
    ("put", "/triage/overrides/msg_1"),
    ("get", "/team/inbox"),
    ("get", "/admin/rules"),
    ("post", "/admin/rules"),
])
def test_protected_routes_require_auth(anon_client, method, path):
    resp = getattr(anon_client, method)(path)
    assert resp.status_code == 401
    assert resp.json() == {
        "message": "error",
        "error": {"code": "UNAUTHORIZED", "message": "Not authenticated with Google OAuth"},
    }


def test_feature_flags_do_not_require_auth(anon_client):
    assert anon_client.get("/feature-flags").status_code == 200


# --- mail ---

def test_list_messages(client, gmail):
    resp = client.get("/gmail/messages", params={"limit": 2, "pageToken": "p1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["nextPageToken"] == "page-2"
    assert body["items"][0]["from"] == "alerts@example.com"
    gmail.list_email_metas_page.assert_called_once_with(2, "p1")


def test_list_messages_invalid_limit(client):
    resp = client.get("/gmail/messages", params={"limit": "500"})
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == "limit must be an integer between 1 and 100"


def test_list_messages_expired_refresh_token(client, gmail):
    gmail.list_email_metas_page.side_effect = RefreshError("invalid_grant")
    assert client.get("/gmail/messages").status_code == 401


def test_list_messages_provider_failure(client, gmail):
    gmail.list_email_metas_page.side_effect = GmailApiError(500, "backend exploded")
    resp = client.get("/gmail/messages")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "INTERNAL_ERROR"


def test_refreshed_access_token_is_saved(client, gmail, token_store):
    gmail.credentials = Credentials(token="ya29.refreshed", expiry=datetime(2026, 2, 16, 11, 0, 0))
    assert client.get("/gmail/messages").status_code == 200
    assert token_store.load() == {
        "access_token": "ya29.refreshed",
        "refresh_token": "1//refresh",
        "expires_at": 1771239600.0,
    }
    assert client.get("/auth/status").json()["authenticated"] is True


def test_unchanged_access_token_is_not_rewritten(client, gmail, token_store):
    gmail.credentials = Credentials(token=TOKENS["access_token"])
    client.get("/gmail/messages")
    assert token_store.load() == TOKENS


def test_default_gmail_factory_shares_credentials(tmp_path, repository, token_store, oauth):
    app = create_app(make_config(tmp_path), repository=repository, token_store=token_store, oauth=oauth)
    gmail = app.state.gmail_client_factory(TOKENS)
    assert isinstance(gmail, GmailClient)
    oauth.credentials.assert_called_once_with(TOKENS)
    oauth.build_gmail_service.assert_called_once_with(oauth.credentials.return_value)
    assert gmail.credentials is oauth.credentials.return_value
    assert gmail.service is oauth.build_gmail_service.return_value


def test_get_message_detail(client, gmail):
    gmail.get_email_detail.return_value = EmailDetail(
        id="msg_1", thread_id="t1", snippet="s", headers={"Subject": "Hi"}, plain_text_body="body",
    )
    resp = client.get("/gmail/messages/msg_1")
    assert resp.status_code == 200
    assert resp.json()["item"]["plainTextBody"] == "body"


def test_get_message_not_found(client, gmail):
    gmail.get_email_detail.side_effect = GmailApiError(404, "Requested entity was not found.")
    resp = client.get("/gmail/messages/missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


# --- triage ---

def test_triage_classifies_and_persists(client, session_factory):
    resp = client.get("/triage", params={"limit": 2})
    assert resp.status_code == 200
    body = resp.json()
    assert body["nextPageToken"] == "page-2"
    first, second = body["items"]
    assert first["email"]["id"] == "msg_1"
    assert first["triage"]["priority"] == "P0"
    assert first["triage"]["category"] == "security"
    assert second["triage"]["category"] == "general"
    assert "override" not in first
    with session_factory() as session:
        stored = session.scalars(
            select(TriageResultRecord).where(TriageResultRecord.message_id == "msg_1")
        ).one()
    assert stored.category == "security"


def test_triage_invalid_limit(client):
    assert client.get("/triage", params={"limit": "0"}).status_code == 400


def test_triage_is_cached(client, gmail):
    client.get("/triage")
    client.get("/triage")
    assert gmail.list_email_metas_page.call_count == 1
    client.get("/triage", params={"pageToken": "page-2"})
    assert gmail.list_email_metas_page.call_count == 2


def test_override_invalidates_cache_and_is_attached(client, gmail):
    client.get("/triage")
    client.put("/triage/overrides/msg_1", json={"done": True, "note": "on it", "tags": ["ops"]})
    body = client.get("/triage").json()
    assert gmail.list_email_metas_page.call_count == 2
    assert body["items"][0]["override"]["done"] is True
    assert body["items"][0]["override"]["note"] == "on it"


def test_triage_shadow_mode_serves_rules_result(build_client, repository):
    ai = MagicMock()
    ai.classify.return_value = TriageResult("P3", "low", "ai says", "ignore", 0.9)
    client = build_client(engine=TriageEngine(ai=ai))
    client.patch("/feature-flags/ai", json={"aiTriageEnabled": True})

    body = client.get("/triage").json()

    assert body["items"][0]["triage"]["category"] == "security"
    assert ai.classify.call_count == 2
    shadow_events = [a for a in repository.list_activity() if a["event"] == "ai_shadow_triage"]
    assert len(shadow_events) == 2
    assert shadow_events[-1]["payload"]["aiCategory"] == "low"


class SlowAi:
    name = "slow"

    def __init__(self, delay):
        self.delay = delay
        self.finished_at = []

    def classify(self, email):
        time.sleep(self.delay)
        self.finished_at.append(time.monotonic())
        return TriageResult("P3", "low", "ai says", "ignore", 0.9)


def call_asgi(app, path, query=b""):
    """Drive the app directly, recording when each response message goes out."""
    sent = []
    requested = []

    async def receive():
        if not requested:
            requested.append(True)
            return {"type": "http.request", "body": b"", "more_body": False}
        await asyncio.Event().wait()

    async def send(message):
        sent.append((message, time.monotonic()))

    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": query,
        "root_path": "",
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    asyncio.run(app(scope, receive, send))
    return sent


def test_triage_responds_before_shadow_triage_finishes(tmp_path, repository, token_store, oauth, gmail):
    token_store.save(TOKENS)
    repository.link_google_account(ACCOUNT_EMAIL)
    repository.set_ai_triage_enabled(True)
    ai = SlowAi(delay=0.3)
    app = create_app(
        make_config(tmp_path),
        repository=repository,
        token_store=token_store,
        oauth=oauth,
        gmail_client_factory=lambda tokens: gmail,
        triage_engine=TriageEngine(ai=ai),
        cache=TriageCache(ttl_seconds=30),
    )

    sent = call_asgi(app, "/triage")

    start = next(message for message, _ in sent if message["type"] == "http.response.start")
    assert start["status"] == 200
    body_messages = [(message, at) for message, at in sent if message["type"] == "http.response.body"]
    body = b"".join(message.get("body", b"") for message, _ in body_messages)
    assert json.loads(body)["items"][0]["triage"]["category"] == "security"
    response_done_at = body_messages[-1][1]
    assert len(ai.finished_at) == 2
    assert response_done_at < ai.finished_at[0]
    shadow_events = [a for a in repository.list_activity() if a["event"] == "ai_shadow_triage"]
    assert len(shadow_events) == 2


def test_shadow_triage_skipped_when_flag_off(build_client, repository):
    ai = MagicMock()
    client = build_client(engine=TriageEngine(ai=ai))
    client.get("/triage")
    ai.classify.assert_not_called()
    assert "ai_shadow_triage" not in [a["event"] for a in repository.list_activity()]


def test_triage_provider_failure(client, gmail):
    gmail.list_email_metas_page.side_effect = GmailApiError(403, "forbidden")
    resp = client.get("/triage")
    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "forbidden"


# --- overrides ---

def test_put_override_sanitises_input(client):
    resp = client.put("/triage/overrides/msg_1", json={
        "done": "yes",
        "note": "x" * 1500,
        "tags": [" a ", "", 3, *[f"t{i}" for i in range(15)]],
    })
    assert resp.status_code == 200
    override = resp.json()["override"]
    assert override["done"] is False
    assert len(override["note"]) == 1000
    assert override["tags"][0] == "a"
    assert len(override["tags"]) == 10


def test_put_override_invalid_json(client):
    resp = client.put(
        "/triage/overrides/msg_1",
        content="{broken",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid JSON body"


def test_put_override_rejects_non_object(client):
    assert client.put("/triage/overrides/msg_1", json=["done"]).status_code == 400


def test_list_overrides_and_team_inbox(client):
    client.put("/triage/overrides/msg_1", json={"done": True, "note": "n", "tags": []})
    overrides = client.get("/triage/overrides").json()["items"]
    assert overrides[0]["id"] == "msg_1"
    assert overrides[0]["override"]["done"] is True
    inbox = client.get("/team/inbox").json()["items"]
    assert inbox[0]["emailId"] == "msg_1"
    assert inbox[0]["note"] == "n"


def test_overrides_follow_the_linked_account(client, repository):
    client.put("/triage/overrides/msg_1", json={"done": True, "note": "mine", "tags": []})
    repository.link_google_account("other@example.com")
    assert client.get("/auth/status").json()["user"]["email"] == "other@example.com"
    assert client.get("/triage/overrides").json()["items"] == []
    assert client.get("/team/inbox").json()["items"] == []
    repository.link_google_account(ACCOUNT_EMAIL)
    assert client.get("/triage/overrides").json()["items"][0]["override"]["note"] == "mine"


# --- admin ---

def test_admin_rules_seeded(client):
    items = client.get("/admin/rules").json()["items"]
    assert [r["id"] for r in items] == ["rule-security-1"]


def test_create_admin_rule(client):
    resp = client.post("/admin/rules", json={
        "name": " VIP ",
        "description": "Board members",
        "matchers": ["ceo", " ", 7],
        "priority": "P1",
        "category": "general",
    })
    assert resp.status_code == 201
    item = resp.json()["item"]
    assert item["id"].startswith("rule-")
    assert item["name"] == "VIP"
    assert item["matchers"] == ["ceo"]
    assert item["enabled"] is True
    ids = [r["id"] for r in client.get("/admin/rules").json()["items"]]
    assert item["id"] in ids


def test_create_admin_rule_missing_fields(client):
    resp = client.post("/admin/rules", json={"name": "x", "priority": "P1"})
    assert resp.status_code == 400


def test_create_admin_rule_invalid_priority(client):
    resp = client.post("/admin/rules", json={
        "name": "x", "description": "d", "matchers": ["m"], "priority": "P7", "category": "general",
    })
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid priority"


# --- feature flags ---

def test_feature_flags_defaults(client):
    assert client.get("/feature-flags").json()["flags"] == {
        "aiTriageEnabled": False, "aiMode": "disabled", "safeFallback": "rules",
    }


def test_toggle_ai_flag(client, repository):
    resp = client.patch("/feature-flags/ai", json={"aiTriageEnabled": True})
    assert resp.json()["flags"]["aiMode"] == "shadow"
    assert client.get("/feature-flags").json()["flags"]["aiTriageEnabled"] is True
    assert "feature_flag_ai_updated" in [a["event"] for a in repository.list_activity()]


def test_toggle_ai_flag_requires_boolean(client):
    resp = client.patch("/feature-flags/ai", json={"aiTriageEnabled": "yes"})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "aiTriageEnabled boolean is required"
