import logging

import pytest
from fastapi.testclient import TestClient
from twilio.base.exceptions import TwilioRestException

from common.graph_auth import HostContext, SessionStore
from common.sms_gateway import SmsGateway
from config.credentials import get_settings
from services.api import app, get_graph_factory, get_sms_gateway

COOKIE = get_settings().SESSION_COOKIE_NAME


@pytest.fixture
def store(app_factory):
    store = SessionStore(app_factory)
    app.state.sessions = store
    return store


@pytest.fixture
def twilio(make_twilio):
    fake = make_twilio()
    app.dependency_overrides[get_sms_gateway] = lambda: SmsGateway(client=fake, from_number="+15550000000")
    return fake


@pytest.fixture
def graph(make_graph):
    fake = make_graph(
        chats=[{"id": "c2", "chatType": "oneOnOne"}],
        members={"c2": [{"userId": "me-id"}, {"userId": "bob-id", "displayName": "Bob",
                                               "email": "bob@contoso.com"}]},
        create_results=[{"id": "c-new"}],
    )
    app.dependency_overrides[get_graph_factory] = lambda: (lambda credential: fake)
    return fake


@pytest.fixture
def client(store):
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def signed_in(client, store, msal_app):
    session = store.create(HostContext.STANDALONE)
    msal_app.accounts.append({"local_account_id": "me-id"})
    client.cookies.set(COOKIE, session.id)
    return session


# ───────── SMS ─────────
@pytest.mark.parametrize("payload", [{"to": "", "body": "hi"}, {"to": "+15551234567"}, {}])
def test_sms_requires_number_and_message(client, twilio, payload):
    resp = client.post("/sms", json=payload)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Phone number and message are required."}
    assert twilio.sent == []


def test_sms_success(client, twilio):
    resp = client.post("/sms", json={"to": "+15551234567", "body": "hi"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "sid": "SM1"}
    assert twilio.sent == [{"body": "hi", "to": "+15551234567", "from_": "+15550000000"}]


def test_sms_gateway_message_is_surfaced(client, make_twilio):
    fake = make_twilio(error=TwilioRestException(400, "/Messages", msg="Invalid 'To' Phone Number"))
    app.dependency_overrides[get_sms_gateway] = lambda: SmsGateway(client=fake, from_number="+1555")

    resp = client.post("/sms", json={"to": "nope", "body": "hi"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Invalid 'To' Phone Number"}


def test_bulk_sms(client, twilio):
    resp = client.post("/sms/bulk", json={"to": ["+1555111", "+1555222"], "body": "hi all"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert len(resp.json()["sids"]) == 2
    assert {m["to"] for m in twilio.sent} == {"+1555111", "+1555222"}


def test_sms_signature_appended(client, signed_in, graph, twilio):
    resp = client.post("/sms", json={"to": "+15551234567", "body": "hi", "include_signature": True})
    assert resp.status_code == 200
    assert twilio.sent[0]["body"] == "hi\n\nSent from MS Teams: Me & me@contoso.com"


def test_sms_signature_requires_sign_in(client, graph, twilio):
    resp = client.post("/sms", json={"to": "+15551234567", "body": "hi", "include_signature": True})
    assert resp.status_code == 401
    assert resp.json()["login_url"] == "/auth/login"
    assert twilio.sent == []

    resp = client.post("/sms", json={"to": "", "body": "hi", "include_signature": True})
    assert resp.status_code == 400


def test_bulk_sms_signature(client, signed_in, graph, twilio):
    resp = client.post("/sms/bulk", json={"to": ["+1555111", "+1555222"], "body": "hi all",
                                          "include_signature": True})
    assert resp.status_code == 200
    assert {m["body"] for m in twilio.sent} == {"hi all\n\nSent from MS Teams: Me & me@contoso.com"}
    assert graph.names().count("get_profile") == 1


# ───────── auth ─────────
def test_login_redirects_and_sets_cookie(client, store):
    resp = client.get("/auth/login", follow_redirects=False)
    assert resp.status_code == 307
    assert resp.headers["location"].startswith("https://login.example/")
    assert COOKIE in resp.headers["set-cookie"]
    assert len(store) == 1


def test_second_login_while_pending_conflicts(client, store):
    session = store.create(HostContext.STANDALONE)
    client.cookies.set(COOKIE, session.id)

    assert client.get("/auth/login", follow_redirects=False).status_code == 307
    resp = client.get("/auth/login", follow_redirects=False)
    assert resp.status_code == 409
    assert "already in progress" in resp.json()["error"]


def test_callback_completes_sign_in(client, store):
    session = store.create(HostContext.STANDALONE)
    client.cookies.set(COOKIE, session.id)
    client.get("/auth/login", follow_redirects=False)

    resp = client.get("/auth/callback", params={"code": "abc", "state": "state-1"})
    assert resp.status_code == 200
    assert "Login successful" in resp.text
    assert session.get_active_credential() is not None


def test_callback_cancelled(client, store):
    session = store.create(HostContext.STANDALONE)
    client.cookies.set(COOKIE, session.id)
    client.get("/auth/login", follow_redirects=False)

    resp = client.get("/auth/callback", params={"error": "access_denied", "state": "state-1"})
    assert resp.status_code == 400


def test_sso_sign_in(client, store, msal_app):
    resp = client.post("/auth/sso", json={"token": "teams-sso-token"})
    assert resp.status_code == 200
    assert resp.json() == {"signed_in": True, "account_id": "user-oid"}
    assert msal_app.obo_calls == ["teams-sso-token"]
    assert len(store) == 1


def test_failed_sso_points_to_login_and_keeps_no_session(client, store, msal_app):
    msal_app.obo_result = {"error": "invalid_grant", "error_description": "AADSTS50013"}

    resp = client.post("/auth/sso", json={"token": "expired-sso-token"})
    assert resp.status_code == 401
    assert resp.json()["login_url"] == "/auth/login"
    assert "set-cookie" not in resp.headers
    assert len(store) == 0


def test_logout_is_idempotent(client, signed_in, store):
    assert client.post("/auth/logout").json() == {"signed_out": True}
    assert client.post("/auth/logout").status_code == 200
    assert store.get(signed_in.id) is None


# ───────── Teams ─────────
def test_send_requires_session(client, graph):
    resp = client.post("/teams/messages", json={"recipient": "bob@contoso.com", "message": "hi"})
    assert resp.status_code == 401
    assert resp.json()["login_url"] == "/auth/login"
    assert graph.calls == []


def test_send_reuses_existing_chat(client, signed_in, graph):
    resp = client.post("/teams/messages", json={"recipient": "bob@contoso.com", "message": "hi"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["conversation_id"] == "c2"
    assert not any(n.startswith("create") for n in graph.names())
    assert signed_in.profile.id == "me-id"


def test_send_to_selected_chat(client, signed_in, graph):
    resp = client.post("/teams/messages", json={"chat_id": "picked", "message": "hi"})
    assert resp.json()["conversation_id"] == "picked"
    assert graph.names() == ["post_message"]


def test_send_validation_error(client, signed_in, graph):
    resp = client.post("/teams/messages", json={"recipient": "", "message": "hi"})
    assert resp.status_code == 400
    assert graph.calls == []


def test_send_creation_rejected(client, signed_in, graph, graph_error):
    graph.create_results = [graph_error(403, "Insufficient privileges")]
    resp = client.post("/teams/messages", json={"recipient": "zoe@contoso.com", "message": "hi"})
    assert resp.status_code == 502
    assert "Insufficient privileges" in resp.json()["error"]


def test_upstream_failures_are_logged_with_traceback(client, signed_in, graph, graph_error, caplog):
    graph.create_results = [graph_error(403, "Insufficient privileges")]
    with caplog.at_level(logging.WARNING, logger="services.api"):
        resp = client.post("/teams/messages", json={"recipient": "zoe@contoso.com", "message": "hi"})
    assert resp.status_code == 502

    errors = [r for r in caplog.records if r.name == "services.api" and r.levelno == logging.ERROR]
    assert errors
    assert errors[0].exc_info is not None


def test_chats_lists_with_names(client, signed_in, graph):
    resp = client.get("/chats")
    assert resp.status_code == 200
    chats = resp.json()
    assert chats[0]["id"] == "c2"
    assert chats[0]["name"] == "Bob"
    assert client.get("/chats", params={"q": "nobody"}).json() == []


def test_me_caches_profile(client, signed_in, graph):
    assert client.get("/me").json()["id"] == "me-id"
    client.get("/me")
    assert graph.names().count("get_profile") == 1
