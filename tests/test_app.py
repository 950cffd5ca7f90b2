"""
Tests for the HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from triage_agent import app as app_module
from triage_agent.session.machine import ConversationController
from triage_agent.session.store import SessionStore


@pytest.fixture
def client(monkeypatch, service):
    monkeypatch.setattr(app_module, "_service", service)
    monkeypatch.setattr(app_module, "_controller", ConversationController(service, SessionStore()))
    return TestClient(app_module.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Process-Time" in response.headers


def test_triage_returns_descriptor_and_announcements(client):
    response = client.post("/triage", json={"text": "checkout button broken on mobile"})

    assert response.status_code == 200
    body = response.json()
    assert body["tool"] == "search_issues"
    assert body["parameters"] == {"query": "checkout button broken on mobile", "first": 10}
    assert body["error"] is None
    assert body["announcements"][1].startswith("Found potential matches:")
    assert [m["score"] for m in body["matches"]] == [9, 8]
    assert "total_service_latency_s" in body["metrics"]


def test_triage_rejects_empty_request(client):
    response = client.post("/triage", json={"text": "  "})
    assert response.status_code == 400


def test_message_then_action_round_trip(client):
    message = {
        "user_id": "U1",
        "channel_id": "C1",
        "message_id": "100.1",
        "text": "checkout broken",
    }
    offered = client.post("/events/message", json=message).json()["replies"]
    assert offered[0]["buttons"][0]["action_id"] == "find_issues"

    action = {
        "action_id": "find_issues",
        "user_id": "U1",
        "channel_id": "C1",
        "thread_id": offered[0]["thread_id"],
        "value": offered[0]["buttons"][0]["value"],
    }
    replies = client.post("/events/action", json=action).json()["replies"]

    assert replies[0]["text"] == "Analyzing your message..."
    assert [b["action_id"] for b in replies[-1]["buttons"]] == ["confirm", "edit", "cancel"]
