"""Tests for the FastAPI application."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from localrag.api.app import create_app
from localrag.config import Settings

BIO = "Photosynthesis converts light energy into chemical energy in plants."


@pytest.fixture
def api(make_client):
    knowledge = make_client()
    app = create_app(settings=Settings(environment="test"), client=knowledge)
    with TestClient(app) as client:
        yield client


def test_healthz_reports_ready_state(api):
    response = api.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["environment"] == "test"
    assert body["state"] == "ready"
    assert "X-Correlation-ID" in response.headers


def test_load_knowledge_then_ask(api):
    created = api.post("/knowledge", json={"type": "text", "content": BIO, "document_id": "bio"})
    assert created.status_code == 201
    assert created.json()["document_id"] == "bio"
    assert created.json()["version_label"] == "1"
    assert created.json()["skipped"] is False

    again = api.post("/knowledge", json={"type": "text", "content": BIO, "document_id": "bio"})
    assert again.json()["skipped"] is True

    response = api.post("/ask", json={"question": "What is photosynthesis light energy?"})
    assert response.status_code == 200
    body = response.json()
    assert body["answer"] == BIO
    assert body["route"] == "extractive"
    assert body["query_type"] == "knowledge-base"
    assert body["sources"][0]["document_id"] == "bio"
    assert body["metadata"]["gating"] == "no_orchestrator"


def test_conversational_question_short_circuits(api):
    body = api.post("/ask", json={"question": "hello"}).json()
    assert body["route"] == "conversational"
    assert body["sources"] == []


def test_status_and_clear(api):
    api.post("/knowledge", json={"type": "list", "items": ["Python is a language."], "document_id": "langs"})

    status_body = api.get("/status").json()
    assert status_body["ready"] is True
    assert status_body["knowledge_base"]["document_count"] == 1
    assert status_body["storage"]["unit_count"] == 1
    assert status_body["generation"] is None

    assert api.delete("/knowledge").status_code == 204
    assert api.get("/status").json()["storage"]["unit_count"] == 0


def test_invalid_source_maps_to_400(api):
    response = api.post("/knowledge", json={"type": "text", "content": "   "})
    assert response.status_code == 400
    assert "correlation_id" in response.json()


def test_blank_question_maps_to_422(api):
    assert api.post("/ask", json={"question": "   "}).status_code == 422
    assert api.post("/ask", json={"question": ""}).status_code == 422


def test_metrics_endpoint(api):
    response = api.get("/metrics")
    assert response.status_code == 200
    assert "localrag" in response.text


def test_api_key_is_enforced(make_client):
    app = create_app(settings=Settings(environment="test", api_key="secret"), client=make_client())
    with TestClient(app) as client:
        assert client.post("/ask", json={"question": "hello"}).status_code == 401
        assert client.post("/ask", json={"question": "hello"}, headers={"X-API-Key": "secret"}).status_code == 200
        assert client.get("/status").status_code == 200
