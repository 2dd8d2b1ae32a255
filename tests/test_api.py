"""
Tests for the REST API: auth, error contract, inbound -> fire, synchronous turns.
"""

from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from src.llm import LLMError
from src.store import CRMStore
from tests.helpers import scripted_llm, seed_crm, text_completion, transcript

REPLY = "Olá Maria! Tudo bem? Qual é o seu email?"
AUTH = {"Authorization": "Bearer test-key"}


@pytest.fixture
def api(monkeypatch, tmp_path: Path):
    import src.api as api_mod

    db_path = str(tmp_path / "api.db")
    monkeypatch.setattr(api_mod, "API_KEY", "test-key")
    monkeypatch.setattr(api_mod, "DB_PATH", db_path)
    monkeypatch.setenv("CONVERSATION_LOCK_DIR", str(tmp_path / "locks"))

    llm = scripted_llm([text_completion(REPLY)] * 5)
    monkeypatch.setattr(api_mod, "ChatCompletionClient", lambda: llm)
    crm = seed_crm(CRMStore(db_path))

    with TestClient(api_mod.app) as client:
        yield SimpleNamespace(client=client, llm=llm, crm=crm)


def inbound_payload(crm, message_id="wamid-1", text="quero saber mais", timestamp=1000.0) -> dict:
    return {
        "message_id": message_id,
        "account_id": crm.account_id,
        "conversation_id": crm.conversation_id,
        "text": text,
        "timestamp": timestamp,
    }


def turn_payload(crm, text="quero saber mais") -> dict:
    return {
        "account_id": crm.account_id,
        "conversation_id": crm.conversation_id,
        "contact_id": crm.contact_id,
        "text": text,
    }


class TestAuth:
    """Bearer token and error shape"""

    def test_health_is_public(self, api):
        resp = api.client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_wrong_key(self, api):
        resp = api.client.post("/api/v1/turns", headers={"Authorization": "Bearer nope"}, json=turn_payload(api.crm))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_not_bearer(self, api):
        resp = api.client.post("/api/v1/turns", headers={"Authorization": "Basic abc"}, json=turn_payload(api.crm))
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Missing Bearer token"

    def test_invalid_payload(self, api):
        resp = api.client.post("/api/v1/turns", headers=AUTH, json={"account_id": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "BAD_REQUEST"


class TestInbound:
    """Ledger + debounce scheduling"""

    def test_accepted_and_stored(self, api):
        resp = api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm))
        assert resp.status_code == 200
        assert resp.json() == {"accepted": True, "duplicate": False, "respond_at": 1005.0}
        assert transcript(api.crm.store, api.crm.conversation_id, "in") == ["quero saber mais"]

    def test_duplicate_is_not_stored_twice(self, api):
        api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm))
        resp = api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm))
        assert resp.json()["duplicate"] is True
        assert len(transcript(api.crm.store, api.crm.conversation_id, "in")) == 1

    def test_empty_message(self, api):
        resp = api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm, text="  "))
        assert resp.status_code == 400

    def test_unknown_conversation(self, api):
        payload = inbound_payload(api.crm)
        payload["conversation_id"] = "nope"
        resp = api.client.post("/api/v1/inbound", headers=AUTH, json=payload)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_fire_runs_one_turn_for_the_burst(self, api):
        api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm, "wamid-1", "oi", 1000.0))
        api.client.post("/api/v1/inbound", headers=AUTH,
                        json=inbound_payload(api.crm, "wamid-2", "quero saber mais", 1002.0))

        early = api.client.post("/api/v1/pending/fire", headers=AUTH, json={"now": 1004.0})
        assert early.json() == {"processed": []}

        resp = api.client.post("/api/v1/pending/fire", headers=AUTH, json={"now": 1010.0})
        assert resp.json() == {"processed": [api.crm.conversation_id]}
        assert api.llm.complete.call_count == 1
        assert transcript(api.crm.store, api.crm.conversation_id, "out") == [REPLY]


class TestTurns:
    """Synchronous turn endpoint"""

    def test_turn(self, api):
        resp = api.client.post("/api/v1/turns", headers=AUTH, json=turn_payload(api.crm))
        assert resp.status_code == 200
        body = resp.json()
        assert body["final_text"] == REPLY
        assert body["already_persisted"] is True
        assert body["executed_action_count"] == 0
        assert body["handoff_reply"] is None
        assert body["meta"]["usage"]["total_tokens"] == 20

    def test_unknown_conversation(self, api):
        payload = turn_payload(api.crm)
        payload["conversation_id"] = "nope"
        resp = api.client.post("/api/v1/turns", headers=AUTH, json=payload)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "CONFIG"

    def test_empty_response(self, api):
        api.llm.complete.side_effect = [text_completion("")] * 3
        resp = api.client.post("/api/v1/turns", headers=AUTH, json=turn_payload(api.crm))
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "EMPTY_RESPONSE"

    def test_model_unavailable(self, api):
        api.llm.complete.side_effect = LLMError("circuit open")
        resp = api.client.post("/api/v1/turns", headers=AUTH, json=turn_payload(api.crm))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "LLM_UNAVAILABLE"

    def test_internal_error(self, api):
        api.llm.complete.side_effect = RuntimeError("boom")
        resp = api.client.post("/api/v1/turns", headers=AUTH, json=turn_payload(api.crm))
        assert resp.status_code == 500
        assert resp.json()["error"] == {"code": "INTERNAL", "message": "Internal server error"}


class TestRespondNow:
    """Skip the debounce window"""

    def test_respond_now(self, api):
        api.client.post("/api/v1/inbound", headers=AUTH, json=inbound_payload(api.crm))
        resp = api.client.post(f"/api/v1/conversations/{api.crm.conversation_id}/respond-now", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["final_text"] == REPLY
        assert api.crm.store.get_pending(api.crm.conversation_id) is None

    def test_unknown_conversation(self, api):
        resp = api.client.post("/api/v1/conversations/nope/respond-now", headers=AUTH)
        assert resp.status_code == 404

    def test_llm_stats(self, api):
        resp = api.client.get("/api/v1/llm/stats", headers=AUTH)
        assert resp.json() == {"total_requests": 5}
