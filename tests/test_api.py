"""
Tests for the HTTP surface (settings, conversations, SSE sends).
"""
import json
import tempfile
import unittest
from unittest import mock

from fastapi.testclient import TestClient

from app import main
from app.rag.conversation_manager import ConversationManager
from app.settings_store import SettingsStore
from tests.fakes import FakeOllama, FakeRAG


def sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestAPI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.ollama = FakeOllama()
        self.rag = FakeRAG()
        self.manager = ConversationManager(controller_options={
            "ollama_transport": self.ollama.transport,
            "rag_transport": self.rag.transport,
        })

        for target, value in (("settings_store", SettingsStore(self.tmp.name)), ("conversation_manager", self.manager)):
            patcher = mock.patch.object(main, target, value)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.client = TestClient(main.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def create_conversation(self, user: str = "alice") -> str:
        response = self.client.post("/conversations", headers={"X-User-Id": user})
        assert response.status_code == 200
        return response.json()["conversation_id"]

    def fill_profile(self, user: str = "alice"):
        self.client.patch("/settings", json={
            "user_preferred_name": "Sam",
            "user_school_or_office": "Lincoln Elementary",
            "user_role": "Principal",
            "user_context": "Title I school",
        }, headers={"X-User-Id": user})

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_settings_round_trip(self):
        response = self.client.patch("/settings", json={"theme": "dark", "chat_font_size": 40}, headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert response.json()["theme"] == "dark"
        assert response.json()["chat_font_size"] == 24

        assert self.client.get("/settings", headers={"X-User-Id": "alice"}).json()["theme"] == "dark"
        assert self.client.get("/settings", headers={"X-User-Id": "bob"}).json()["theme"] == "light"

    def test_system_message_history(self):
        self.client.post("/settings/system-message", json={"message": "Be brief."})
        data = self.client.post("/settings/system-message", json={"message": "Be kind."}).json()
        assert data["system_message"] == "Be kind."
        assert data["system_message_history"] == ["Be kind.", "Be brief."]

        data = self.client.request("DELETE", "/settings/system-message-history", json={"message": "Be brief."}).json()
        assert data["system_message_history"] == ["Be kind."]

    def test_connect_and_stream_message(self):
        conv_id = self.create_conversation()
        self.fill_profile()

        status = self.client.post(f"/conversations/{conv_id}/connect", headers={"X-User-Id": "alice"}).json()
        assert status["status"] == "connected"
        assert status["selected_model"] == "llama3:8b"

        response = self.client.post(
            f"/conversations/{conv_id}/messages",
            json={"message": "How do I plan a staff meeting?"},
            headers={"X-User-Id": "alice"}
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = sse_events(response.text)
        assert events[0] == {"type": "start", "conversation_id": conv_id}
        assert events[-1] == {"type": "complete", "content": "Hello there."}

        detail = self.client.get(f"/conversations/{conv_id}", headers={"X-User-Id": "alice"}).json()
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]
        assert detail["citations"]["items"] == []

    def test_send_without_model_is_rejected(self):
        conv_id = self.create_conversation()
        self.fill_profile()
        response = self.client.post(f"/conversations/{conv_id}/messages", json={"message": "Hello there, anyone home?"}, headers={"X-User-Id": "alice"})

        assert sse_events(response.text) == [{"type": "rejected", "reason": "No model selected"}]

    def test_send_while_waiting_conflicts(self):
        conv_id = self.create_conversation()
        self.manager.get_conversation(conv_id).is_waiting = True

        response = self.client.post(f"/conversations/{conv_id}/messages", json={"message": "Hi"}, headers={"X-User-Id": "alice"})
        assert response.status_code == 409

    def test_other_users_conversation_is_not_found(self):
        conv_id = self.create_conversation("alice")

        assert self.client.get(f"/conversations/{conv_id}", headers={"X-User-Id": "bob"}).status_code == 404
        assert self.client.get("/conversations/missing/status").status_code == 404

    def test_conversation_summaries(self):
        self.create_conversation("alice")
        self.create_conversation("bob")

        summaries = self.client.get("/conversations", headers={"X-User-Id": "alice"}).json()
        assert len(summaries) == 1
        assert summaries[0]["message_count"] == 0

    def test_intro_requires_all_fields(self):
        conv_id = self.create_conversation()
        response = self.client.post(
            f"/conversations/{conv_id}/intro",
            json={"user_preferred_name": "Sam", "user_role": "Principal", "message": ""},
            headers={"X-User-Id": "alice"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["missing_fields"] == ["user_school_or_office", "user_context", "message"]

    def test_intro_saves_profile_and_sends(self):
        conv_id = self.create_conversation()
        self.client.post(f"/conversations/{conv_id}/connect", headers={"X-User-Id": "alice"})

        response = self.client.post(
            f"/conversations/{conv_id}/intro",
            json={
                "user_preferred_name": "Sam",
                "user_school_or_office": "Lincoln Elementary",
                "user_role": "Principal",
                "user_context": "Title I school",
                "message": "Where should I start with coaching?",
            },
            headers={"X-User-Id": "alice"}
        )

        assert sse_events(response.text)[-1]["type"] == "complete"
        settings = self.client.get("/settings", headers={"X-User-Id": "alice"}).json()
        assert settings["user_preferred_name"] == "Sam"
        prompt = self.ollama.calls("/api/generate", stream=True)[0]["prompt"]
        assert "Preferred name: Sam" in prompt

    def test_reset_and_delete(self):
        conv_id = self.create_conversation()

        response = self.client.post(f"/conversations/{conv_id}/reset", headers={"X-User-Id": "alice"})
        assert response.status_code == 200

        assert self.client.delete(f"/conversations/{conv_id}", headers={"X-User-Id": "alice"}).status_code == 200
        assert self.client.get(f"/conversations/{conv_id}", headers={"X-User-Id": "alice"}).status_code == 404

    def test_model_list_proxy_failure(self):
        with mock.patch.object(main.OllamaClient, "tags", side_effect=main.OllamaError("connection refused")):
            response = self.client.post("/models/tags", json={"ollama_url": "http://nowhere:11434"})
        assert response.status_code == 502

    def test_collections_proxy(self):
        with mock.patch.object(main.RAGClient, "list_collections", return_value=["coaching"]):
            response = self.client.get("/rag/collections", params={"url": "http://rag.test:9042"})
        assert response.json() == {"collections": ["coaching"]}

    def test_first_message_requires_profile(self):
        conv_id = self.create_conversation()
        self.client.post(f"/conversations/{conv_id}/connect", headers={"X-User-Id": "alice"})
        self.client.patch("/settings", json={"user_preferred_name": "Sam"}, headers={"X-User-Id": "alice"})

        response = self.client.post(f"/conversations/{conv_id}/messages", json={"message": "How do I plan a staff meeting?"}, headers={"X-User-Id": "alice"})

        assert response.status_code == 422
        assert response.json()["detail"]["missing_fields"] == ["user_school_or_office", "user_role", "user_context"]
        assert self.manager.get_conversation(conv_id).turns == []
        assert self.ollama.calls("/api/generate") == []

    def test_server_url_change_refused_while_sending(self):
        conv_id = self.create_conversation()
        self.manager.get_conversation(conv_id).is_waiting = True

        response = self.client.patch("/settings", json={"ollama_url": "http://other.test:11434"}, headers={"X-User-Id": "alice"})
        assert response.status_code == 409
        assert self.client.get("/settings", headers={"X-User-Id": "alice"}).json()["ollama_url"] == "http://localhost:11434"

        response = self.client.patch("/settings", json={"theme": "dark"}, headers={"X-User-Id": "alice"})
        assert response.status_code == 200
