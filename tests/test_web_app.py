"""Tests for the JSON API."""

from unittest.mock import MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

from mailresponder.config import load_config
from mailresponder.web.app import create_app


@pytest.fixture
def client(config, storage):
    return TestClient(create_app(config, storage=storage))


@pytest.fixture
def conversation(storage):
    conversation = storage.get_or_create_conversation("support", "alice@example.com")
    storage.add_message(conversation.id, "user", "Hello", "[AI_REQUEST] Hi", "m1@example.com")
    storage.add_message(conversation.id, "assistant", "Hi Alice", "Re: [AI_REQUEST] Hi")
    return conversation


class TestAccounts:
    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_list_accounts_hides_secrets(self, client):
        r = client.get("/api/accounts")
        assert r.status_code == 200
        data = r.json()
        assert data[0]["name"] == "support"
        assert data[0]["emailAddress"] == "support@example.com"
        assert "secret" not in r.text

    def test_get_account(self, client):
        assert client.get("/api/accounts/support").json()["backend"] == "imap"

    def test_unknown_account(self, client):
        assert client.get("/api/accounts/nope").status_code == 404


class TestConversations:
    def test_list_by_account(self, client, conversation):
        r = client.get("/api/conversations/account/support")
        assert r.status_code == 200
        assert r.json()[0]["participant"] == "alice@example.com"
        assert r.json()[0]["message_count"] == 2

    def test_list_unknown_account(self, client):
        assert client.get("/api/conversations/account/nope").status_code == 404

    def test_get_conversation(self, client, conversation):
        assert client.get(f"/api/conversations/{conversation.id}").json()["id"] == conversation.id
        assert client.get("/api/conversations/999").status_code == 404

    def test_messages(self, client, conversation):
        r = client.get(f"/api/conversations/{conversation.id}/messages")
        assert [m["role"] for m in r.json()] == ["user", "assistant"]
        assert client.get("/api/conversations/999/messages").status_code == 404


class TestDiagnostics:
    def test_test_connection(self, client):
        result = {"account": "support", "overallStatus": "SUCCESS"}
        with patch("mailresponder.web.app.diagnostics.test_account", return_value=result) as test_account:
            r = client.get("/api/diagnostics/test-connection/support")

        assert r.json()["overallStatus"] == "SUCCESS"
        assert test_account.call_args.args[0].name == "support"

    def test_test_connection_unknown(self, client):
        assert client.get("/api/diagnostics/test-connection/nope").status_code == 404

    def test_status(self, client, conversation):
        with patch("mailresponder.web.app.LLMClient") as llm_cls:
            llm = llm_cls.return_value.__enter__.return_value
            llm.list_models.return_value = ["gemma3:27b"]
            llm.has_model.return_value = True
            r = client.get("/api/status")

        data = r.json()
        assert data["totalAccounts"] == 1
        assert data["ollama"]["available"] is True
        assert data["serviceRunning"] is False
        assert data["statistics"]["conversations"] == 1

    def test_audit(self, client, storage):
        storage.log_action("support", "replied", True, sender="alice@example.com")
        r = client.get("/api/audit", params={"limit": 5})
        assert r.json()["entries"][0]["action"] == "replied"
        assert client.get("/api/audit", params={"limit": 0}).status_code == 422


@pytest.fixture
def config_file(tmp_path):
    data = {
        "accounts": [
            {
                "name": "support",
                "email_address": "support@example.com",
                "imap": {"host": "imap.example.com", "password": "secret"},
                "smtp": {"host": "smtp.example.com", "password": "secret"},
            }
        ],
        "database_path": str(tmp_path / "web.db"),
        "logging": {"audit_file": None},
    }
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def file_client(config_file, storage):
    return TestClient(create_app(str(config_file), storage=storage))


def new_account(name="sales"):
    return {
        "name": name,
        "email_address": f"{name}@example.com",
        "imap": {"host": "imap.example.com", "password": "hunter2"},
        "smtp": {"host": "smtp.example.com", "password": "hunter2"},
    }


class TestAccountManagement:
    """Tests for editing accounts through the API."""

    def test_config_masks_secrets(self, file_client):
        r = file_client.get("/api/config")
        assert r.status_code == 200
        account = r.json()["config"]["accounts"][0]
        assert account["imap"]["password"] == "********"
        assert account["smtp"]["password"] == "********"
        assert account["imap"]["host"] == "imap.example.com"

    def test_create_account(self, file_client, config_file):
        r = file_client.post("/api/accounts", json=new_account())

        assert r.status_code == 201
        assert r.json()["emailAddress"] == "sales@example.com"
        assert "hunter2" not in r.text
        assert [a["name"] for a in file_client.get("/api/accounts").json()] == ["support", "sales"]
        assert load_config(config_file).get_account("sales") is not None
        assert config_file.with_suffix(".yml.bak").exists()

    def test_create_duplicate(self, file_client):
        assert file_client.post("/api/accounts", json=new_account("support")).status_code == 400

    def test_invalid_account_not_written(self, file_client, config_file):
        before = config_file.read_text()
        r = file_client.post("/api/accounts", json={"name": "broken", "email_address": "x@example.com"})

        assert r.status_code == 400
        assert config_file.read_text() == before

    def test_update_keeps_masked_secrets(self, file_client, config_file):
        account = file_client.get("/api/config").json()["config"]["accounts"][0]
        account["display_name"] = "Support Desk"

        r = file_client.put("/api/accounts/support", json=account)

        assert r.status_code == 200
        assert r.json()["displayName"] == "Support Desk"
        stored = load_config(config_file).get_account("support")
        assert stored.imap.password == "secret"
        assert stored.display_name == "Support Desk"

    def test_update_unknown(self, file_client):
        assert file_client.put("/api/accounts/nope", json=new_account("nope")).status_code == 404

    def test_toggle(self, file_client, config_file):
        r = file_client.patch("/api/accounts/support/toggle", params={"active": "false"})

        assert r.status_code == 200
        assert r.json()["active"] is False
        assert load_config(config_file).active_accounts == []

    def test_delete(self, file_client, config_file):
        file_client.post("/api/accounts", json=new_account())

        assert file_client.delete("/api/accounts/sales").status_code == 204
        assert file_client.get("/api/accounts/sales").status_code == 404
        assert load_config(config_file).get_account("sales") is None

    def test_last_account_cannot_be_deleted(self, file_client):
        assert file_client.delete("/api/accounts/support").status_code == 400

    def test_changes_reach_running_service(self, config_file, storage):
        service = MagicMock(storage=storage, running=True)
        client = TestClient(create_app(load_config(config_file), service=service, config_path=config_file))

        client.patch("/api/accounts/support/toggle", params={"active": "false"})

        service.forget_account.assert_called_once_with("support")
        assert client.get("/api/accounts/support").json()["active"] is False

    def test_requires_config_file(self, client):
        assert client.post("/api/accounts", json=new_account()).status_code == 409
