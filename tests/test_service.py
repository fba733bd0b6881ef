"""Tests for the polling service and diagnostics."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from mailresponder import diagnostics
from mailresponder.backends import MailBackend, create_backend
from mailresponder.config import AccountConfig, Config
from mailresponder.llm_client import LLMResponse, ReplyResult
from mailresponder.service import ResponderService

from conftest import make_inbound, make_raw_email


class FakeBackend(MailBackend):
    """In-memory backend recording what the service does."""

    name = "fake"

    def __init__(self, account, messages=None, fail_fetch=False):
        super().__init__(account)
        self.messages = messages or []
        self.fail_fetch = fail_fetch
        self.sent = []
        self.seen = []
        self.connected = False
        self.disconnected = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.disconnected = True

    def fetch_unseen(self, limit=None, subject_filter=None, exclude=()):
        if self.fail_fetch:
            raise ConnectionError("imap down")
        return [m for m in self.messages if m.source_id not in exclude][:limit]

    def mark_seen(self, message):
        self.seen.append(message.source_id)
        return True

    def send(self, reply):
        self.sent.append(reply)

    def test_connection(self):
        return {"api": {"protocol": "fake", "success": True, "message": "Connection successful"}}


@pytest.fixture
def llm():
    client = MagicMock()
    client.generate_reply.return_value = LLMResponse(
        success=True, result=ReplyResult(reply="Sure."), raw_response="{}"
    )
    return client


@pytest.fixture
def service(config, storage, llm):
    return ResponderService(config, storage=storage, llm_client=llm)


class TestCheckCycle:
    """Tests for one check cycle."""

    def test_replies_and_marks_seen(self, service, account):
        backend = FakeBackend(
            account,
            [
                make_inbound("1", message_id="<a@x>"),
                make_inbound("2", message_id="<b@x>", subject="Unrelated"),
            ],
        )
        with patch.object(service, "backend_for", return_value=backend):
            report = service.check_all_accounts()

        assert backend.connected and backend.disconnected
        assert len(backend.sent) == 1
        # Filtered messages stay unseen
        assert backend.seen == ["1"]

        summary = report.accounts[0]
        assert summary.fetched == 2
        assert summary.replied == 1
        assert summary.skipped == 1
        assert report.total_replied == 1

    def test_respects_max_messages(self, service, account, config):
        config.responder.max_messages_per_cycle = 1
        backend = FakeBackend(account, [make_inbound("1", message_id="<a@x>"), make_inbound("2", message_id="<b@x>")])
        with patch.object(service, "backend_for", return_value=backend):
            report = service.check_all_accounts()
        assert report.accounts[0].fetched == 1

    def test_no_mark_seen_in_dry_run(self, service, account, config):
        config.dry_run = True
        backend = FakeBackend(account, [make_inbound("1")])
        with patch.object(service, "backend_for", return_value=backend):
            report = service.check_all_accounts()
        assert backend.sent == []
        assert backend.seen == []
        assert report.accounts[0].replied == 1

    def test_mark_seen_disabled(self, service, account, config):
        config.responder.mark_seen = False
        backend = FakeBackend(account, [make_inbound("1")])
        with patch.object(service, "backend_for", return_value=backend):
            service.check_all_accounts()
        assert len(backend.sent) == 1
        assert backend.seen == []

    def test_failing_account_does_not_stop_others(self, tmp_path, storage, llm, account):
        second = account.model_copy(update={"name": "sales", "email_address": "sales@example.com"})
        config = Config(accounts=[account, second], logging={"audit_file": str(tmp_path / "a.jsonl")})
        service = ResponderService(config, storage=storage, llm_client=llm)

        backends = {
            "support": FakeBackend(account, fail_fetch=True),
            "sales": FakeBackend(second, [make_inbound("1")]),
        }
        with patch.object(service, "backend_for", side_effect=lambda a: backends[a.name]):
            report = service.check_all_accounts()

        assert report.accounts[0].error == "imap down"
        assert backends["support"].disconnected
        assert report.accounts[1].replied == 1
        assert report.total_failed == 1

    def test_inactive_accounts_ignored(self, tmp_path, storage, llm, account):
        inactive = account.model_copy(update={"name": "old", "active": False})
        config = Config(accounts=[account, inactive], logging={"audit_file": None})
        service = ResponderService(config, storage=storage, llm_client=llm)

        with patch.object(service, "backend_for", side_effect=lambda a: FakeBackend(a)) as factory:
            report = service.check_all_accounts()

        assert [a.account for a in report.accounts] == ["support"]
        assert factory.call_count == 1

    def test_unexpected_error_counts_as_failed(self, service, account):
        backend = FakeBackend(account, [make_inbound("1")])
        with patch.object(service, "backend_for", return_value=backend), patch.object(
            service.responder, "process", side_effect=RuntimeError("db locked")
        ):
            report = service.check_all_accounts()
        assert report.accounts[0].failed == 1
        assert backend.seen == []


    def test_dry_run_moves_on_to_newer_messages(self, service, account, config):
        config.dry_run = True
        config.responder.max_messages_per_cycle = 1
        backend = FakeBackend(account, [make_inbound("1", message_id="<a@x>"), make_inbound("2", message_id="<b@x>")])

        previewed = []
        with patch.object(service, "backend_for", return_value=backend):
            for _ in range(3):
                report = service.check_all_accounts()
                previewed.append(report.accounts[0].replied)

        assert service.llm_client.generate_reply.call_count == 2
        assert previewed == [1, 1, 0]

    def test_matching_imap_mail_behind_unrelated_unread_mail(self, service, account, config):
        config.responder.max_messages_per_cycle = 2
        subjects = {"1": "Lunch?", "2": "Invoice", "3": "[AI_REQUEST] Opening hours"}

        def uid(cmd, *args):
            if cmd == "SEARCH":
                return ("OK", [b"1 2 3"])
            if cmd == "FETCH":
                raw = make_raw_email(subject=subjects[args[0]], message_id=f"<m{args[0]}@x>")
                return ("OK", [(b"x", raw)])
            return ("OK", [b""])

        with patch("mailresponder.imap_client.imaplib.IMAP4_SSL") as imap_factory, patch(
            "mailresponder.smtp_sender.smtplib.SMTP"
        ) as smtp_factory:
            imap = imap_factory.return_value
            imap.select.return_value = ("OK", [b"3"])
            imap.uid.side_effect = uid
            report = service.check_all_accounts()

        assert report.accounts[0].replied == 1
        smtp_factory.return_value.send_message.assert_called_once()
        imap.uid.assert_any_call("STORE", "3", "+FLAGS", "(\\Seen)")


class TestTokenProviders:
    def test_cached_per_account(self, storage, llm, tmp_path):
        oauth_account = AccountConfig(
            name="office",
            email_address="me@contoso.com",
            auth_type="oauth2",
            oauth2={"client_id": "id", "refresh_token": "rt"},
        )
        config = Config(accounts=[oauth_account], logging={"audit_file": None})
        service = ResponderService(config, storage=storage, llm_client=llm)

        assert service.token_provider(oauth_account) is service.token_provider(oauth_account)

    def test_none_for_basic_auth(self, service, account):
        assert service.token_provider(account) is None

    def test_backend_closes_provider_it_created(self):
        gmail_account = AccountConfig(
            name="gmail",
            email_address="me@gmail.com",
            backend="gmail",
            oauth2={"provider": "google", "client_id": "id", "refresh_token": "rt"},
        )
        backend = create_backend(gmail_account)
        provider = backend.owned_token_provider
        assert provider is not None

        with patch.object(provider, "close") as close:
            backend.close()
        close.assert_called_once()

    def test_shared_provider_left_open(self):
        gmail_account = AccountConfig(
            name="gmail",
            email_address="me@gmail.com",
            backend="gmail",
            oauth2={"provider": "google", "client_id": "id", "refresh_token": "rt"},
        )
        shared = MagicMock()
        create_backend(gmail_account, token_provider=shared).close()
        shared.close.assert_not_called()


class TestRunLoop:
    def test_stops_when_requested(self, service, config):
        calls = []

        def cycle():
            calls.append(1)
            service.stop()
            return MagicMock(total_replied=0, total_failed=0)

        with patch.object(service, "check_all_accounts", side_effect=cycle):
            service.run(install_signal_handlers=False)

        assert calls == [1]
        llm = service.llm_client
        llm.close.assert_called_once()

        lines = open(config.logging.audit_file, encoding="utf-8").read()
        assert '"event_type": "startup"' in lines
        assert '"event_type": "shutdown"' in lines


class TestDiagnostics:
    """Tests for connection diagnostics."""

    def test_success(self, account):
        result = diagnostics.test_account(account, backend=FakeBackend(account))
        assert result["overallStatus"] == "SUCCESS"
        assert result["api"]["success"] is True

    def test_partial_failure(self, account):
        backend = FakeBackend(account)
        backend.test_connection = lambda: {
            "imap": {"success": True},
            "smtp": {"success": False, "error": "Authentication Failed"},
        }
        result = diagnostics.test_account(account, backend=backend)
        assert result["overallStatus"] == "FAILED"
        assert result["smtp"]["error"] == "Authentication Failed"

    def test_imap_backend_reports_auth_failure(self, account):
        with patch("mailresponder.imap_client.imaplib.IMAP4_SSL") as imap_factory, patch(
            "mailresponder.smtp_sender.smtplib.SMTP"
        ) as smtp_factory:
            imap_factory.return_value.status.return_value = ("OK", [b"INBOX (MESSAGES 4 UNSEEN 1)"])
            smtp_factory.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"no")
            result = diagnostics.test_account(account)

        assert result["imap"]["success"] is True
        assert result["imap"]["unreadMessages"] == 1
        assert result["smtp"]["success"] is False
        assert result["smtp"]["error"] == "Authentication Failed"
        assert result["overallStatus"] == "FAILED"

    def test_closes_token_provider_it_created(self):
        gmail_account = AccountConfig(
            name="gmail",
            email_address="me@gmail.com",
            backend="gmail",
            oauth2={"provider": "google", "client_id": "id", "refresh_token": "rt"},
        )
        with patch("mailresponder.backends.TokenProvider") as provider_cls, patch(
            "mailresponder.backends.GmailBackend.test_connection",
            return_value={"api": {"success": True}},
        ):
            result = diagnostics.test_account(gmail_account)

        assert result["overallStatus"] == "SUCCESS"
        provider_cls.return_value.close.assert_called_once()

    def test_account_summary_has_no_secrets(self, account):
        summary = diagnostics.account_summary(account)
        assert "secret" not in str(summary)
        assert summary["imap"]["host"] == "imap.example.com"

    def test_system_status(self, config, storage):
        storage.get_or_create_conversation("support", "alice@example.com")
        status = diagnostics.system_status(config, storage)
        assert status["totalAccounts"] == 1
        assert status["accounts"][0]["conversations"] == 1
        assert "statistics" in status
