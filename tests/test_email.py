"""Tests for transactional email delivery."""

import smtplib

import pytest

from blogauth.service.email import EmailService


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        if isinstance(FakeSMTP.fail_with, OSError):
            raise FakeSMTP.fail_with
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="noreply@example.com",
    )


class TestDevMode:
    def test_unconfigured_send_is_logged_not_sent(self, fake_smtp):
        service = EmailService()
        assert service.is_configured is False
        assert service.send("alice@example.com", "Hi", "<p>hi</p>") is True
        assert fake_smtp.sent == []

    def test_redact_email(self):
        assert EmailService._redact_email("alice@example.com") == "al***@example.com"
        assert EmailService._redact_email("nonsense") == "redacted"


class TestSmtp:
    def test_login_approval_contains_both_links(self, configured, fake_smtp):
        ok = configured.send_login_approval(
            "alice@example.com",
            "alice",
            "https://blog.example/verify-2fa?token=abc&action=approve",
            "https://blog.example/verify-2fa?token=abc&action=reject",
            expires_minutes=5,
            ip_addr="1.2.3.4",
        )
        assert ok is True
        from_addr, to_addr, message = fake_smtp.sent[0]
        assert from_addr == "noreply@example.com"
        assert to_addr == "alice@example.com"
        assert "token=abc&amp;action=approve" in message
        assert "token=abc&amp;action=reject" in message
        assert "5 minutes" in message

    def test_smtp_error_reports_failure(self, configured, fake_smtp):
        fake_smtp.fail_with = smtplib.SMTPException("boom")
        assert configured.send("alice@example.com", "Hi", "<p>hi</p>") is False

    def test_connection_error_reports_failure(self, configured, fake_smtp):
        fake_smtp.fail_with = ConnectionRefusedError("refused")
        assert configured.send("alice@example.com", "Hi", "<p>hi</p>") is False
