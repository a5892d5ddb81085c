# tests/test_mailer.py — Outgoing email and optional telemetry tests
import pytest

import mailer
import telemetry


@pytest.mark.asyncio
async def test_unconfigured_smtp_logs_instead(monkeypatch, caplog):
    monkeypatch.setattr(mailer, "SMTP_HOST", "")
    with caplog.at_level("INFO", logger="kanban-portal.mail"):
        sent = await mailer.send_magic_link("someone@printnow.dev", "http://localhost:3000/auth/callback?token=abc")
    assert sent is False
    assert "token=abc" in caplog.text


@pytest.mark.asyncio
async def test_delivery_failure_returns_false(monkeypatch):
    def refuse(*args):
        raise ConnectionRefusedError("no smtp here")

    monkeypatch.setattr(mailer, "SMTP_HOST", "smtp.invalid")
    monkeypatch.setattr(mailer, "_send_sync", refuse)
    assert await mailer.send_invitation("new@printnow.dev", "Test Organisation", "Adam", "http://x/signup") is False


@pytest.mark.asyncio
async def test_configured_smtp_sends(monkeypatch):
    outbox = []
    monkeypatch.setattr(mailer, "SMTP_HOST", "smtp.printnow.dev")
    monkeypatch.setattr(mailer, "_send_sync", lambda to, subject, body: outbox.append((to, subject)))

    assert await mailer.send_invitation("new@printnow.dev", "Test Organisation", None, "http://x/signup") is True
    assert outbox == [("new@printnow.dev", "You're invited to Test Organisation")]


def test_telemetry_disabled_without_endpoint(monkeypatch):
    monkeypatch.setattr(telemetry, "OTLP_ENDPOINT", "")
    assert telemetry.setup_telemetry() is None
