import smtplib
from dataclasses import replace

import pytest

from dorc import alerts
from dorc.runtime import ChangeEvent, Instance, RolloutStatus

SMTP_SETTINGS = dict(
    enable_email=True,
    smtp_host="smtp.test",
    smtp_port=2525,
    smtp_user="bot",
    smtp_password="pw",
    email_from="dorc@test",
    email_to="ops@test",
)


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipients, message):
        FakeSMTP.sent.append((sender, recipients, message))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _configure(monkeypatch, **overrides):
    monkeypatch.setattr(alerts, "settings", replace(alerts.settings, **{**SMTP_SETTINGS, **overrides}))


def test_disabled_email_sends_nothing(smtp, monkeypatch):
    _configure(monkeypatch, enable_email=False)
    assert alerts.send_email("subject", "body") is False
    assert smtp.sent == []


def test_incomplete_smtp_settings(smtp, monkeypatch):
    _configure(monkeypatch, smtp_password=None)
    assert alerts.send_email("subject", "body") is False
    assert smtp.sent == []


def test_email_is_sent_when_configured(smtp, monkeypatch):
    _configure(monkeypatch)
    assert alerts.send_email("DOWN: web", "details") is True
    [(sender, recipients, message)] = smtp.sent
    assert (sender, recipients) == ("dorc@test", ["ops@test"])
    assert "Subject: DOWN: web" in message


@pytest.mark.parametrize("error", [smtplib.SMTPException("rejected"), ConnectionRefusedError("refused")])
def test_delivery_errors_never_raise(smtp, monkeypatch, error):
    _configure(monkeypatch)
    smtp.fail_with = error
    assert alerts.send_email("subject", "body") is False


def test_alert_subjects():
    inst = Instance("c1", "dorc-web-r2-0", "web", 2, 0, "web:2", True, healthy=False, message="HTTP 503")
    subject, body = alerts.instance_alert(ChangeEvent("unhealthy", inst, "HTTP 503"))
    assert subject == "DOWN: web r2 (dorc-web-r2-0)"
    assert "Detail: HTTP 503" in body
    assert alerts.instance_alert(ChangeEvent("recovered", inst))[0].startswith("RECOVERED")

    st = RolloutStatus("abc", "web", 1, 2, "rolled_back", "canary", 10, "Rolled back: timeout")
    assert alerts.rollout_alert(st)[0] == "ROLLOUT ROLLED_BACK: web r2"
