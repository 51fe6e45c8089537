"""
Tests for the Mail Delivery Core
================================

Fake transports and an injected sleep; Brevo payloads go through
httpx.MockTransport.
"""

import json

import httpx
import pytest

from lawman.config import Settings
from lawman.errors import DeliveryFailure
from lawman.mailer import (
    BrevoTransport,
    MailDelivery,
    MailMessage,
    SmtpTransport,
    TransportError,
    build_case_update_message,
    parse_from,
    plan_attempts,
)


class FakeTransport:
    def __init__(self, name, fail_times=0, verify_ok=True):
        self.name = name
        self.fail_times = fail_times
        self.verify_ok = verify_ok
        self.sent = []
        self.calls = 0

    def send(self, message):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise TransportError(f"{self.name} down")
        self.sent.append(message)

    def verify(self):
        if not self.verify_ok:
            raise TransportError("auth failed")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def message():
    return MailMessage(to="client@example.com", subject="Case update", text="Hello", html="<p>Hello</p>")


def make_delivery(primary, fallback, sleeps, retries=2, delay=2.0):
    return MailDelivery(primary=primary, fallback=fallback, retries=retries, retry_delay=delay, sleep=sleeps.append)


class TestAttemptPlan:

    def test_primary_then_one_fallback(self):
        plan = plan_attempts(True, True, retries=2, base_delay=2.0)
        assert [(a.transport, a.attempt, a.delay_before) for a in plan] == [
            ("primary", 1, 0.0),
            ("primary", 2, 2.0),
            ("fallback", 1, 0.0),
        ]

    def test_linear_backoff(self):
        plan = plan_attempts(True, False, retries=4, base_delay=2.0)
        assert [a.delay_before for a in plan] == [0.0, 2.0, 4.0, 6.0]

    def test_fallback_only_uses_retry_count(self):
        plan = plan_attempts(False, True, retries=2, base_delay=1.0)
        assert [a.transport for a in plan] == ["fallback", "fallback"]

    def test_nothing_configured(self):
        assert plan_attempts(False, False, retries=2, base_delay=1.0) == []


class TestSend:

    def test_primary_success(self, message, sleeps):
        primary, fallback = FakeTransport("smtp"), FakeTransport("brevo")
        result = make_delivery(primary, fallback, sleeps).send(message)

        assert result.delivered is True
        assert result.transport == "smtp"
        assert result.attempts == 1
        assert fallback.calls == 0
        assert sleeps == []

    def test_primary_retry_then_success(self, message, sleeps):
        primary = FakeTransport("smtp", fail_times=1)
        result = make_delivery(primary, FakeTransport("brevo"), sleeps).send(message)

        assert result.delivered is True
        assert result.attempts == 2
        assert sleeps == [2.0]

    def test_fallback_called_exactly_once_after_primary_exhausted(self, message, sleeps):
        primary = FakeTransport("smtp", fail_times=99)
        fallback = FakeTransport("brevo")
        result = make_delivery(primary, fallback, sleeps).send(message)

        assert primary.calls == 2
        assert fallback.calls == 1
        assert result.delivered is True
        assert result.transport == "brevo"
        assert result.attempts == 3

    def test_all_attempts_fail_reports_without_raising(self, message, sleeps):
        primary = FakeTransport("smtp", fail_times=99)
        fallback = FakeTransport("brevo", fail_times=99)
        result = make_delivery(primary, fallback, sleeps).send(message)

        assert result.delivered is False
        assert isinstance(result.error, DeliveryFailure)
        assert fallback.calls == 1
        assert len(result.errors) == 3

    def test_fallback_only_retries(self, message, sleeps):
        fallback = FakeTransport("brevo", fail_times=1)
        result = make_delivery(None, fallback, sleeps).send(message)

        assert result.delivered is True
        assert fallback.calls == 2
        assert sleeps == [2.0]

    def test_empty_recipient_is_a_no_op(self, sleeps):
        primary = FakeTransport("smtp")
        result = make_delivery(primary, None, sleeps).send(MailMessage(to="", subject="x", text="y"))

        assert result.skipped is True
        assert result.delivered is False
        assert primary.calls == 0

    def test_no_transport_configured(self, message, sleeps):
        result = make_delivery(None, None, sleeps).send(message)
        assert result.delivered is False
        assert isinstance(result.error, DeliveryFailure)


class TestVerifyPrimary:

    def test_failed_verify_routes_everything_to_fallback(self, message, sleeps):
        primary = FakeTransport("smtp", verify_ok=False)
        fallback = FakeTransport("brevo")
        delivery = make_delivery(primary, fallback, sleeps)

        assert delivery.verify_primary() is False
        result = delivery.send(message)

        assert primary.calls == 0
        assert result.transport == "brevo"

    def test_successful_verify_keeps_primary(self, sleeps):
        delivery = make_delivery(FakeTransport("smtp"), None, sleeps)
        assert delivery.verify_primary() is True
        assert delivery.primary is not None


class TestBrevoTransport:

    def _transport(self, handler, sender="Lawman Legal <noreply@lawman.legal>"):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return BrevoTransport(api_key="xkeysib-test", sender=sender, client=client)

    def test_payload_and_headers(self, message):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "abc"})

        self._transport(handler).send(message)

        assert seen["headers"]["api-key"] == "xkeysib-test"
        assert seen["body"] == {
            "sender": {"name": "Lawman Legal", "email": "noreply@lawman.legal"},
            "to": [{"email": "client@example.com"}],
            "subject": "Case update",
            "textContent": "Hello",
            "htmlContent": "<p>Hello</p>",
        }

    def test_html_is_optional(self):
        transport = self._transport(lambda r: httpx.Response(201))
        payload = transport.build_payload(MailMessage(to="a@b.c", subject="s", text="t"))
        assert "htmlContent" not in payload

    def test_error_status_raises_transport_error(self, message):
        transport = self._transport(lambda r: httpx.Response(401, json={"code": "unauthorized"}))
        with pytest.raises(TransportError, match="401"):
            transport.send(message)


def test_parse_from():
    assert parse_from("DAFKU Law <noreply@dafku.al>") == {"name": "DAFKU Law", "email": "noreply@dafku.al"}
    assert parse_from("noreply@dafku.al") == {"email": "noreply@dafku.al"}


def test_from_settings_builds_transports():
    settings = Settings(
        smtp_host="smtp.example.com", smtp_user="u", smtp_password="p",
        brevo_api_key="k", mail_retries=3, mail_retry_delay_seconds=0.5,
    )
    delivery = MailDelivery.from_settings(settings)

    assert isinstance(delivery.primary, SmtpTransport)
    assert isinstance(delivery.fallback, BrevoTransport)
    assert delivery.retries == 3
    assert delivery.retry_delay == 0.5


def test_from_settings_without_credentials():
    delivery = MailDelivery.from_settings(Settings(smtp_host=None, brevo_api_key=None))
    assert delivery.configured is False


def test_case_update_message():
    msg = build_case_update_message("a@b.c", "Arta", "CS1", "Send Proposal")
    assert msg.to == "a@b.c"
    assert "CS1" in msg.subject
    assert "Send Proposal" in msg.text
