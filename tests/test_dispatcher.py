import smtplib
from email.message import EmailMessage

import pytest

from batch_mail.dispatcher import (
    AllRecipientsFailedError,
    BatchDispatcher,
    InvalidConfigError,
    InvalidSenderAddressError,
    NoContentError,
    NoRecipientsError,
    NoSubjectError,
    NoValidRecipientsError,
    TransportUnavailableError,
    normalize_recipients,
)
from batch_mail.models import MailConfig, SMTPConfig

HTML = "<p>hi</p>"


class FakeTransport:
    """Records every session the dispatcher opens and every message it sends."""

    def __init__(self, failing: set[str] | None = None, connect_error: Exception | None = None) -> None:
        self.failing = failing or set()
        self.connect_error = connect_error
        self.configs: list[SMTPConfig] = []
        self.connect_calls = 0
        self.close_calls = 0
        self.sent_targets: list[str] = []
        self.messages: list[EmailMessage] = []

    def __call__(self, smtp_config: SMTPConfig) -> "FakeSMTPClient":
        self.configs.append(smtp_config)
        return FakeSMTPClient(self)


class FakeSMTPClient:
    def __init__(self, transport: FakeTransport) -> None:
        self.transport = transport

    def __enter__(self):
        self.transport.connect_calls += 1
        if self.transport.connect_error is not None:
            raise self.transport.connect_error
        return self

    def __exit__(self, *args):
        self.transport.close_calls += 1

    def send(self, recipient_email: str, message: EmailMessage) -> None:
        if recipient_email in self.transport.failing:
            raise smtplib.SMTPRecipientsRefused({recipient_email: (550, b"mailbox unavailable")})
        self.transport.sent_targets.append(recipient_email)
        self.transport.messages.append(message)


def _config(**overrides) -> MailConfig:
    values = {
        "smtp_server": "smtp.example.com",
        "smtp_port": 587,
        "email_address": "sender@example.com",
        "password": "auth-code",
        "sender_name": "Sender",
    }
    values.update(overrides)
    return MailConfig(**values)


def test_normalize_recipients_strips_blank_lines_and_whitespace() -> None:
    assert normalize_recipients("a@x.com\n\n b@x.com \n") == ["a@x.com", "b@x.com"]


def test_normalize_recipients_keeps_order_and_duplicates() -> None:
    raw = "c@x.com\r\na@x.com\r\n\r\nc@x.com"

    assert normalize_recipients(raw) == ["c@x.com", "a@x.com", "c@x.com"]


@pytest.mark.parametrize("html_body", ["", None])
def test_missing_content_fails_before_anything_else(html_body) -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(NoContentError):
        dispatcher.dispatch(MailConfig(), "", "", html_body)

    assert transport.connect_calls == 0


def test_blank_recipients_fail_without_connecting() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(NoRecipientsError):
        dispatcher.dispatch(_config(), "  \n\t\n", "Subj", HTML)

    assert transport.connect_calls == 0


def test_blank_subject_fails_without_connecting() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(NoSubjectError):
        dispatcher.dispatch(_config(), "ok@x.com", "   ", HTML)

    assert transport.connect_calls == 0


def test_invalid_config_fails_before_recipient_normalization(monkeypatch: pytest.MonkeyPatch) -> None:
    def _unexpected(_raw: str) -> list[str]:
        raise AssertionError("recipients must not be normalized for an invalid config")

    monkeypatch.setattr("batch_mail.dispatcher.normalize_recipients", _unexpected)
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(InvalidConfigError) as exc_info:
        dispatcher.dispatch(_config(smtp_server=""), "ok@x.com", "Subj", HTML)

    assert exc_info.value.reason == "SMTP 服务器不能为空"
    assert transport.connect_calls == 0


def test_empty_normalized_recipients_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("batch_mail.dispatcher.normalize_recipients", lambda _raw: [])
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(NoValidRecipientsError):
        dispatcher.dispatch(_config(), "ok@x.com", "Subj", HTML)

    assert transport.connect_calls == 0


def test_unparseable_sender_fails_without_connecting() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(InvalidSenderAddressError):
        dispatcher.dispatch(_config(email_address="sender@", sender_name=""), "ok@x.com", "Subj", HTML)

    assert transport.connect_calls == 0


def test_session_failure_aborts_before_any_send() -> None:
    transport = FakeTransport(connect_error=smtplib.SMTPAuthenticationError(535, b"auth failed"))
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(TransportUnavailableError) as exc_info:
        dispatcher.dispatch(_config(), "ok@x.com\nother@x.com", "Subj", HTML)

    assert "auth failed" in str(exc_info.value)
    assert transport.connect_calls == 1
    assert transport.sent_targets == []


def test_all_successful_sends_return_plain_outcome() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    outcome = dispatcher.dispatch(_config(), "a@x.com\nb@x.com\nc@x.com", "Subj", HTML)

    assert outcome.succeeded == 3
    assert outcome.failures == []
    assert not outcome.is_partial
    assert "成功 3 封" in outcome.summary
    assert transport.sent_targets == ["a@x.com", "b@x.com", "c@x.com"]
    assert transport.connect_calls == 1
    assert transport.close_calls == 1


def test_partial_failure_returns_outcome_with_failed_recipient() -> None:
    transport = FakeTransport(failing={"bad@x.com"})
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    outcome = dispatcher.dispatch(_config(), "ok@x.com\nbad@x.com", "Subj", "<p>hi</p>")

    assert outcome.succeeded == 1
    assert outcome.is_partial
    assert [failure.recipient for failure in outcome.failures] == ["bad@x.com"]
    assert "mailbox unavailable" in outcome.failures[0].error
    assert "bad@x.com" in outcome.summary


def test_every_send_failing_raises_with_failures_in_input_order() -> None:
    transport = FakeTransport(failing={"one@x.com", "two@x.com"})
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    with pytest.raises(AllRecipientsFailedError) as exc_info:
        dispatcher.dispatch(_config(), "one@x.com\nnot-an-address\ntwo@x.com", "Subj", HTML)

    failures = exc_info.value.failures
    assert [failure.recipient for failure in failures] == ["one@x.com", "not-an-address", "two@x.com"]
    assert transport.close_calls == 1


def test_unparseable_recipient_does_not_stop_the_loop() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    outcome = dispatcher.dispatch(_config(), "not-an-address\nok@x.com", "Subj", HTML)

    assert outcome.succeeded == 1
    assert outcome.failures[0].recipient == "not-an-address"
    assert outcome.failures[0].error.startswith("无效的收件人地址")
    assert transport.sent_targets == ["ok@x.com"]


def test_messages_carry_sender_subject_and_html_body() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    dispatcher.dispatch(_config(sender_name="Batch Sender"), "Teacher <teacher@x.com>", "Hello", HTML)

    message = transport.messages[0]
    assert transport.sent_targets == ["teacher@x.com"]
    assert message["From"] == "Batch Sender <sender@example.com>"
    assert message["To"] == "Teacher <teacher@x.com>"
    assert message["Subject"] == "Hello"
    assert message.get_content_type() == "text/html"
    assert message.get_content_charset() == "utf-8"
    assert "<p>hi</p>" in message.get_content()


def test_empty_sender_name_uses_bare_address() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    dispatcher.dispatch(_config(sender_name=""), "ok@x.com", "Hello", HTML)

    assert transport.messages[0]["From"] == "sender@example.com"


def test_transport_settings_follow_stored_port() -> None:
    transport = FakeTransport()
    dispatcher = BatchDispatcher(smtp_client_factory=transport)

    dispatcher.dispatch(_config(smtp_port=465), "ok@x.com", "Hello", HTML)
    dispatcher.dispatch(_config(smtp_port=587), "ok@x.com", "Hello", HTML)

    implicit_tls, starttls = transport.configs
    assert (implicit_tls.use_ssl, implicit_tls.use_starttls) == (True, False)
    assert (starttls.use_ssl, starttls.use_starttls) == (False, True)
    assert starttls.username == "sender@example.com"
    assert starttls.password == "auth-code"
