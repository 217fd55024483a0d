from __future__ import annotations

import contextlib
import logging
import smtplib
from typing import Callable

from batch_mail.config_store import ConfigStore, ConfigValidationError
from batch_mail.message_builder import (
    InvalidAddressError,
    build_html_message,
    format_sender,
    parse_mailbox,
)
from batch_mail.models import DispatchFailure, DispatchOutcome, MailConfig, SMTPConfig
from batch_mail.smtp_client import SMTPClient, transport_config

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Base class for failures that abort a whole dispatch."""


class NoContentError(DispatchError):
    def __init__(self) -> None:
        super().__init__("请先选择 HTML 文件")


class NoRecipientsError(DispatchError):
    def __init__(self) -> None:
        super().__init__("收件人列表不能为空")


class NoSubjectError(DispatchError):
    def __init__(self) -> None:
        super().__init__("邮件主题不能为空")


class InvalidConfigError(DispatchError):
    def __init__(self, reason: str):
        super().__init__(f"邮箱配置无效: {reason}")
        self.reason = reason


class NoValidRecipientsError(DispatchError):
    def __init__(self) -> None:
        super().__init__("没有有效的收件人")


class InvalidSenderAddressError(DispatchError):
    def __init__(self, detail: str):
        super().__init__(f"发件人地址无效: {detail}")


class TransportUnavailableError(DispatchError):
    def __init__(self, detail: str):
        super().__init__(f"无法连接 SMTP 服务器: {detail}")


class AllRecipientsFailedError(DispatchError):
    def __init__(self, failures: list[DispatchFailure]):
        lines = [f"全部发送失败（{len(failures)} 封）"]
        lines.extend(f"{failure.recipient}: {failure.error}" for failure in failures)
        super().__init__("\n".join(lines))
        self.failures = failures


def normalize_recipients(recipients_raw: str) -> list[str]:
    """One candidate address per non-blank line, trimmed, in input order."""
    return [line.strip() for line in recipients_raw.splitlines() if line.strip()]


class BatchDispatcher:
    """Sends one HTML email per recipient over a single relay session.

    Everything that can be checked without the network is checked before the
    session is opened. Once it is open, per-recipient problems are collected
    instead of raised, and only a batch where nothing got through is turned
    back into an exception.
    """

    def __init__(self, smtp_client_factory: Callable[[SMTPConfig], SMTPClient] = SMTPClient):
        self.smtp_client_factory = smtp_client_factory

    def dispatch(
        self,
        config: MailConfig,
        recipients_raw: str,
        subject: str,
        html_body: str | None,
    ) -> DispatchOutcome:
        if not html_body:
            raise NoContentError()
        if not recipients_raw or not recipients_raw.strip():
            raise NoRecipientsError()
        if not subject or not subject.strip():
            raise NoSubjectError()
        try:
            ConfigStore.validate(config)
        except ConfigValidationError as exc:
            raise InvalidConfigError(exc.reason) from exc

        recipients = normalize_recipients(recipients_raw)
        if not recipients:
            raise NoValidRecipientsError()

        try:
            sender = format_sender(config.sender_name, config.email_address)
        except InvalidAddressError as exc:
            raise InvalidSenderAddressError(str(exc)) from exc

        logger.info("开始发送: %s 位收件人, 发件人 %s", len(recipients), sender.addr_spec)
        succeeded = 0
        failures: list[DispatchFailure] = []
        client = self.smtp_client_factory(transport_config(config))
        with contextlib.ExitStack() as stack:
            try:
                session = stack.enter_context(client)
            except (OSError, smtplib.SMTPException, ValueError) as exc:
                logger.error("SMTP 会话建立失败: %s", exc)
                raise TransportUnavailableError(str(exc)) from exc

            for recipient_text in recipients:
                try:
                    recipient = parse_mailbox(recipient_text)
                except InvalidAddressError as exc:
                    failures.append(DispatchFailure(recipient_text, f"无效的收件人地址: {exc}"))
                    logger.warning("跳过无效收件人 %s: %s", recipient_text, exc)
                    continue

                try:
                    message = build_html_message(
                        sender=sender,
                        recipient=recipient,
                        subject=subject,
                        html_body=html_body,
                    )
                    session.send(recipient.addr_spec, message)
                except Exception as exc:
                    failures.append(DispatchFailure(recipient_text, str(exc)))
                    logger.warning("发送失败 %s: %s", recipient_text, exc)
                    continue

                succeeded += 1
                logger.info("发送成功 %s", recipient_text)

        logger.info("发送结束: 成功 %s, 失败 %s", succeeded, len(failures))
        if succeeded == 0:
            raise AllRecipientsFailedError(failures)
        return DispatchOutcome(succeeded=succeeded, failures=failures)
