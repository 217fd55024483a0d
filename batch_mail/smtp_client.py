from __future__ import annotations

import contextlib
import logging
import smtplib
from email.message import EmailMessage
from types import TracebackType
from typing import Callable

from batch_mail.models import MailConfig, SMTPConfig

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465
DEFAULT_TIMEOUT_SEC = 30


def transport_config(config: MailConfig, *, timeout_sec: int = DEFAULT_TIMEOUT_SEC) -> SMTPConfig:
    """Map the stored account onto connection settings.

    Port 465 speaks TLS from the first byte; every other port connects in
    plain text and upgrades with STARTTLS.
    """
    use_ssl = config.smtp_port == IMPLICIT_TLS_PORT
    return SMTPConfig(
        host=config.smtp_server,
        port=config.smtp_port,
        username=config.email_address,
        password=config.password,
        use_ssl=use_ssl,
        use_starttls=not use_ssl,
        timeout_sec=timeout_sec,
    )


class SMTPClient:
    """SMTP client holding one authenticated session for a whole batch.

    Usage:
        with SMTPClient(smtp_config) as client:
            for recipient, message in batch:
                client.send(recipient, message)

    The session is opened exactly once in ``__enter__``. A send that fails
    mid-batch does not reconnect; later sends reuse the same session and
    fail on their own if it is gone.
    """

    def __init__(self, smtp_config: SMTPConfig):
        self.smtp_config = smtp_config
        self._session: smtplib.SMTP | None = None

    # -- context manager for the batch session ---------------------------------

    def __enter__(self) -> SMTPClient:
        self._session = self._connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._close_session()

    # -- public API ------------------------------------------------------------

    def test_connection(self) -> None:
        self._with_server(lambda _: None)

    def send(self, recipient_email: str, message: EmailMessage) -> None:
        def _send(server: smtplib.SMTP) -> None:
            refused = server.send_message(message)
            if recipient_email in refused:
                raise smtplib.SMTPRecipientsRefused(refused)

        if self._session is not None:
            _send(self._session)
        else:
            self._with_server(_send)

    # -- internals -------------------------------------------------------------

    def _connect(self) -> smtplib.SMTP:
        if self.smtp_config.use_ssl and self.smtp_config.use_starttls:
            raise ValueError("SMTP 配置冲突：use_ssl 与 use_starttls 不能同时开启")

        logger.info("连接 SMTP 服务器 %s:%s", self.smtp_config.host, self.smtp_config.port)
        if self.smtp_config.use_ssl:
            server = smtplib.SMTP_SSL(
                self.smtp_config.host,
                self.smtp_config.port,
                timeout=self.smtp_config.timeout_sec,
            )
        else:
            server = smtplib.SMTP(
                self.smtp_config.host,
                self.smtp_config.port,
                timeout=self.smtp_config.timeout_sec,
            )

        try:
            if self.smtp_config.use_starttls:
                server.starttls()
            self._login_if_needed(server)
        except (OSError, smtplib.SMTPException):
            with contextlib.suppress(OSError, smtplib.SMTPException):
                server.quit()
            raise
        return server

    def _close_session(self) -> None:
        server = self._session
        self._session = None
        if server is not None:
            with contextlib.suppress(OSError, smtplib.SMTPException):
                server.quit()

    def _with_server(self, callback: Callable[[smtplib.SMTP], None]) -> None:
        server = self._connect()
        try:
            callback(server)
        finally:
            with contextlib.suppress(OSError, smtplib.SMTPException):
                server.quit()

    def _login_if_needed(self, server: smtplib.SMTP) -> None:
        if not self.smtp_config.username or not self.smtp_config.password:
            return
        server.login(self.smtp_config.username, self.smtp_config.password)
