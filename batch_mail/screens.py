from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Callable

from batch_mail.config_store import ConfigError, ConfigStore
from batch_mail.dispatcher import BatchDispatcher, DispatchError
from batch_mail.models import DEFAULT_SMTP_PORT, DispatchRequest, MailConfig, SendStatus, View

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SendStatus, str], None]


class HtmlLoadError(ValueError):
    """Raised when the selected HTML file cannot be read as UTF-8 text."""


class SendInProgressError(RuntimeError):
    """Raised when a send is started while another one is still running."""


class HomeScreen:
    """Compose screen: HTML file, subject, recipient box and send status."""

    def __init__(self, config_store: ConfigStore, dispatcher: BatchDispatcher):
        self.config_store = config_store
        self.dispatcher = dispatcher
        self.html_path: Path | None = None
        self.html_body: str | None = None
        self.status = SendStatus.IDLE
        self.status_message = ""
        self._lock = threading.Lock()

    def select_html(self, path: str | Path) -> str:
        html_path = Path(path)
        try:
            html_body = html_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise HtmlLoadError(f"读取 HTML 文件失败: {exc}") from exc
        self.html_path = html_path
        self.html_body = html_body
        logger.info("已选择 HTML 文件: %s (%s 字符)", html_path, len(html_body))
        return html_body

    def open_settings(self) -> View:
        return View.SETTINGS

    def start_send(
        self,
        recipients_text: str,
        subject: str,
        on_finished: StatusCallback | None = None,
        on_started: StatusCallback | None = None,
    ) -> threading.Thread:
        with self._lock:
            if self.status is SendStatus.SENDING:
                raise SendInProgressError("已有发送任务正在进行")
            self.status = SendStatus.SENDING
            self.status_message = "正在发送..."
            request = DispatchRequest(recipients_raw=recipients_text, subject=subject, html_body=self.html_body)

        thread = threading.Thread(
            target=self._run_dispatch,
            kwargs={"request": request, "on_finished": on_finished},
            daemon=True,
        )
        if on_started is not None:
            on_started(SendStatus.SENDING, self.status_message)
        thread.start()
        return thread

    def _run_dispatch(
        self,
        *,
        request: DispatchRequest,
        on_finished: StatusCallback | None,
    ) -> None:
        try:
            config = self.config_store.load()
            outcome = self.dispatcher.dispatch(
                config,
                request.recipients_raw,
                request.subject,
                request.html_body,
            )
        except (ConfigError, DispatchError) as exc:
            status, message = SendStatus.ERROR, str(exc)
        except Exception as exc:
            logger.exception("发送任务异常终止")
            status, message = SendStatus.ERROR, str(exc)
        else:
            status = SendStatus.PARTIAL_SUCCESS if outcome.is_partial else SendStatus.SUCCESS
            message = outcome.summary

        with self._lock:
            self.status = status
            self.status_message = message
        if on_finished is not None:
            on_finished(status, message)


class SettingsScreen:
    """SMTP account form backed by the stored config."""

    def __init__(self, config_store: ConfigStore):
        self.config_store = config_store
        self.config = MailConfig()
        self.load_error: str | None = None
        self.reload()

    def reload(self) -> MailConfig:
        try:
            self.config = self.config_store.load()
            self.load_error = None
        except ConfigError as exc:
            logger.warning("加载配置失败，使用默认值: %s", exc)
            self.load_error = str(exc)
            self.config = MailConfig()
        return self.config

    def values(self) -> dict[str, str]:
        return {name: str(value) for name, value in asdict(self.config).items()}

    def save(
        self,
        *,
        smtp_server: str = "",
        smtp_port: str | int = DEFAULT_SMTP_PORT,
        email_address: str = "",
        password: str = "",
        sender_name: str = "",
    ) -> View:
        config = MailConfig(
            smtp_server=smtp_server.strip(),
            smtp_port=_parse_port(smtp_port),
            email_address=email_address.strip(),
            password=password,
            sender_name=sender_name.strip(),
        )
        self.config_store.save(config)
        self.config = config
        self.load_error = None
        return View.HOME


def _parse_port(value: str | int) -> int:
    try:
        port = int(str(value).strip())
    except ValueError:
        return DEFAULT_SMTP_PORT
    if not 0 <= port <= 65535:
        return DEFAULT_SMTP_PORT
    return port
