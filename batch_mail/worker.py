from __future__ import annotations

import json
import logging
import sys
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any

from batch_mail.app import AppController
from batch_mail.config_store import ConfigStore, validation_error
from batch_mail.models import SendStatus, View
from batch_mail.smtp_client import SMTPClient, transport_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(log_file: str | Path | None = None, level: int = logging.INFO) -> None:
    """Log to stderr (stdout carries protocol events) and optionally a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)


class JsonLineWriter:
    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._lock = threading.Lock()

    def write_line(self, payload: dict[str, Any]) -> None:
        text = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            self.stream.write(text + "\n")
            self.stream.flush()


class Worker:
    def __init__(self, writer=None, controller: AppController | None = None):
        self.writer = writer or JsonLineWriter()
        self.controller = controller or AppController()
        self._send_thread: threading.Thread | None = None

    def handle_message(self, message: dict[str, Any]) -> None:
        message_type = str(message.get("type", "")).strip()
        payload = message.get("payload", {}) or {}
        try:
            if message_type == "navigate":
                self._handle_navigate(payload)
            elif message_type == "load_config":
                self._handle_load_config()
            elif message_type == "save_config":
                self._handle_save_config(payload)
            elif message_type == "test_smtp":
                self._handle_test_smtp()
            elif message_type == "select_html":
                self._handle_select_html(payload)
            elif message_type == "import_recipients":
                self._handle_import_recipients(payload)
            elif message_type == "start_send":
                self._handle_start_send(payload)
            elif message_type == "get_status":
                self._write_status()
            else:
                self.writer.write_line({"type": "error", "error": f"Unknown message type: {message_type}"})
        except Exception as exc:
            logger.warning("处理消息 %s 失败: %s", message_type, exc)
            self.writer.write_line({"type": "error", "error": str(exc)})

    def wait_for_send(self, timeout: float | None = None) -> None:
        thread = self._send_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout)

    def _handle_navigate(self, payload: dict[str, Any]) -> None:
        view = _parse_view(payload.get("view"))
        self.controller.navigate(view)
        self._write_view_changed()

    def _handle_load_config(self) -> None:
        config = self.controller.config_store.load()
        reason = validation_error(config)
        self.writer.write_line(
            {
                "type": "config_loaded",
                "config": asdict(config),
                "valid": reason is None,
                "reason": reason,
            }
        )

    def _handle_save_config(self, payload: dict[str, Any]) -> None:
        intent = self.controller.settings.save(
            smtp_server=str(payload.get("smtp_server", "")),
            smtp_port=payload.get("smtp_port", ""),
            email_address=str(payload.get("email_address", "")),
            password=str(payload.get("password", "")),
            sender_name=str(payload.get("sender_name", "")),
        )
        self.writer.write_line({"type": "config_saved", "path": str(self.controller.config_store.path)})
        self.controller.navigate(intent)
        self._write_view_changed()

    def _handle_test_smtp(self) -> None:
        config = self.controller.config_store.load()
        ConfigStore.validate(config)
        SMTPClient(transport_config(config)).test_connection()
        self.writer.write_line({"type": "smtp_test_succeeded"})

    def _handle_select_html(self, payload: dict[str, Any]) -> None:
        path = payload.get("path")
        if not path:
            raise ValueError("Missing HTML file path")
        html_body = self.controller.home.select_html(str(path))
        self.writer.write_line({"type": "html_selected", "path": str(path), "chars": len(html_body)})

    def _handle_import_recipients(self, payload: dict[str, Any]) -> None:
        from batch_mail.recipients_import import RecipientImportError, load_recipient_lines

        path = payload.get("path")
        if not path:
            raise RecipientImportError("Missing recipient file path")
        result = load_recipient_lines(str(path))
        self.writer.write_line(
            {
                "type": "recipients_imported",
                "text": result.as_text(),
                "count": len(result.lines),
                "skipped_rows": result.skipped_rows,
            }
        )

    def _handle_start_send(self, payload: dict[str, Any]) -> None:
        if self._send_thread and self._send_thread.is_alive():
            self.writer.write_line({"type": "error", "error": "Another send is running"})
            return

        home = self.controller.home
        self._send_thread = home.start_send(
            str(payload.get("recipients", "")),
            str(payload.get("subject", "")),
            on_finished=self._write_send_status,
            on_started=self._write_send_status,
        )

    def _write_send_status(self, status: SendStatus, message: str) -> None:
        self.writer.write_line({"type": "send_status", "status": status.value, "message": message})

    def _write_status(self) -> None:
        home = self.controller.home
        self.writer.write_line(
            {"type": "send_status", "status": home.status.value, "message": home.status_message}
        )

    def _write_view_changed(self) -> None:
        event: dict[str, Any] = {"type": "view_changed", "view": self.controller.active_view.value}
        if self.controller.active_view is View.SETTINGS:
            event["settings"] = self.controller.settings.values()
            event["load_error"] = self.controller.settings.load_error
        self.writer.write_line(event)


def _parse_view(value: Any) -> View:
    try:
        return View(str(value or "").strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown view: {value}") from exc


def main() -> None:
    configure_logging()
    worker = Worker()
    for line in sys.stdin:
        raw = line.strip()
        if not raw:
            continue
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            worker.writer.write_line({"type": "error", "error": f"Invalid JSON: {exc}"})
            continue
        worker.handle_message(message)
    # Wait for the in-flight send so its final status is flushed before exit.
    worker.wait_for_send()


if __name__ == "__main__":
    main()
