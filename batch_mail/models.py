from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_SMTP_PORT = 587


@dataclass(frozen=True)
class MailConfig:
    smtp_server: str = ""
    smtp_port: int = DEFAULT_SMTP_PORT
    email_address: str = ""
    password: str = ""
    sender_name: str = ""


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    username: str
    password: str
    use_ssl: bool = False
    use_starttls: bool = True
    timeout_sec: int = 30


@dataclass(frozen=True)
class DispatchRequest:
    recipients_raw: str
    subject: str
    html_body: str | None


@dataclass(frozen=True)
class DispatchFailure:
    recipient: str
    error: str


@dataclass(frozen=True)
class DispatchOutcome:
    succeeded: int
    failures: list[DispatchFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.succeeded > 0 and bool(self.failures)

    @property
    def summary(self) -> str:
        if not self.failures:
            return f"发送完成：成功 {self.succeeded} 封"
        lines = [f"部分发送成功：成功 {self.succeeded} 封，失败 {len(self.failures)} 封"]
        lines.extend(f"{failure.recipient}: {failure.error}" for failure in self.failures)
        return "\n".join(lines)


class SendStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ERROR = "error"


class View(str, Enum):
    HOME = "home"
    SETTINGS = "settings"
