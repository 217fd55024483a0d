from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from batch_mail.models import DEFAULT_SMTP_PORT, MailConfig

logger = logging.getLogger(__name__)

APP_DIR_NAME = "batch_mail"
CONFIG_FILE_NAME = "config.json"
_STRING_FIELDS = ("smtp_server", "email_address", "password", "sender_name")


class ConfigError(ValueError):
    """Base class for configuration load/save/validation failures."""


class ConfigReadError(ConfigError):
    """Raised when the config file exists but cannot be read."""


class ConfigParseError(ConfigError):
    """Raised when the config file content does not match the record shape."""


class ConfigWriteError(ConfigError):
    """Raised when the config file cannot be written."""


class ConfigSerializeError(ConfigError):
    """Raised when the config record cannot be encoded."""


class ConfigValidationError(ConfigError):
    """Raised by validate() with the first failing rule as the message."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def default_config_dir() -> Path:
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA")
        root = Path(base) if base else Path.home() / "AppData" / "Roaming"
    elif sys.platform == "darwin":
        root = Path.home() / "Library" / "Application Support"
    else:
        base = os.environ.get("XDG_CONFIG_HOME")
        root = Path(base) if base else Path.home() / ".config"
    return root / APP_DIR_NAME


def default_config_path() -> Path:
    return default_config_dir() / CONFIG_FILE_NAME


class ConfigStore:
    """Reads and writes the single MailConfig record.

    Every load() goes back to disk; nothing is cached between calls.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else default_config_path()

    def load(self) -> MailConfig:
        if not self.path.exists():
            return MailConfig()

        try:
            content = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigReadError(f"读取配置文件失败: {exc}") from exc

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ConfigParseError(f"解析配置文件失败: {exc}") from exc

        return _config_from_payload(payload)

    def save(self, config: MailConfig) -> None:
        try:
            text = json.dumps(asdict(config), ensure_ascii=False, indent=2) + "\n"
        except (TypeError, ValueError) as exc:
            raise ConfigSerializeError(f"序列化配置失败: {exc}") from exc

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteError(f"写入配置文件失败: {exc}") from exc
        logger.info("配置已保存到: %s", self.path)

    @staticmethod
    def validate(config: MailConfig) -> None:
        if not config.smtp_server:
            raise ConfigValidationError("SMTP 服务器不能为空")
        if config.smtp_port == 0:
            raise ConfigValidationError("端口号无效")
        if not config.email_address:
            raise ConfigValidationError("邮箱地址不能为空")
        if "@" not in config.email_address:
            raise ConfigValidationError("邮箱地址格式不正确")
        if not config.password:
            raise ConfigValidationError("密码不能为空")


def validation_error(config: MailConfig) -> str | None:
    try:
        ConfigStore.validate(config)
    except ConfigValidationError as exc:
        return exc.reason
    return None


def _config_from_payload(payload: Any) -> MailConfig:
    if not isinstance(payload, dict):
        raise ConfigParseError("解析配置文件失败: 顶层必须是 JSON 对象")

    values: dict[str, Any] = {}
    for name in _STRING_FIELDS:
        if name not in payload:
            raise ConfigParseError(f"解析配置文件失败: 缺少字段 {name}")
        value = payload[name]
        if not isinstance(value, str):
            raise ConfigParseError(f"解析配置文件失败: {name} 必须是字符串")
        values[name] = value

    port = payload.get("smtp_port", DEFAULT_SMTP_PORT)
    # bool is an int subclass; a JSON true/false is not a port
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
        raise ConfigParseError("解析配置文件失败: smtp_port 必须是 0-65535 之间的整数")
    values["smtp_port"] = port

    return MailConfig(**values)
