from __future__ import annotations

from email import errors, policy
from email.headerregistry import Address
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid


class InvalidAddressError(ValueError):
    """Raised when a string does not parse as a single mailbox."""


def parse_mailbox(text: str) -> Address:
    """Parse ``addr`` or ``Display Name <addr>`` into an Address.

    Only mailbox syntax is checked: no DNS lookup, no grammar beyond what the
    header parser enforces.
    """
    value = text.strip()
    if not value:
        raise InvalidAddressError("地址为空")
    try:
        header = policy.default.header_factory("To", value)
    except (ValueError, IndexError, errors.HeaderParseError) as exc:
        raise InvalidAddressError(f"无法解析地址 '{value}': {exc}") from exc

    if header.defects:
        raise InvalidAddressError(f"无法解析地址 '{value}': {header.defects[0]}")
    if len(header.addresses) != 1:
        raise InvalidAddressError(f"无法解析地址 '{value}': 必须是单个邮箱")

    address = header.addresses[0]
    if not address.username or not address.domain:
        raise InvalidAddressError(f"无法解析地址 '{value}': 缺少用户名或域名")
    return address


def format_sender(name: str, email_address: str) -> Address:
    display_name = name.strip()
    if display_name:
        return parse_mailbox(formataddr((display_name, email_address.strip())))
    return parse_mailbox(email_address)


def build_html_message(
    *,
    sender: Address,
    recipient: Address,
    subject: str,
    html_body: str,
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid(domain=sender.domain or None)

    message.set_content(html_body, subtype="html", charset="utf-8")
    return message
