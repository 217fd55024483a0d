#!/usr/bin/env python3
"""本地 SMTP 端到端冒烟测试.

启动一个轻量级 debug SMTP 服务器，通过 BatchDispatcher 全链路验证:
  - 配置文件保存/读取
  - 单会话复用发送
  - 无效收件人与被拒收件人不中断批次
  - 汇总结果

用法:
  uv run scripts/qa/smoke_local_smtp.py
"""

from __future__ import annotations

import socketserver
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from socket import socket

# ── Mini SMTP Server ────────────────────────────────────────────────────────


class MiniSMTPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, handler_class):
        super().__init__(server_address, handler_class)
        self.payloads: list[str] = []
        self.sessions = 0


class MiniSMTPHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        self.server.sessions += 1  # type: ignore[attr-defined]
        self.wfile.write(b"220 smoke-smtp ready\r\n")
        self.wfile.flush()
        while True:
            line = self.rfile.readline()
            if not line:
                return
            cmd = line.decode("utf-8", errors="ignore").strip().upper()
            if cmd.startswith("EHLO") or cmd.startswith("HELO"):
                self.wfile.write(b"250-smoke-smtp\r\n250 SIZE 10485760\r\n")
            elif cmd.startswith("RCPT TO:<REJECT"):
                self.wfile.write(b"550 no such user\r\n")
            elif cmd.startswith("MAIL FROM") or cmd.startswith("RCPT TO"):
                self.wfile.write(b"250 OK\r\n")
            elif cmd == "DATA":
                self.wfile.write(b"354 End data\r\n")
                data: list[bytes] = []
                while True:
                    chunk = self.rfile.readline()
                    if chunk in (b".\r\n", b".\n"):
                        break
                    data.append(chunk)
                self.server.payloads.append(b"".join(data).decode("utf-8", errors="ignore"))  # type: ignore[attr-defined]
                self.wfile.write(b"250 queued\r\n")
            elif cmd == "QUIT":
                self.wfile.write(b"221 bye\r\n")
                self.wfile.flush()
                return
            else:
                self.wfile.write(b"250 OK\r\n")
            self.wfile.flush()


def _pick_free_port() -> int:
    with socket() as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


# ── Main ────────────────────────────────────────────────────────────────────


def main() -> None:
    from batch_mail.config_store import ConfigStore
    from batch_mail.dispatcher import BatchDispatcher
    from batch_mail.models import MailConfig
    from batch_mail.smtp_client import SMTPClient

    port = _pick_free_port()
    server = MiniSMTPServer(("127.0.0.1", port), MiniSMTPHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    print(f"[启动] 本地 SMTP 服务器运行在 127.0.0.1:{port}")

    with tempfile.TemporaryDirectory() as tmp:
        store = ConfigStore(Path(tmp) / "batch_mail" / "config.json")
        store.save(
            MailConfig(
                smtp_server="127.0.0.1",
                smtp_port=port,
                email_address="me@example.com",
                password="unused",
                sender_name="测试同学",
            )
        )
        config = store.load()
        print(f"[配置] 已写入并读取 {store.path}")

        # 本地服务器不支持 STARTTLS/AUTH
        dispatcher = BatchDispatcher(
            smtp_client_factory=lambda smtp: SMTPClient(
                replace(smtp, use_starttls=False, username="", password="", timeout_sec=5)
            )
        )

        print("\n[发送] 4 行收件人（含 1 个无效地址、1 个被拒地址）...")
        outcome = dispatcher.dispatch(
            config,
            "zhangsan@example.com\n\nnot-an-address\nreject@example.com\n  lisi@example.com  \n",
            "冒烟测试",
            "<h1>你好</h1><p>这是一封冒烟测试邮件。</p>",
        )

        print(f"  {outcome.summary}")
        assert outcome.succeeded == 2, f"期望成功 2 封，实际 {outcome.succeeded}"
        assert [f.recipient for f in outcome.failures] == ["not-an-address", "reject@example.com"]
        assert server.sessions == 1, f"期望 1 个会话，实际 {server.sessions}"
        print("  ✓ 单会话发送与失败汇总正确")

        print("\n[内容校验] 检查 SMTP 服务器收到的邮件...")
        assert len(server.payloads) == 2, f"期望 2 封，服务器收到 {len(server.payloads)}"
        assert "text/html" in server.payloads[0]
        assert "To: zhangsan@example.com" in server.payloads[0]
        print("  ✓ HTML 正文与收件人正确")

    server.shutdown()
    server.server_close()
    thread.join(timeout=1)

    print("\n" + "=" * 50)
    print("✅ 本地 SMTP 端到端冒烟测试全部通过!")
    print("=" * 50)


if __name__ == "__main__":
    main()
