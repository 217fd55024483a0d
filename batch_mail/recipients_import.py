from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

EMAIL_HEADERS = {"email", "e-mail", "mail", "邮箱", "邮箱地址", "收件人"}


class RecipientImportError(ValueError):
    """Raised when a recipient file cannot be turned into address lines."""


@dataclass(frozen=True)
class RecipientImportResult:
    lines: list[str]
    skipped_rows: list[int] = field(default_factory=list)

    def as_text(self) -> str:
        return "\n".join(self.lines)


def load_recipient_lines(file_path: str | Path) -> RecipientImportResult:
    """Collect candidate addresses from a file, one per row.

    Addresses are not validated here; dispatch parses each one and reports
    the ones that fail.
    """
    path = Path(file_path)
    if not path.exists():
        raise RecipientImportError(f"Recipient file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix in {".txt", ".csv"}:
            rows = _load_text_rows(path)
        elif suffix == ".json":
            rows = _load_json_rows(path)
        elif suffix in {".xlsx", ".xlsm"}:
            rows = _load_xlsx_rows(path)
        else:
            raise RecipientImportError(f"Unsupported recipient file format: {suffix}")
    except (OSError, UnicodeDecodeError) as exc:
        raise RecipientImportError(f"读取收件人文件失败: {exc}") from exc

    lines: list[str] = []
    skipped: list[int] = []
    for row_number, value in rows:
        text = _cell_to_text(value).strip()
        if not text:
            skipped.append(row_number)
            continue
        lines.append(text)
    return RecipientImportResult(lines=lines, skipped_rows=skipped)


def _load_text_rows(path: Path) -> list[tuple[int, object]]:
    text = path.read_text(encoding="utf-8-sig")
    rows: list[tuple[int, object]] = []
    for index, line in enumerate(text.splitlines(), start=1):
        # csv exports: first column only
        rows.append((index, line.split(",", 1)[0] if path.suffix.lower() == ".csv" else line))
    return rows


def _load_json_rows(path: Path) -> list[tuple[int, object]]:
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise RecipientImportError(f"Invalid JSON: {exc}") from exc

    if isinstance(payload, dict):
        return [(index, email) for index, email in enumerate(payload.keys(), start=1)]

    if isinstance(payload, list):
        rows: list[tuple[int, object]] = []
        for index, item in enumerate(payload, start=1):
            if isinstance(item, dict):
                rows.append((index, item.get("email")))
            elif isinstance(item, str):
                rows.append((index, item))
            else:
                raise RecipientImportError(f"Invalid JSON row at index {index}: expected object or string")
        return rows

    raise RecipientImportError("Invalid JSON format: expected object or list")


def _load_xlsx_rows(path: Path) -> list[tuple[int, object]]:
    from openpyxl import load_workbook

    workbook = load_workbook(filename=path, read_only=True, data_only=True)
    try:
        worksheet = workbook.worksheets[0]
        value_rows = list(worksheet.iter_rows(values_only=True))
    finally:
        workbook.close()

    if not value_rows:
        return []

    email_idx = _detect_email_column(value_rows[0])
    if email_idx is None:
        email_idx, data_rows, first_row_number = 0, value_rows, 1
    else:
        data_rows, first_row_number = value_rows[1:], 2

    rows: list[tuple[int, object]] = []
    for row_number, row in enumerate(data_rows, start=first_row_number):
        rows.append((row_number, row[email_idx] if len(row) > email_idx else None))
    return rows


def _detect_email_column(row: Iterable[object]) -> int | None:
    for idx, value in enumerate(row):
        if _cell_to_text(value).strip().lower() in EMAIL_HEADERS:
            return idx
    return None


def _cell_to_text(value: object) -> str:
    if value is None:
        return ""
    return str(value)
