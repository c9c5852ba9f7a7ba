import csv
import io

import openpyxl

from mailcomposer.errors import InvalidRecipientFile
from mailcomposer.schemas import Recipient


CSV_SUFFIXES = (".csv",)
EXCEL_SUFFIXES = (".xlsx", ".xlsm")


def _header_index(header: list, name: str) -> int | None:
    for idx, val in enumerate(header):
        if isinstance(val, str) and val.strip().lower() == name:
            return idx
    return None


def _cell(row, idx: int | None) -> str:
    if idx is None or idx >= len(row) or row[idx] is None:
        return ""
    return str(row[idx]).strip()


def _dedupe(recipients: list[Recipient]) -> list[Recipient]:
    # de-duplicate preserving order
    seen = set()
    result = []
    for r in recipients:
        key = r.email.lower()
        if key not in seen:
            seen.add(key)
            result.append(r)
    return result


def _collect(rows: list, email_col: int, name_col: int | None) -> list[Recipient]:
    recipients: list[Recipient] = []
    for row in rows:
        email = _cell(row, email_col)
        if "@" not in email:
            continue
        recipients.append(Recipient(email=email, name=_cell(row, name_col)))
    return _dedupe(recipients)


def parse_csv(data: bytes) -> list[Recipient]:
    """Comma-separated ``email,name`` rows; a header row naming an ``email`` column is optional."""
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidRecipientFile("CSV file must be UTF-8 encoded") from exc
    rows = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
    if not rows:
        return []
    email_col = _header_index(rows[0], "email")
    if email_col is None:
        return _collect(rows, 0, 1)
    return _collect(rows[1:], email_col, _header_index(rows[0], "name"))


def parse_excel(data: bytes) -> list[Recipient]:
    """Read the active sheet; the first row must contain an ``email`` header."""
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise InvalidRecipientFile(f"Could not open Excel file: {exc}") from exc
    try:
        rows = list(wb.active.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return []
    header = list(rows[0])
    email_col = _header_index(header, "email")
    if email_col is None:
        raise InvalidRecipientFile("Missing required 'email' column in Excel header")
    return _collect(rows[1:], email_col, _header_index(header, "name"))


def parse_recipient_file(filename: str, data: bytes) -> list[Recipient]:
    lowered = (filename or "").lower()
    if lowered.endswith(CSV_SUFFIXES):
        return parse_csv(data)
    if lowered.endswith(EXCEL_SUFFIXES):
        return parse_excel(data)
    raise InvalidRecipientFile("Only .csv, .xlsx or .xlsm files allowed")
