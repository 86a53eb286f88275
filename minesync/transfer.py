"""
transfer.py - Account import/export as JSON or CSV.

Export writes every stored account field, access token included, so a file can
be re-imported on another device. Import accepts either the full JSON export
(an array of account objects) or a CSV with at least a ``phone_number`` column;
``user_id``, ``username`` and ``access_token`` columns are optional. Header
names are matched case-insensitively.
"""

import csv
import json
from io import StringIO
from typing import Dict, Iterable, List

FORMATS = ("json", "csv")

EXPORT_FIELDS = ("phone_number", "user_id", "username", "access_token", "created_at")
IMPORT_FIELDS = ("phone_number", "user_id", "username", "access_token")

MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
}


def export_json(accounts: Iterable[Dict]) -> str:
    rows = [{f: acct.get(f) for f in EXPORT_FIELDS} for acct in accounts]
    return json.dumps(rows, indent=2)


def export_csv(accounts: Iterable[Dict]) -> str:
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for acct in accounts:
        writer.writerow({f: "" if acct.get(f) is None else acct.get(f) for f in EXPORT_FIELDS})
    return output.getvalue()


def export_accounts(accounts: Iterable[Dict], fmt: str) -> str:
    if fmt == "json":
        return export_json(accounts)
    if fmt == "csv":
        return export_csv(accounts)
    raise ValueError(f"Unsupported export format: {fmt}")


def _clean(row: Dict) -> Dict[str, str]:
    out = {}
    for field in IMPORT_FIELDS:
        value = row.get(field)
        out[field] = "" if value is None else str(value).strip()
    return out


def parse_json(text: str) -> List[Dict[str, str]]:
    """Rows from a JSON array of account objects. Non-object entries are dropped."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ValueError(f"Invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise ValueError("JSON import must be an array of accounts")
    return [_clean(item) for item in data if isinstance(item, dict)]


def parse_csv(text: str) -> List[Dict[str, str]]:
    reader = csv.DictReader(StringIO(text.lstrip("\ufeff")))
    if not reader.fieldnames:
        raise ValueError("CSV import is empty")
    headers = {name: (name or "").strip().lower() for name in reader.fieldnames}
    if "phone_number" not in headers.values():
        raise ValueError("CSV import must have a phone_number column")
    rows = []
    for raw in reader:
        row = {headers[k]: v for k, v in raw.items() if k in headers}
        if not any((v or "").strip() for v in row.values()):
            continue
        rows.append(_clean(row))
    return rows


def parse_accounts(text: str, fmt: str) -> List[Dict[str, str]]:
    if fmt == "json":
        return parse_json(text)
    if fmt == "csv":
        return parse_csv(text)
    raise ValueError(f"Unsupported import format: {fmt}")
