"""
test_transfer.py - Unit tests for account import/export file formats.
"""

import csv
import json
from io import StringIO

import pytest

from minesync.transfer import (
    EXPORT_FIELDS,
    export_accounts,
    export_csv,
    export_json,
    parse_accounts,
    parse_csv,
    parse_json,
)

ACCOUNTS = [
    {
        "phone_number": "+15550001",
        "user_id": "u1",
        "username": "alice",
        "access_token": "tok-1",
        "created_at": 100.0,
    },
    {
        "phone_number": "+15550002",
        "user_id": "",
        "username": "",
        "access_token": "tok,2",
        "created_at": 200.0,
    },
]


# ── Export ────────────────────────────────────────────────────────────────

class TestExport:

    def test_json_keeps_every_field(self):
        data = json.loads(export_json(ACCOUNTS))
        assert data == ACCOUNTS

    def test_csv_has_header_and_quotes_commas(self):
        rows = list(csv.DictReader(StringIO(export_csv(ACCOUNTS))))
        assert tuple(rows[0].keys()) == EXPORT_FIELDS
        assert rows[1]["access_token"] == "tok,2"

    def test_csv_of_nothing_is_just_a_header(self):
        assert export_csv([]).strip() == ",".join(EXPORT_FIELDS)

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            export_accounts(ACCOUNTS, "xml")


# ── Import ────────────────────────────────────────────────────────────────

class TestParseCsv:

    def test_minimal_phone_column(self):
        rows = parse_csv("phone_number\n+15550001\n+15550002\n")
        assert [r["phone_number"] for r in rows] == ["+15550001", "+15550002"]
        assert rows[0]["access_token"] == ""

    def test_headers_are_case_insensitive(self):
        rows = parse_csv(" Phone_Number ,Access_Token\n+15550001 , tok \n")
        assert rows == [
            {"phone_number": "+15550001", "user_id": "", "username": "", "access_token": "tok"}
        ]

    def test_blank_lines_are_skipped(self):
        rows = parse_csv("phone_number,username\n+15550001,a\n,\n\n+15550002,b\n")
        assert len(rows) == 2

    def test_byte_order_mark(self):
        assert parse_csv("\ufeffphone_number\n+15550001\n")[0]["phone_number"] == "+15550001"

    def test_missing_phone_column(self):
        with pytest.raises(ValueError):
            parse_csv("password\nsecret\n")

    def test_empty_file(self):
        with pytest.raises(ValueError):
            parse_csv("")

    def test_reads_own_export(self):
        rows = parse_csv(export_csv(ACCOUNTS))
        assert [(r["phone_number"], r["access_token"]) for r in rows] == [
            ("+15550001", "tok-1"),
            ("+15550002", "tok,2"),
        ]


class TestParseJson:

    def test_array_of_accounts(self):
        rows = parse_json(json.dumps(ACCOUNTS))
        assert rows[0] == {
            "phone_number": "+15550001", "user_id": "u1", "username": "alice", "access_token": "tok-1",
        }

    def test_non_object_entries_are_dropped(self):
        rows = parse_json('[{"phone_number": "+1"}, "junk", 3, null]')
        assert [r["phone_number"] for r in rows] == ["+1"]

    def test_numbers_become_strings(self):
        assert parse_json('[{"phone_number": 15550001}]')[0]["phone_number"] == "15550001"

    @pytest.mark.parametrize("text", ["{not json", '{"phone_number": "+1"}', ""])
    def test_rejects_non_arrays(self, text):
        with pytest.raises(ValueError):
            parse_json(text)

    def test_dispatch(self):
        assert parse_accounts("phone_number\n+1\n", "csv")[0]["phone_number"] == "+1"
        with pytest.raises(ValueError):
            parse_accounts("", "yaml")
