"""
Unit Tests — regex receipt / statement helpers
"""

from __future__ import annotations

from datetime import date

import pytest

from finscan.processing.patterns import (
    extract_receipt_patterns,
    extract_transaction_tables,
    normalize_statement_date,
    parse_statement_date,
    parse_statement_lines,
)

TODAY = date(2024, 6, 30)


@pytest.mark.unit
class TestReceiptPatterns:

    def test_extracts_amount_date_merchant_items(self):
        text = (
            "CORNER CAFE\n"
            "12 Main St\n"
            "03/02/2024 09:14\n"
            "Latte 4.50\n"
            "Croissant $3.25\n"
            "TOTAL: $7.75\n"
        )

        found = extract_receipt_patterns(text)

        assert found["amounts"] == ["TOTAL: $7.75"]
        assert found["dates"] == ["03/02/2024"]
        assert found["merchant"] == "CORNER CAFE 12 Main St 03/02/2024 09:14"
        assert "Latte 4.50" in found["items"]
        assert "Croissant $3.25" in found["items"]

    def test_empty_text(self):
        assert extract_receipt_patterns("") == {
            "amounts": [], "dates": [], "merchant": "", "items": [],
        }


@pytest.mark.unit
class TestStatementDates:

    @pytest.mark.parametrize("raw, expected", [
        ("01/15/2024", "2024-01-15"),
        ("1/5/24",     "2024-01-05"),
        ("01-15-2024", "2024-01-15"),
        ("2024-01-15", "2024-01-15"),
    ])
    def test_supported_layouts(self, raw, expected):
        assert parse_statement_date(raw, today=TODAY) == expected

    def test_unrecognized_falls_back_to_today(self):
        assert parse_statement_date("Jan 15th", today=TODAY) == "2024-06-30"

    def test_normalize_has_no_fallback(self):
        assert normalize_statement_date("Jan 15th") is None
        assert normalize_statement_date("") is None
        assert normalize_statement_date("posted 01/15/2024") == "2024-01-15"


@pytest.mark.unit
class TestStatementLines:

    def test_income_and_expense_lines(self):
        text = (
            "Statement for account 1234\n"
            "01/05/2024 Salary ACME Corp 2,500.00\n"
            "01/07/2024 Grocery Mart -54.20\n"
            "2024-01-09 Coffee Shop $-3.80\n"
        )

        lines = parse_statement_lines(text, today=TODAY)

        assert [(l.date, l.description, l.amount, l.type) for l in lines] == [
            ("2024-01-05", "Salary ACME Corp", 2500.0, "income"),
            ("2024-01-07", "Grocery Mart", 54.2, "expense"),
            ("2024-01-09", "Coffee Shop", 3.8, "expense"),
        ]

    def test_iso_date_not_misread_as_month_day(self):
        [line] = parse_statement_lines("2024-01-15 Rent payment -1200.00", today=TODAY)
        assert line.date == "2024-01-15"
        assert line.description == "Rent payment"

    def test_lines_without_amount_ignored(self):
        assert parse_statement_lines("01/05/2024 Opening balance\n\nPage 1 of 2", today=TODAY) == []


@pytest.mark.unit
class TestTransactionTables:

    def test_rows_between_header_and_total(self):
        text = (
            "ACME BANK\n"
            "Date  Description  Amount\n"
            "01/05 Salary 2500.00\n"
            "01/07 Grocery -54.20\n"
            "Total 2445.80\n"
            "Date Description Debit Credit\n"
            "02/01 Rent -1200.00\n"
        )

        tables = extract_transaction_tables(text)

        assert tables == [
            ["01/05 Salary 2500.00", "01/07 Grocery -54.20"],
            ["02/01 Rent -1200.00"],
        ]

    def test_no_header_no_tables(self):
        assert extract_transaction_tables("just some text\nmore text") == []
