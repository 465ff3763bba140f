"""
Document ID Generator

Builds case numbers of the form PREFIX/DOCTYPE/FY/SEQ, e.g. VESPL/EQ/2526/001.
SEQ is a monotonic counter per (DOCTYPE, FY) kept in the case database so it is
allocated inside the same transaction as the case it numbers.
"""

import sqlite3
from datetime import datetime
from typing import Optional, Protocol


def fiscal_year_code(when: datetime, start_month: int = 4) -> str:
    """Fiscal year as two two-digit years, e.g. 2526 for April 2025 - March 2026."""
    start_year = when.year if when.month >= start_month else when.year - 1
    end_year = start_year + 1
    return f"{start_year % 100:02d}{end_year % 100:02d}"


class DocumentIdGenerator(Protocol):
    """Allocates human-readable document numbers inside a store transaction."""

    def generate(self, conn: sqlite3.Connection, doctype: str, when: datetime) -> str:
        ...


class SequenceDocumentIdGenerator:
    """Default generator backed by the `document_sequences` table."""

    def __init__(self, prefix: str = "VESPL", start_month: int = 4, padding: int = 3):
        self.prefix = prefix
        self.start_month = start_month
        self.padding = padding

    def generate(self, conn: sqlite3.Connection, doctype: str, when: datetime) -> str:
        fy = fiscal_year_code(when, self.start_month)
        cur = conn.execute(
            "UPDATE document_sequences SET last_seq = last_seq + 1 WHERE doctype=? AND fiscal_year=?",
            (doctype, fy),
        )
        if cur.rowcount == 0:
            conn.execute(
                "INSERT INTO document_sequences (doctype, fiscal_year, last_seq) VALUES (?, ?, 1)",
                (doctype, fy),
            )
        row = conn.execute(
            "SELECT last_seq FROM document_sequences WHERE doctype=? AND fiscal_year=?",
            (doctype, fy),
        ).fetchone()
        seq = int(row["last_seq"])
        return f"{self.prefix}/{doctype}/{fy}/{seq:0{self.padding}d}"


def parse_document_number(number: str) -> Optional[dict]:
    """Split PREFIX/DOCTYPE/FY/SEQ into its parts; None if malformed."""
    parts = number.split("/")
    if len(parts) != 4 or not parts[3].isdigit():
        return None
    return {
        "prefix": parts[0],
        "doctype": parts[1],
        "fiscal_year": parts[2],
        "sequence": int(parts[3]),
    }
