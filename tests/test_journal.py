"""Tests for plughost.journal."""

import json
from pathlib import Path

from plughost.journal import FaultRecord, journal_path, read_faults, write_fault


class TestJournal:
    def test_creates_journal_file(self, tmp_path: Path) -> None:
        path = write_fault(tmp_path, FaultRecord(context="activation", error="boom", recoverable=False))
        assert path.exists()
        assert path == tmp_path.resolve() / ".plughost" / "faults.jsonl"

    def test_entry_has_timestamp(self, tmp_path: Path) -> None:
        write_fault(tmp_path, FaultRecord(context="x", error="y", recoverable=True))
        entries = read_faults(tmp_path, last_n=1)
        assert len(entries) == 1
        assert "timestamp" in entries[0]
        assert entries[0]["recoverable"] is True

    def test_redaction_in_journal(self, tmp_path: Path) -> None:
        secret = "sk-1234567890abcdefghijklmnopqrstuvwxyz"
        write_fault(
            tmp_path,
            FaultRecord(context="state.update", error=f"bad key {secret}", recoverable=True),
        )
        record = json.loads(journal_path(tmp_path).read_text(encoding="utf-8").strip())
        assert secret not in record["error"]
        assert "[REDACTED:" in record["error"]

    def test_read_empty(self, tmp_path: Path) -> None:
        assert read_faults(tmp_path) == []

    def test_read_ordering(self, tmp_path: Path) -> None:
        for i in range(5):
            write_fault(tmp_path, FaultRecord(context=f"step{i}", error="e", recoverable=True))
        entries = read_faults(tmp_path, last_n=3)
        assert len(entries) == 3
        # Most recent first
        assert entries[0]["context"] == "step4"
        assert entries[2]["context"] == "step2"

    def test_error_type_recorded(self, tmp_path: Path) -> None:
        write_fault(
            tmp_path,
            FaultRecord(context="c", error="e", recoverable=False, error_type="LoadError"),
        )
        assert read_faults(tmp_path)[0]["error_type"] == "LoadError"
