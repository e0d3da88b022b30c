"""Append-only JSONL fault journal with automatic secret redaction."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from plughost.redaction import redact

JOURNAL_DIR = ".plughost"
JOURNAL_FILE = "faults.jsonl"


@dataclass
class FaultRecord:
    """A single journal entry describing a plugin fault."""

    context: str
    error: str
    recoverable: bool
    error_type: str = ""


def journal_path(workspace: Path | str) -> Path:
    return Path(workspace).resolve() / JOURNAL_DIR / JOURNAL_FILE


def write_fault(workspace: Path | str, record: FaultRecord) -> Path:
    """Append a fault record to the workspace's journal.

    The error field is passed through ``redact()`` before writing.
    A UTC ISO-8601 timestamp is added automatically.

    Args:
        workspace: Workspace directory the plugin is hosted for.
        record: The fault to record.

    Returns:
        Path to the journal file.
    """
    path = journal_path(workspace)
    path.parent.mkdir(parents=True, exist_ok=True)

    entry = asdict(record)
    entry["error"] = redact(entry["error"])
    entry["timestamp"] = datetime.now(UTC).isoformat()

    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    return path


def read_faults(workspace: Path | str, last_n: int = 20) -> list[dict]:
    """Read the most recent *last_n* entries from the journal.

    Args:
        workspace: Workspace directory.
        last_n: How many entries to return (most recent first).

    Returns:
        A list of dicts, newest first.
    """
    path = journal_path(workspace)
    if not path.exists():
        return []

    lines = path.read_text(encoding="utf-8").strip().splitlines()
    entries = [json.loads(line) for line in lines if line.strip()]
    return list(reversed(entries[-last_n:]))
