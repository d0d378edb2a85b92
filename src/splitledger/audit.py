"""Append-only mutation log. Every committed ledger change is recorded here."""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any

# Default log location
DEFAULT_LOG_PATH = Path.home() / ".splitledger" / "audit.jsonl"


def get_log_path() -> Path:
    """Get the log file path, respecting SPLITLEDGER_LOG_PATH env var."""
    env_path = os.environ.get("SPLITLEDGER_LOG_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_LOG_PATH


def ensure_log_dir(log_path: Path) -> None:
    """Ensure the log directory exists."""
    log_path.parent.mkdir(parents=True, exist_ok=True)


def log_event(
    event: str,
    group_id: str | None = None,
    log_path: Path | None = None,
    **details: Any,
) -> None:
    """
    Append an event entry to the log file.

    Args:
        event: Event name, e.g. "debt.payment" or "group.recalculated"
        group_id: Group the event belongs to, if any
        log_path: Optional custom log path (for testing)
        **details: Extra JSON-serializable fields (Decimals and UUIDs become strings)
    """
    if log_path is None:
        log_path = get_log_path()

    ensure_log_dir(log_path)

    entry: dict[str, Any] = {
        "ts": datetime.now().isoformat(),
        "event": event,
    }

    if group_id is not None:
        entry["group_id"] = group_id

    entry.update(details)

    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")


def read_log(
    log_path: Path | None = None,
    limit: int | None = None,
    event: str | None = None,
) -> list[dict[str, Any]]:
    """
    Read entries from the log file.

    Args:
        log_path: Optional custom log path
        limit: Maximum number of entries to return (from end of file)
        event: Only return entries with this event name

    Returns:
        List of log entries as dictionaries
    """
    if log_path is None:
        log_path = get_log_path()

    if not log_path.exists():
        return []

    entries = []
    with open(log_path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                entries.append(json.loads(line))

    if event is not None:
        entries = [e for e in entries if e.get("event") == event]

    if limit is not None:
        return entries[-limit:]
    return entries
