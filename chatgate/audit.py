"""
Audit log: where proxy audit events end up.

Every event goes to the `chatgate.audit` logger as a single JSON line.
If a path is configured, the same line is appended to a JSONL file so the
`chatgate tap` command can read it back:

    {"ts": "...", "event": "chatbot_proxy", "requestId": "...", "outcome": "success", ...}
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only sink for built audit events."""

    def __init__(self, log_path: str | None = None):
        self.log_path = Path(log_path) if log_path else None
        self._file = None
        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def write(self, event: dict | None):
        """Emit one event. None means auditing is off for this request."""
        if event is None:
            return

        line = json.dumps(event, ensure_ascii=False)
        logger.info(line)

        if self.log_path:
            self._ensure_open()
            entry = {"ts": datetime.now(timezone.utc).isoformat(), **event}
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def read_events(log_path: str, last_n: int = 20, outcome: str | None = None) -> list[dict]:
    """Last N events from an audit JSONL file, optionally filtered by outcome."""
    path = Path(log_path)
    if not path.exists():
        return []

    events = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if outcome and entry.get("outcome") != outcome:
                continue
            events.append(entry)

    return events[-last_n:] if last_n > 0 else events


def format_event(entry: dict) -> str:
    """One-line human view of an audit event."""
    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = "??:??:??"

    line = (
        f"  {time_str}  {entry.get('outcome', '?'):<24} "
        f"user={entry.get('userId', '?')}  history={entry.get('historyCount', 0)}  "
        f"{entry.get('durationMs', 0)}ms"
    )
    if entry.get("errorCode"):
        line += f"  code={entry['errorCode']}"
    rate = entry.get("rateLimit")
    if isinstance(rate, dict):
        line += f"  remaining={rate.get('remaining')}/{rate.get('limit')}"
    if entry.get("inputPreview"):
        line += f"\n      {entry['inputPreview']}"
    return line
