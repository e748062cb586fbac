"""
Wire log: a JSONL record of every message sent to the completion API and
every reply (or error) that came back, plus a small viewer for it.

Each line:
    {"ts": "...", "dir": "request|response", "role": "...",
     "model": "...", "conv": "...", "len": 123, "content": "..."}

Separate from the debug log and never read back into the conversation store.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

MAX_INLINE_CHARS = 2000
PREVIEW_CHARS = 500
PREVIEW_LINES = 15

C_RESET = "\033[0m"
C_DIM = "\033[2m"
C_MODEL = "\033[95m"

ROLE_STYLE = {
    "user": ("\033[96m", "▶"),
    "assistant": ("\033[93m", "◀"),
    "system": ("\033[90m", "●"),
    "error": ("\033[91m", "✗"),
}


def _clip(content: str) -> str:
    if len(content) <= MAX_INLINE_CHARS:
        return content
    half = MAX_INLINE_CHARS // 2
    omitted = len(content) - MAX_INLINE_CHARS
    return f"{content[:half]}\n\n[... {omitted} chars truncated ...]\n\n{content[-half:]}"


class WireLog:
    """Appends wire entries to a line-buffered JSONL file, opened on first write."""

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def log(self, direction: str, role: str, content: str, model: str = "", conversation_id: str = ""):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "model": model,
            "conv": conversation_id[:16],
            "len": len(content),
            "content": _clip(content),
        }
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log_request(self, messages: list[dict], model: str = "", conversation_id: str = ""):
        for msg in messages:
            self.log("request", msg.get("role", "?"), msg.get("content", ""), model, conversation_id)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def format_entry(entry: dict, raw: bool = False) -> str:
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts") or ""
    try:
        clock = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except ValueError:
        clock = ts[:8] or "??:??:??"

    role = entry.get("role", "?")
    color, icon = ROLE_STYLE.get(role, (C_RESET, "?"))
    arrow = "──▶" if entry.get("dir") == "request" else "◀──"
    parts = [f"  {C_DIM}{clock} {arrow}{C_RESET} {color}{icon} {role.upper()}{C_RESET}"]
    if entry.get("model"):
        parts.append(f"{C_MODEL}[{entry['model']}]{C_RESET}")
    parts.append(f"{C_DIM}({entry.get('len', 0)} chars){C_RESET}")
    if entry.get("conv"):
        parts.append(f"{C_DIM}conv:{entry['conv']}{C_RESET}")

    lines = ["  ".join(parts)]
    body = (entry.get("content") or "")[:PREVIEW_CHARS].split("\n")
    lines.extend(f"      {line}" for line in body[:PREVIEW_LINES] if body != [""])
    if len(body) > PREVIEW_LINES:
        lines.append(f"      {C_DIM}[{len(body) - PREVIEW_LINES} more lines]{C_RESET}")
    return "\n".join(lines)


def _entries(lines: Iterable[str], role_filter: str | None) -> Iterator[dict]:
    """Parse JSONL lines, skipping blanks, garbage and other roles."""
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not role_filter or entry.get("role") == role_filter:
            yield entry


def _follow(f) -> Iterator[str]:
    f.seek(0, 2)
    while True:
        line = f.readline()
        if line:
            yield line
        else:
            time.sleep(0.1)


def live_tap(
    log_path: str,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """Print the last `last_n` entries, then keep printing new ones unless follow is off."""
    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Enable it with wiretap.enabled: true in config.yaml")
        return

    with open(wire_path) as f:
        recent = f.readlines()[-last_n:] if last_n > 0 else []
    for entry in _entries(recent, role_filter):
        print(format_entry(entry, raw=raw))

    if not follow:
        return
    try:
        with open(wire_path) as f:
            for entry in _entries(_follow(f), role_filter):
                print(format_entry(entry, raw=raw), flush=True)
    except KeyboardInterrupt:
        pass
