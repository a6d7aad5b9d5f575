from __future__ import annotations

import json
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

LOG_NAME = "run_full.log"
EVENTS_NAME = "run_full.jsonl"

_SECRET_FIELD_MARKERS = ("token", "api_key", "private_key", "privkey", "mnemonic")

# KEY=value pairs whose value must never reach a log line.
_SECRET_ASSIGN_RE = re.compile(r"\b([A-Z0-9_]*(?:PRIVATE_KEY|MNEMONIC|TOKEN)[A-Z0-9_]*)=(\S+)")


def _now_iso_utc() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _compact_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def redact_command(cmd: str) -> str:
    return _SECRET_ASSIGN_RE.sub(lambda m: f"{m.group(1)}=***", str(cmd))


def redact_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop secret-named fields; mask secret assignments inside command strings."""
    out: Dict[str, Any] = {}
    for k, v in fields.items():
        key = str(k)
        if any(marker in key.lower() for marker in _SECRET_FIELD_MARKERS):
            continue
        if key.lower() in ("cmd", "command") and isinstance(v, str):
            v = redact_command(v)
        out[key] = v
    return out


def _archive_previous(paths: Iterable[Path]) -> None:
    stamp: Optional[str] = None
    for p in paths:
        if not p.exists():
            continue
        if stamp is None:
            stamp = time.strftime("%Y%m%d%H%M%S", time.gmtime())
        p.replace(p.with_name(f"{p.stem}.{stamp}{p.suffix}"))


class RunLoggerV1:
    """
    Deploy run log, shared by every worker thread:
      - run_full.log   human-readable lines (plain messages, warnings, events)
      - run_full.jsonl one JSON event per line, secrets removed

    Files left by a previous run in the same directory are renamed with a UTC timestamp.
    """

    def __init__(self, *, out_dir: Path, echo: bool = True):
        self.out_dir = Path(out_dir).resolve()
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.out_dir / LOG_NAME
        self.jsonl_path = self.out_dir / EVENTS_NAME
        self.echo = bool(echo)
        self._started = time.monotonic()
        self._lock = threading.RLock()
        _archive_previous((self.log_path, self.jsonl_path))

    def _emit(self, text: str, *, echo: bool) -> None:
        line = f"[{_now_iso_utc()}] {text}\n"
        with self._lock:
            if echo:
                print(line, end="", flush=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line)

    def log(self, msg: str) -> None:
        self._emit(str(msg), echo=self.echo)

    def warn(self, msg: str) -> None:
        self._emit(f"WARN: {msg}", echo=self.echo)

    def event(self, name: str, **fields: Any) -> None:
        rec = {
            "ts": _now_iso_utc(),
            "t_rel_s": round(time.monotonic() - self._started, 6),
            "event": str(name),
            "fields": redact_fields(fields),
        }
        with self._lock:
            with open(self.jsonl_path, "a", encoding="utf-8") as f:
                f.write(_compact_json(rec) + "\n")
            # events stay out of stdout; the human log still gets them
            self._emit(f"EVENT {rec['event']} {_compact_json(rec['fields'])}", echo=False)
