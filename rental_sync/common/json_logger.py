"""Structured JSON logger for the sync services.

Every event goes to the stream as newline-delimited JSON and is fanned out to
any attached sinks. The sync services attach two: a ``RingBufferSink`` that
backs the live tail shown by the status endpoints, and a ``DailyFileSink``
that appends one JSON line per event to a per-site, per-day file.
"""
from __future__ import annotations

import json
import sys
import threading
from collections import deque
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence

from rental_sync.common.date_utils import aware_now, get_timezone

__all__ = [
    "DailyFileSink",
    "JsonLogger",
    "LogSink",
    "RingBufferSink",
    "get_logger",
    "log_entry",
    "log_event",
    "new_run_id",
    "read_daily_log",
]


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S%f")


class LogSink(Protocol):
    def write(self, event: Dict[str, Any]) -> None: ...


def _default_line_format(event: Dict[str, Any]) -> str:
    stamp = aware_now().strftime("%H:%M:%S")
    site = event.get("site_id")
    prefix = f"[{stamp}] [{site}] " if site else f"[{stamp}] "
    return prefix + str(event.get("message", ""))


def log_entry(event: Dict[str, Any]) -> Dict[str, Any]:
    """The ``{timestamp, message, level?, orderNos?}`` shape shared by tails and daily files."""

    entry: Dict[str, Any] = {"timestamp": aware_now().isoformat(), "message": event.get("message")}
    if event.get("status") and event["status"] != "ok":
        entry["level"] = event["status"]
    order_nos = event.get("order_nos")
    if order_nos:
        entry["orderNos"] = list(order_nos)
    return entry


class RingBufferSink:
    """Keep the most recent ``maxlen`` formatted events in memory."""

    def __init__(self, maxlen: int, formatter: Callable[[Dict[str, Any]], Any] = _default_line_format):
        self._lines: Deque[Any] = deque(maxlen=maxlen)
        self._formatter = formatter

    def write(self, event: Dict[str, Any]) -> None:
        if not event.get("message"):
            return
        self._lines.append(self._formatter(event))

    def lines(self) -> List[Any]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)


class DailyFileSink:
    """Append ``{timestamp, message, orderNos?}`` JSON lines to one file per site per day.

    File names follow ``{prefix}-{site_id}-{YYYY-MM-DD}.log``; events without a
    ``site_id`` are not persisted.
    """

    def __init__(self, log_dir: Path | str, prefix: str):
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self._lock = threading.Lock()

    def path_for(self, site_id: str, day: date) -> Path:
        return self.log_dir / f"{self.prefix}-{site_id}-{day.isoformat()}.log"

    def write(self, event: Dict[str, Any]) -> None:
        site_id = event.get("site_id")
        message = event.get("message")
        if not site_id or not message:
            return
        entry = log_entry(event)
        encoded = json.dumps(entry, ensure_ascii=False, default=str)
        day = date.fromisoformat(entry["timestamp"][:10])
        with self._lock:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path_for(site_id, day), "a", encoding="utf-8") as handle:
                handle.write(encoded + "\n")


def read_daily_log(log_dir: Path | str, prefix: str, site_id: str, day: date | None = None) -> List[Dict[str, Any]]:
    """Return the entries of one daily file; malformed lines are skipped."""

    target_day = day or aware_now(get_timezone()).date()
    path = DailyFileSink(log_dir, prefix).path_for(site_id, target_day)
    if not path.exists():
        return []
    entries: List[Dict[str, Any]] = []
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return entries


class JsonLogger:
    """Emit newline-delimited JSON events and fan them out to sinks."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        stream=None,
        *,
        sinks: Sequence[LogSink] = (),
    ):
        self.run_id = run_id or new_run_id()
        self.stream = stream or sys.stdout
        self.default_context: Dict[str, Any] = {"run_id": self.run_id}
        self.sinks: List[LogSink] = list(sinks)
        self._owns_state = True
        self._state: Dict[str, bool] = {"closed": False}

    def bind(self, **kwargs: Any) -> "JsonLogger":
        child = JsonLogger(run_id=self.run_id, stream=self.stream)
        child.default_context = {**self.default_context, **kwargs}
        child.sinks = self.sinks
        child._owns_state = False
        child._state = self._state
        return child

    @property
    def closed(self) -> bool:
        return self._state["closed"]

    def _emit(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        event = {**self.default_context, **payload}
        event.setdefault("ts", datetime.now(timezone.utc).isoformat())
        encoded = json.dumps(event, default=str, ensure_ascii=False)
        self.stream.write(encoded + "\n")
        self.stream.flush()
        for sink in self.sinks:
            try:
                sink.write(event)
            except OSError as exc:
                self.stream.write(
                    json.dumps(
                        {"phase": "logging", "status": "warn", "message": f"log sink write failed: {exc}"},
                        ensure_ascii=False,
                    )
                    + "\n"
                )

    def info(self, *, phase: str, status: str = "ok", message: str = "", **fields: Any) -> None:
        if self.closed:
            return
        payload = {"phase": phase, "status": status, "message": message, **fields}
        self._emit(payload)

    def warn(self, *, phase: str, message: str, **fields: Any) -> None:
        self.info(phase=phase, status="warn", message=message, **fields)

    def error(self, *, phase: str, message: str, **fields: Any) -> None:
        self.info(phase=phase, status="error", message=message, **fields)

    def close(self) -> None:
        if not self._owns_state:
            return
        self._state["closed"] = True


def get_logger(run_id: Optional[str] = None, *, sinks: Sequence[LogSink] = ()) -> JsonLogger:
    return JsonLogger(run_id=run_id, sinks=sinks)


def log_event(*, logger: JsonLogger, phase: str, status: str = "ok", message: str = "", **extras: Any) -> None:
    logger.info(phase=phase, status=status, message=message, **extras)


