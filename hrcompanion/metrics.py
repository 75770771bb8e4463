"""CSV journal of lifecycle, connection and broadcast events."""
from __future__ import annotations

import contextlib
import csv
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "address",
    "status",
    "value",
    "message",
    "extra",
)


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(extra)


@dataclass(slots=True)
class MetricRecord:
    """One journal row."""

    timestamp: str
    event: str
    address: Optional[str] = None
    status: Optional[str] = None
    value: Optional[float] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "address": self.address or "",
            "status": self.status or "",
            "value": self.value if self.value is not None else "",
            "message": self.message or "",
            "extra": self.extra,
        }
        return {key: row.get(key, "") for key in fields}


class MetricsLogger:
    """Append-only CSV logger.

    Rows are written and flushed one at a time so a tail of the file always
    reflects the latest lifecycle transition. Writes are serialised with a lock
    because broadcast items arrive on the scanner callback while lifecycle
    events arrive on the pairing dispatch.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else DEFAULT_FIELDS
        if "event" not in self.fields:
            raise ValueError("fields must include the 'event' column")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._lock = threading.Lock()
        self._context = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock, self.path.open("w", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore").writeheader()

    def log(
        self,
        event: str,
        *,
        address: Optional[str] = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        record = MetricRecord(
            timestamp=self._timestamp(),
            event=event,
            address=address,
            status=status,
            value=value,
            message=message,
            extra=_encode_extra(self._combined_extra(extra)),
        )
        row = record.as_row(self.fields)
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore").writerow(row)

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        """Attach ``extra`` to every row logged from this thread inside the block."""
        payload: Dict[str, Any] = dict(extra or {})
        payload.update(extra_kwargs)
        stack = self._context_stack()
        stack.append(payload)
        try:
            yield
        finally:
            stack.pop()

    def _timestamp(self) -> str:
        dt = self._clock()
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")

    def _combined_extra(self, extra: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self._static_extra)
        for layer in self._context_stack():
            payload.update(layer)
        if extra:
            payload.update(extra)
        return payload

    def _context_stack(self) -> list[Dict[str, Any]]:
        stack = getattr(self._context, "stack", None)
        if stack is None:
            stack = []
            self._context.stack = stack
        return stack


__all__ = [
    "MetricsLogger",
    "MetricRecord",
    "DEFAULT_FIELDS",
]
