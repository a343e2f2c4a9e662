"""Bounded troubleshooting log of signaling events.

Entries are grouped by :class:`LogCategory`; entries that carry a ``call_id``
can be folded into one :class:`CallSummary` per call for a quick view of how
recent calls went.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


class LogCategory(str, Enum):
    SYSTEM = "system"
    CALL = "call"
    SIGNALING = "signaling"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    GENERAL = "general"

    @classmethod
    def coerce(cls, value: "LogCategory | str | None") -> "LogCategory":
        if isinstance(value, cls):
            return value
        cleaned = value.strip().lower() if isinstance(value, str) else ""
        if not cleaned:
            return cls.GENERAL
        try:
            return cls(cleaned)
        except ValueError as exc:
            raise ValueError(f"Unknown signaling log category: {value!r}") from exc


# Call events that close a call; the last one recorded wins.
OUTCOME_EVENTS = frozenset({"ended", "failed", "declined", "busy"})


@dataclass(slots=True)
class SignalingLogEntry:
    """A signaling event kept for troubleshooting."""

    timestamp: float
    category: LogCategory
    event: str
    message: str
    call_id: str | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category.value,
            "event": self.event,
            "message": self.message,
        }
        if self.call_id is not None:
            payload["call_id"] = self.call_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass(slots=True)
class CallSummary:
    """What the log knows about a single call."""

    call_id: str
    first_seen: float
    last_seen: float
    outcome: str | None = None
    error: str | None = None
    transitions: int = 0
    violations: int = 0
    transport_failures: int = 0

    @property
    def duration(self) -> float:
        return max(0.0, self.last_seen - self.first_seen)

    def to_dict(self) -> dict[str, object | None]:
        return {
            "call_id": self.call_id,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "duration": round(self.duration, 3),
            "outcome": self.outcome,
            "error": self.error,
            "transitions": self.transitions,
            "violations": self.violations,
            "transport_failures": self.transport_failures,
        }

    def absorb(self, entry: SignalingLogEntry) -> None:
        self.last_seen = max(self.last_seen, entry.timestamp)
        if entry.category is LogCategory.PROTOCOL:
            self.violations += 1
        elif entry.category is LogCategory.TRANSPORT:
            self.transport_failures += 1
        elif entry.category is LogCategory.CALL:
            if entry.event == "transition":
                self.transitions += 1
            elif entry.event in OUTCOME_EVENTS:
                self.outcome = entry.event
                error = (entry.metadata or {}).get("error")
                if error is not None:
                    self.error = str(error)


class SignalingLog:
    """Append-only ring buffer, optionally mirrored to a JSONL file."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SignalingLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare signaling log directory: %s", exc)
                self._path = None

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: LogCategory | str,
        event: str,
        message: str,
        *,
        call_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SignalingLogEntry:
        """Append a new event to the log and return the stored entry.

        Raises :class:`ValueError` for a category outside :class:`LogCategory`.
        """

        entry = SignalingLogEntry(
            timestamp=time.time(),
            category=LogCategory.coerce(category),
            event=event,
            message=message,
            call_id=call_id or None,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: LogCategory | str | None = None,
        call_id: str | None = None,
    ) -> list[SignalingLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[SignalingLogEntry] = list(self._entries)
        if isinstance(category, LogCategory) or (category is not None and category.strip()):
            wanted = LogCategory.coerce(category)
            entries = [entry for entry in entries if entry.category is wanted]
        if call_id is not None:
            entries = [entry for entry in entries if entry.call_id == call_id]
        return self._limit(list(entries), limit)

    def summarise_calls(self, limit: int | None = None) -> list[CallSummary]:
        """Fold retained entries into one summary per call, oldest call first.

        Only entries still inside the ring buffer contribute, so a long call
        may show a later ``first_seen`` than it really had.
        """

        with self._lock:
            entries = list(self._entries)
        summaries: dict[str, CallSummary] = {}
        for entry in entries:
            if entry.call_id is None:
                continue
            summary = summaries.get(entry.call_id)
            if summary is None:
                summary = CallSummary(entry.call_id, entry.timestamp, entry.timestamp)
                summaries[entry.call_id] = summary
            summary.absorb(entry)
        return self._limit(list(summaries.values()), limit)

    @staticmethod
    def _limit(items: list, limit: int | None) -> list:
        if limit is None:
            return items
        try:
            limit_value = max(1, int(limit))
        except (TypeError, ValueError):
            limit_value = 1
        return items[-limit_value:]

    def _append_persistent(self, entry: SignalingLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist signaling log: %s", exc)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["CallSummary", "LogCategory", "SignalingLog", "SignalingLogEntry"]
