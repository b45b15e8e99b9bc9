from __future__ import annotations

import json
import logging
import os
from collections import Counter, deque
from datetime import datetime
from typing import Any, Protocol


_LOGGER = logging.getLogger(__name__)
_EVENT_HISTORY_LIMIT = max(50, int(os.getenv("CIRCUIT_LAYOUT_EVENT_HISTORY_LIMIT", "800")))
_layout_event_history: deque[dict[str, Any]] = deque(maxlen=_EVENT_HISTORY_LIMIT)

_WARNING_EVENTS = ("unresolved_reference", "unplaced_component", "duplicate_reference", "duplicate_component")


class LayoutObserver(Protocol):
    def __call__(self, level: int, event: str, **fields: Any) -> None: ...


def log_layout_event(level: int, event: str, **fields: Any) -> None:
    payload = {"event": event, **fields}
    history_entry = {
        "timestamp": datetime.now().isoformat(),
        "level": logging.getLevelName(level),
        **payload,
    }
    _layout_event_history.append(history_entry)
    try:
        encoded = json.dumps(payload, sort_keys=True, default=str)
    except Exception:  # noqa: BLE001
        encoded = str(payload)
    _LOGGER.log(level, "layout_event %s", encoded)


def null_observer(level: int, event: str, **fields: Any) -> None:
    _ = (level, event, fields)


class RecordingObserver:
    """Collects events in memory; handy for callers that report per request."""

    def __init__(self, forward: LayoutObserver | None = None) -> None:
        self.events: list[dict[str, Any]] = []
        self._forward = forward

    def __call__(self, level: int, event: str, **fields: Any) -> None:
        self.events.append({"level": logging.getLevelName(level), "event": event, **fields})
        if self._forward is not None:
            self._forward(level, event, **fields)

    def names(self) -> list[str]:
        return [str(item["event"]) for item in self.events]


def get_layout_event_history(limit: int = 200) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    return list(_layout_event_history)[-limit:]


def clear_layout_event_history() -> None:
    _layout_event_history.clear()


def get_layout_health_snapshot(limit: int = 400) -> dict[str, Any]:
    events = get_layout_event_history(limit=limit)
    event_counts = Counter(str(item.get("event", "")) for item in events)
    starts = int(event_counts.get("layout_start", 0))
    completions = int(event_counts.get("layout_complete", 0))
    failures = int(event_counts.get("layout_failed", 0))
    warnings = sum(int(event_counts.get(name, 0)) for name in _WARNING_EVENTS)
    success_rate = round(min(completions, starts) / starts, 4) if starts > 0 else None
    latest_failure = next(
        (item for item in reversed(events) if str(item.get("event", "")) == "layout_failed"),
        None,
    )
    return {
        "total_events_considered": len(events),
        "layout_starts": starts,
        "layout_completions": completions,
        "layout_failures": failures,
        "layout_warnings": warnings,
        "success_rate": success_rate,
        "event_counts": dict(sorted(event_counts.items())),
        "latest_event": events[-1] if events else None,
        "latest_failure": latest_failure,
    }
