"""Best-effort daily spend accounting.

All counters here are advisory. The in-memory one resets on restart and none of
them are synchronized across instances; they feed the optional daily hard cap
and must not be relied on for billing.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def estimate_cost(
    usage: Optional[Mapping[str, Any]],
    input_per_1k: float,
    output_per_1k: float,
) -> float:
    """USD estimate from an OpenAI-style ``usage`` block (0.0 when absent)."""
    if not usage:
        return 0.0
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    return prompt / 1000.0 * input_per_1k + completion / 1000.0 * output_per_1k


class SpendCounter(Protocol):
    def total(self, day: Optional[str] = None) -> float:
        ...

    def add(self, amount: float) -> float:
        ...


class NullSpendCounter:
    """Records nothing."""

    def total(self, day: Optional[str] = None) -> float:
        return 0.0

    def add(self, amount: float) -> float:
        return 0.0


class InMemorySpendCounter:
    """Per-UTC-day running totals held in process memory (thread-safe)."""

    def __init__(self) -> None:
        self._totals: Dict[str, float] = {}
        self._lock = threading.RLock()

    def total(self, day: Optional[str] = None) -> float:
        with self._lock:
            return self._totals.get(day or _today(), 0.0)

    def add(self, amount: float) -> float:
        day = _today()
        with self._lock:
            self._totals[day] = self._totals.get(day, 0.0) + max(0.0, float(amount))
            return self._totals[day]


# -----------------------------
# File-backed counter
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class JsonFileSpendCounter:
    """Same contract as :class:`InMemorySpendCounter`, persisted to a JSON file.

    Layout: ``{"2024-05-01": 0.0123, ...}``. Only days within ``keep_days``
    entries are retained.
    """

    def __init__(self, path: str, *, keep_days: int = 31) -> None:
        self.path = Path(path)
        self.keep_days = keep_days
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, float]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("spend file %s unreadable, starting fresh: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): float(v) for k, v in data.items() if isinstance(v, (int, float))}

    def total(self, day: Optional[str] = None) -> float:
        with self._lock:
            return self._load().get(day or _today(), 0.0)

    def add(self, amount: float) -> float:
        day = _today()
        with self._lock:
            totals = self._load()
            totals[day] = totals.get(day, 0.0) + max(0.0, float(amount))
            kept = dict(sorted(totals.items())[-self.keep_days:])
            _atomic_write_text(self.path, json.dumps(kept, indent=2))
            return totals[day]


def create_counter(store: str, path: str) -> SpendCounter:
    """Pick a counter for the ``spend.store`` setting (memory | file | none)."""
    if store == "file":
        return JsonFileSpendCounter(path)
    if store == "none":
        return NullSpendCounter()
    if store != "memory":
        logger.warning("unknown spend store %r; using in-memory counter", store)
    return InMemorySpendCounter()
