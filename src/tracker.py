"""
Per-category progress table and run-wide error log.

The tracker assumes exclusive access per call. The crawler only touches it
from the event loop thread, so no locking happens here.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple


class CategoryStatus(Enum):
    """Lifecycle of one category."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"      # Stopped by a failed fetch after page 1
    ERROR = "error"

    @property
    def display(self) -> str:
        return STATUS_DISPLAY[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CategoryStatus.COMPLETED, CategoryStatus.PARTIAL, CategoryStatus.ERROR)


STATUS_DISPLAY = {
    CategoryStatus.PENDING: "⚪ - Pending",
    CategoryStatus.RUNNING: "🌕 - Running",
    CategoryStatus.COMPLETED: "✅ - Completed",
    CategoryStatus.PARTIAL: "🟠 - Partial Error",
    CategoryStatus.ERROR: "🔴 - ERROR",
}


@dataclass
class CategoryRow:
    """One line of the status table."""
    index: int
    label: str
    status: CategoryStatus = CategoryStatus.PENDING
    pages: int = 0
    items: int = 0


@dataclass(frozen=True)
class ErrorEntry:
    message: str
    logged_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TrackerSnapshot:
    """Point-in-time copy of the tracker, safe to hand to renderers."""
    rows: Tuple[CategoryRow, ...]
    errors: Tuple[ErrorEntry, ...]
    started_at: float

    @property
    def total_pages(self) -> int:
        return sum(row.pages for row in self.rows)

    @property
    def total_items(self) -> int:
        return sum(row.items for row in self.rows)

    def count(self, status: CategoryStatus) -> int:
        return sum(1 for row in self.rows if row.status is status)

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.started_at

    def row(self, label: str) -> Optional[CategoryRow]:
        for row in self.rows:
            if row.label == label:
                return row
        return None


class UnknownCategoryError(KeyError):
    """Raised when a stats update names a category that was never registered."""


class StatisticsTracker:
    """
    Mutable table of per-category status and counters plus an append-only
    error log.

    Rows are keyed by category label and listed in registration index order.
    """

    def __init__(self):
        self._rows: Dict[str, CategoryRow] = {}
        self._errors: List[ErrorEntry] = []
        self.started_at = time.time()

    def _row(self, label: str) -> CategoryRow:
        try:
            return self._rows[label]
        except KeyError:
            raise UnknownCategoryError(label) from None

    def register_category(self, index: int, category) -> None:
        """Create the tracked row for a category. Must precede any update for it."""
        self._rows[category.label] = CategoryRow(index=index, label=category.label)

    def record_status(self, label: str, status: CategoryStatus) -> None:
        """Last write wins."""
        self._row(label).status = status

    def record_page_increment(self, label: str) -> None:
        self._row(label).pages += 1

    def record_item_increment(self, label: str, count: int) -> None:
        if count < 0:
            raise ValueError(f"item count cannot decrease: {count}")
        self._row(label).items += count

    def record_error(self, message: str) -> None:
        self._errors.append(ErrorEntry(message))

    def status_of(self, label: str) -> CategoryStatus:
        return self._row(label).status

    @property
    def errors(self) -> List[str]:
        """Error messages in the order they were logged."""
        return [entry.message for entry in self._errors]

    def snapshot(self) -> TrackerSnapshot:
        """Copy out every row and the error log."""
        rows = sorted(self._rows.values(), key=lambda row: row.index)
        return TrackerSnapshot(
            rows=tuple(replace(row) for row in rows),
            errors=tuple(self._errors),
            started_at=self.started_at,
        )
