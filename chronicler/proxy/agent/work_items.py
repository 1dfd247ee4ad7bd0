"""Work-item tracker: the agent's scratchpad of self-assigned research steps.

One tracker per agent run; it is discarded with the run.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Literal

WorkItemStatus = Literal["pending", "in_progress", "completed"]
WORK_ITEM_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed")

_STATUS_BOXES = {"completed": "[x]", "in_progress": "[~]", "pending": "[ ]"}


@dataclass
class WorkItem:
    id: str
    description: str
    status: WorkItemStatus = "pending"
    result: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data


class WorkItemTracker:

    def __init__(self) -> None:
        self._items: dict[str, WorkItem] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._items)

    def add(self, description: str) -> WorkItem:
        self._counter += 1
        item = WorkItem(
            id=f"wi_{self._counter}",
            description=description,
            created_at=datetime.now(),
        )
        self._items[item.id] = item
        return item

    def update(self, item_id: str, status: WorkItemStatus, result: str | None = None) -> WorkItem | None:
        """Set status (and optionally result). Returns None for an unknown id."""
        item = self._items.get(item_id)
        if item is None:
            return None
        if status not in WORK_ITEM_STATUSES:
            raise ValueError(f"Invalid work item status: {status!r}")

        item.status = status
        if result is not None:
            item.result = result
        # completed_at tracks the completed state exactly
        item.completed_at = datetime.now() if status == "completed" else None
        return item

    def get(self, item_id: str) -> WorkItem | None:
        return self._items.get(item_id)

    def list(self) -> list[WorkItem]:
        return list(self._items.values())

    def pending(self) -> list[WorkItem]:
        return [i for i in self._items.values() if i.status == "pending"]

    def completed(self) -> list[WorkItem]:
        return [i for i in self._items.values() if i.status == "completed"]

    def all_completed(self) -> bool:
        return bool(self._items) and all(i.status == "completed" for i in self._items.values())

    def summary(self) -> dict[str, int]:
        items = self.list()
        return {
            "total": len(items),
            "pending": sum(1 for i in items if i.status == "pending"),
            "completed": sum(1 for i in items if i.status == "completed"),
        }

    def to_markdown(self) -> str:
        if not self._items:
            return "No work items."

        lines = []
        for item in self._items.values():
            line = f"{_STATUS_BOXES[item.status]} **{item.id}**: {item.description}"
            if item.result:
                line += f"\n    → {item.result}"
            lines.append(line)
        return "\n".join(lines)
