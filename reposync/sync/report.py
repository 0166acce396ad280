"""Run reports — per-target, per-item statuses for display.

Purely derived from the results the engines return; holds no authority.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from reposync.models.change_set import ItemResult, ItemStatus


@dataclass
class RunReport:
    """All results of one apply or revert run."""

    session_id: str
    action: str  # apply | revert
    targets: list[str] = field(default_factory=list)
    items: list[str] = field(default_factory=list)
    results: list[ItemResult] = field(default_factory=list)
    aborted: bool = False

    def add(self, result: ItemResult) -> ItemResult:
        if result.target not in self.targets:
            self.targets.append(result.target)
        if result.item not in self.items:
            self.items.append(result.item)
        self.results.append(result)
        return result

    def get(self, target: str, item: str) -> ItemResult | None:
        for result in self.results:
            if result.target == target and result.item == item:
                return result
        return None

    def status_for(self, target: str, item: str) -> ItemStatus:
        """Status of a pair; pairs never attempted count as skipped."""
        result = self.get(target, item)
        return result.status if result else ItemStatus.SKIPPED

    def by_target(self) -> dict[str, list[ItemResult]]:
        """Every (target, item) pair, filling unattempted ones as skipped."""
        grouped: dict[str, list[ItemResult]] = {}
        for target in self.targets:
            rows = []
            for item in self.items:
                result = self.get(target, item)
                if result is None:
                    if self.action == "revert":
                        continue
                    reason = "Aborted" if self.aborted else ""
                    result = ItemResult(target, item, ItemStatus.SKIPPED, reason=reason)
                rows.append(result)
            grouped[target] = rows
        return grouped

    def counts(self) -> Counter:
        return Counter(
            result.status for rows in self.by_target().values() for result in rows
        )

    @property
    def has_failures(self) -> bool:
        return any(r.status == ItemStatus.FAILED for r in self.results)

    def summary(self) -> str:
        counts = self.counts()
        if not counts:
            return f"Session {self.session_id} ({self.action}): no items processed"
        parts = ", ".join(
            f"{counts[status]} {status.value}" for status in ItemStatus if counts[status]
        )
        return f"Session {self.session_id} ({self.action}): {parts}"
