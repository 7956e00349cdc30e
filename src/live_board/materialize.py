"""Derive the displayed list and board columns from the canonical collection."""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Tuple

from live_board.models import FilterCriteria, IssueStatus, Record, SortCriteria


@dataclass(frozen=True)
class BoardPartitions:
    open: Tuple[Record, ...] = ()
    in_progress: Tuple[Record, ...] = ()
    closed: Tuple[Record, ...] = ()

    def column(self, status: IssueStatus) -> Tuple[Record, ...]:
        return {
            IssueStatus.OPEN: self.open,
            IssueStatus.IN_PROGRESS: self.in_progress,
            IssueStatus.CLOSED: self.closed,
        }[status]

    def to_dict(self) -> Dict[str, list]:
        return {
            "open": [record.to_dict() for record in self.open],
            "inProgress": [record.to_dict() for record in self.in_progress],
            "closed": [record.to_dict() for record in self.closed],
        }


@dataclass(frozen=True)
class MaterializedView:
    matched: Tuple[Record, ...] = ()
    partitions: BoardPartitions = BoardPartitions()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": [record.to_dict() for record in self.matched],
            "partitions": self.partitions.to_dict(),
        }


def matches(record: Record, criteria: FilterCriteria) -> bool:
    """Return True when every criterion that is set equals the record's field."""

    if criteria.project_id is not None and getattr(record, "project_id", None) != criteria.project_id:
        return False
    if criteria.status is not None and getattr(record, "status", None) != criteria.status:
        return False
    if criteria.priority is not None and getattr(record, "priority", None) != criteria.priority:
        return False
    if criteria.assignee_id is not None and getattr(record, "assignee_id", None) != criteria.assignee_id:
        return False
    if criteria.search:
        title = getattr(record, "title", "") or ""
        if criteria.search.lower() not in title.lower():
            return False
    return True


def _field_value(record: Record, field_name: str) -> Any:
    if field_name == "priority":
        priority = getattr(record, "priority", None)
        return priority.rank if priority is not None else -1
    if field_name == "status":
        status = getattr(record, "status", None)
        return status.rank if status is not None else -1
    if field_name == "title":
        return (getattr(record, "title", "") or "").lower()
    # createdAt: ISO-8601 strings from the server order lexically
    return record.created_at or ""


def compare(a: Record, b: Record, sort: SortCriteria) -> int:
    left = _field_value(a, sort.field)
    right = _field_value(b, sort.field)
    result = (left > right) - (left < right)
    return -result if sort.descending else result


def sort_records(records: Iterable[Record], sort: SortCriteria) -> Tuple[Record, ...]:
    # sorted() is stable, so ties keep collection order between calls
    key = functools.cmp_to_key(lambda a, b: compare(a, b, sort))
    return tuple(sorted(records, key=key))


def partition(records: Iterable[Record], sort: SortCriteria) -> BoardPartitions:
    """Split records into status columns, each sorted like the list view."""

    columns: Dict[IssueStatus, list] = {status: [] for status in IssueStatus}
    for record in records:
        status = getattr(record, "status", None)
        if status in columns:
            columns[status].append(record)

    return BoardPartitions(
        open=sort_records(columns[IssueStatus.OPEN], sort),
        in_progress=sort_records(columns[IssueStatus.IN_PROGRESS], sort),
        closed=sort_records(columns[IssueStatus.CLOSED], sort),
    )


def materialize(
    collection: Mapping[str, Record],
    criteria: FilterCriteria,
    sort: SortCriteria,
) -> MaterializedView:
    matched = sort_records(
        (record for record in collection.values() if matches(record, criteria)),
        sort,
    )
    return MaterializedView(matched=matched, partitions=partition(matched, sort))


def summarize(view: MaterializedView) -> Dict[str, int]:
    """Column counts for a board header."""

    return {
        "total": len(view.matched),
        "open": len(view.partitions.open),
        "inProgress": len(view.partitions.in_progress),
        "closed": len(view.partitions.closed),
    }
