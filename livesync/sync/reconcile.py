"""Recency-based reconciliation of records into a local mirror.

Everything here is pure: inputs are never mutated and results depend only on
record ids and ``updated_at`` values, not on the order events arrived in.
"""

from __future__ import annotations

from collections.abc import Iterable

from .base import ChangeEvent, ChangeKind, Record


def _sort_key(record: Record) -> tuple:
    return (record.updated_at, record.id)


def sort_records(records: Iterable[Record]) -> list[Record]:
    """Newest first; equal timestamps fall back to id for a stable order."""

    return sorted(records, key=_sort_key, reverse=True)


def supersedes(incoming: Record, current: Record | None) -> bool:
    """True when ``incoming`` should replace ``current`` (ties favor incoming)."""

    return current is None or incoming.updated_at >= current.updated_at


def merge(local: Iterable[Record], incoming: Iterable[Record]) -> list[Record]:
    """Combine ``incoming`` into ``local`` keeping the newest copy of each id."""

    by_id: dict[str, Record] = {record.id: record for record in local}
    for record in incoming:
        if supersedes(record, by_id.get(record.id)):
            by_id[record.id] = record
    return sort_records(by_id.values())


def apply_event(local: Iterable[Record], event: ChangeEvent) -> list[Record]:
    """Apply one change; deletes are unconditional and terminal."""

    if event.kind is ChangeKind.DELETE:
        return sort_records(record for record in local if record.id != event.id)
    return merge(local, [event.record])
