"""Client-side mirror of a remote collection."""

from __future__ import annotations

import time
from collections.abc import Callable, Collection, Iterable

from .base import ChangeEvent, ChangeKind, Record
from .reconcile import merge, sort_records, supersedes


class LocalMirror:
    """Owns the mirrored records and the bookkeeping around them.

    Records are only changed through :meth:`merge`, :meth:`apply`,
    :meth:`remove` and :meth:`prune_missing`. Each mutation bumps a sequence
    number stored per id, so a full fetch can tell which records the change
    feed delivered after the fetch began.
    """

    def __init__(
        self,
        *,
        tombstone_ttl: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tombstone_ttl = max(0.0, float(tombstone_ttl))
        self._clock = clock
        self._records: tuple[Record, ...] = ()
        self._index: dict[str, Record] = {}
        self._tombstones: dict[str, float] = {}
        self._touched: dict[str, int] = {}
        self._sequence = 0

    @property
    def records(self) -> tuple[Record, ...]:
        return self._records

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def tombstone_count(self) -> int:
        return len(self._tombstones)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._index

    def get(self, record_id: str) -> Record | None:
        return self._index.get(record_id)

    def is_tombstoned(self, record_id: str) -> bool:
        expires_at = self._tombstones.get(record_id)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            del self._tombstones[record_id]
            return False
        return True

    def merge(self, incoming: Iterable[Record]) -> list[Record]:
        """Merge ``incoming`` and return the records that were accepted."""

        self._expire_tombstones()
        pending = dict(self._index)
        accepted: list[Record] = []
        for record in incoming:
            if self.is_tombstoned(record.id):
                continue
            if supersedes(record, pending.get(record.id)):
                pending[record.id] = record
                accepted.append(record)
        if accepted:
            self._replace(merge(self._records, accepted))
            self._touch(record.id for record in accepted)
        return accepted

    def apply(self, event: ChangeEvent) -> bool:
        """Apply a change event; returns whether the mirror changed."""

        if event.kind is ChangeKind.DELETE:
            return self.remove(event.id)
        return bool(self.merge([event.record]))

    def remove(self, record_id: str, *, tombstone: bool = True) -> bool:
        # Unknown ids are tombstoned too: a delete can overtake its insert.
        self._expire_tombstones()
        if tombstone and self._tombstone_ttl > 0:
            self._tombstones[record_id] = self._clock() + self._tombstone_ttl
        if record_id not in self._index:
            return False
        self._replace(record for record in self._records if record.id != record_id)
        self._touched.pop(record_id, None)
        self._sequence += 1
        return True

    def prune_missing(self, present_ids: Collection[str], since: int) -> list[str]:
        """Drop ids absent from a full snapshot unless touched after ``since``."""

        self._expire_tombstones()
        stale = [
            record.id
            for record in self._records
            if record.id not in present_ids and self._touched.get(record.id, 0) <= since
        ]
        if stale:
            doomed = set(stale)
            self._replace(record for record in self._records if record.id not in doomed)
            for record_id in stale:
                self._touched.pop(record_id, None)
            self._sequence += 1
        return stale

    def clear(self) -> None:
        self._records = ()
        self._index.clear()
        self._tombstones.clear()
        self._touched.clear()

    def _replace(self, records: Iterable[Record]) -> None:
        ordered = sort_records(records)
        self._records = tuple(ordered)
        self._index = {record.id: record for record in ordered}

    def _expire_tombstones(self) -> None:
        if not self._tombstones:
            return
        now = self._clock()
        expired = [record_id for record_id, expires_at in self._tombstones.items() if now >= expires_at]
        for record_id in expired:
            del self._tombstones[record_id]

    def _touch(self, record_ids: Iterable[str]) -> None:
        self._sequence += 1
        for record_id in record_ids:
            self._touched[record_id] = self._sequence
