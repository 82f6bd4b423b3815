"""
GroupingEngine -- Shuffle stage.

Contract:
    Map workers call ``emit(group_key, fact)`` concurrently.  Once every map
    unit has finished, the coordinator calls ``partition()``, which seals
    the engine and returns one FactGroup per distinct key.  Keys compare by
    exact, case-sensitive string equality.  No ordering is promised across
    or within groups.

Invariants enforced:
    - Every emitted fact lands in exactly one group.
    - Nothing may be emitted after ``partition()`` (shuffle barrier).
"""

from __future__ import annotations

import threading
from typing import Iterable

from digest_kernel.exceptions import GroupingSealedError

from digest_batch.domain.types import Fact, FactGroup


class GroupingEngine:
    """Thread-safe keyed accumulator of facts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: dict[str, list[Fact]] = {}
        self._fact_count = 0
        self._sealed = False

    def emit(self, group_key: str, fact: Fact) -> None:
        """Add one fact under its key.

        Raises:
            ValueError: If ``group_key`` is not the fact's own key.
            GroupingSealedError: If called after ``partition()``.
        """
        if fact.group_key != group_key:
            raise ValueError(
                f"Fact {fact.record_id} carries key {fact.group_key!r}, "
                f"emitted under {group_key!r}"
            )
        with self._lock:
            if self._sealed:
                raise GroupingSealedError(group_key)
            self._groups.setdefault(group_key, []).append(fact)
            self._fact_count += 1

    def emit_many(self, facts: Iterable[Fact]) -> None:
        for fact in facts:
            self.emit(fact.group_key, fact)

    def partition(self) -> tuple[FactGroup, ...]:
        """Seal the engine and return the groups.  Empty input -> ()."""
        with self._lock:
            self._sealed = True
            return tuple(
                FactGroup(group_key=key, facts=tuple(facts))
                for key, facts in self._groups.items()
            )

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def fact_count(self) -> int:
        return self._fact_count

    @property
    def group_count(self) -> int:
        return len(self._groups)
