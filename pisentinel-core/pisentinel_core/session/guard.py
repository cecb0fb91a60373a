"""
Transition Guard
================
Tracks which instances are mid-transition (active-instance switch) and a
per-instance generation counter. Work that started under an older
generation must not write its results.
"""

from collections import Counter
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List


class TransitionGuard:
    def __init__(self):
        self._generations: Dict[str, int] = {}
        self._in_transition: Counter = Counter()

    def generation(self, instance_id: str) -> int:
        return self._generations.get(instance_id, 0)

    def bump(self, instance_id: str) -> int:
        """Invalidate all in-flight work for an instance."""
        self._generations[instance_id] = self.generation(instance_id) + 1
        return self._generations[instance_id]

    def is_current(self, instance_id: str, generation: int) -> bool:
        return self.generation(instance_id) == generation

    def in_transition(self, instance_id: str) -> bool:
        return self._in_transition[instance_id] > 0

    def begin(self, instance_ids: Iterable[str]) -> List[str]:
        ids = list(instance_ids)
        for instance_id in ids:
            self._in_transition[instance_id] += 1
            self.bump(instance_id)
        return ids

    def end(self, instance_ids: Iterable[str]) -> None:
        for instance_id in instance_ids:
            self._in_transition[instance_id] -= 1
            if self._in_transition[instance_id] <= 0:
                del self._in_transition[instance_id]

    @contextmanager
    def transition(self, instance_ids: Iterable[str]) -> Iterator[List[str]]:
        ids = self.begin(instance_ids)
        try:
            yield ids
        finally:
            self.end(ids)

    def forget(self, instance_id: str) -> None:
        """Drop transition marks; the generation is kept so stale work stays stale."""
        self._in_transition.pop(instance_id, None)
