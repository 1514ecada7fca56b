"""
ObjectSet - set of typed object references.

Insertion order is irrelevant; membership is by value of the reference.
"""

from typing import Iterable, Iterator, List, Optional, Set

from .models import ObjectRef


class ObjectSet:
    """
    Set of ObjectRef used as the primitive of every selector index.

    Example:
        clusters = ObjectSet()
        clusters.insert(ref)
        if clusters.has(ref):
            ...
    """

    def __init__(self, refs: Optional[Iterable[ObjectRef]] = None):
        self._data: Set[ObjectRef] = set(refs or [])

    def insert(self, ref: ObjectRef) -> None:
        self._data.add(ref)

    def erase(self, ref: ObjectRef) -> None:
        self._data.discard(ref)

    def has(self, ref: ObjectRef) -> bool:
        return ref in self._data

    def len(self) -> int:
        return len(self._data)

    def items(self) -> List[ObjectRef]:
        """Members sorted for deterministic iteration."""
        return sorted(self._data, key=lambda r: (r.kind, r.namespace, r.name, r.api_version))

    def copy(self) -> "ObjectSet":
        return ObjectSet(self._data)

    def difference(self, other: "ObjectSet") -> "ObjectSet":
        return ObjectSet(self._data - other._data)

    def union(self, other: "ObjectSet") -> "ObjectSet":
        return ObjectSet(self._data | other._data)

    def __contains__(self, ref: object) -> bool:
        return ref in self._data

    def __iter__(self) -> Iterator[ObjectRef]:
        return iter(self.items())

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ObjectSet):
            return self._data == other._data
        if isinstance(other, (set, frozenset)):
            return self._data == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"ObjectSet({[str(r) for r in self.items()]})"
