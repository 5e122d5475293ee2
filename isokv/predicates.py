"""Keys and range predicates."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Hashable

# (table, primary key)
Key = tuple[str, Hashable]


@dataclass(frozen=True)
class Predicate:
    """
    Shape of a range read over one table.

    A row matches when it belongs to ``table``, every ``where`` column equals
    the given value, and ``condition`` (if any) returns True for the row
    value. Equality filters only apply to mapping values.

    Usage:
        Predicate.on("employee", birthday="2000-01-01")
        Predicate.on("items", lambda row: row["quantity"] > 0, id=1)
    """

    table: str
    where: tuple[tuple[str, Any], ...] = ()
    condition: Callable[[Any], bool] | None = None

    @classmethod
    def on(
        cls,
        table: str,
        condition: Callable[[Any], bool] | None = None,
        **equals: Any,
    ) -> "Predicate":
        return cls(table=table, where=tuple(sorted(equals.items())), condition=condition)

    def matches(self, key: Key, value: Any) -> bool:
        """Return True if the row ``key`` holding ``value`` is in range."""
        if key[0] != self.table:
            return False
        if self.where:
            if not isinstance(value, Mapping):
                return False
            for column, expected in self.where:
                if column not in value or value[column] != expected:
                    return False
        if self.condition is not None:
            return bool(self.condition(value))
        return True

    def matches_any(self, key: Key, images: tuple[Any, ...]) -> bool:
        """Return True if any row image of ``key`` is in range."""
        return any(self.matches(key, image) for image in images)

    def __str__(self) -> str:
        filters = " and ".join(f"{col} = {val!r}" for col, val in self.where)
        if self.condition is not None:
            name = getattr(self.condition, "__name__", "condition")
            filters = f"{filters} and {name}(row)" if filters else f"{name}(row)"
        return f"{self.table} where {filters}" if filters else self.table
