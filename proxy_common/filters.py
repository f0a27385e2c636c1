"""
Generic filter, sort and pagination over in-memory collections.

Aggregated read-models are assembled in memory from several sources, so no
query planner exists for them. Every repository that returns such a
collection runs it through filter_and_sort() as its last step.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 100


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Condition:
    """Single-field equality clause."""

    field: str
    value: Any

    def matches(self, item: Any) -> bool:
        return getattr(item, self.field, None) == self.value


@dataclass
class FilterModel(Generic[T]):
    """
    Filter descriptor: AND-ed equality conditions, one optional sort field and
    1-indexed pagination.

    Attributes:
        page: 1-indexed page number (values < 1 fall back to 1)
        limit: Page size (values < 1 fall back to 100)
        skip_pagination: Return the whole filtered set instead of one page
    """

    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    skip_pagination: bool = False
    conditions: list[Condition] = field(default_factory=list)
    sort_by: tuple[str, SortDirection] | None = None

    def __post_init__(self) -> None:
        if not self.page or self.page < 1:
            self.page = DEFAULT_PAGE
        if not self.limit or self.limit < 1:
            self.limit = DEFAULT_LIMIT

    def add_condition(self, field_name: str, value: Any) -> "FilterModel[T]":
        self.conditions.append(Condition(field_name, value))
        return self

    def get_condition(self, field_name: str) -> Condition | None:
        """
        Get the condition on a field.

        Returns:
            The condition if exactly one exists for the field, None otherwise
        """
        found = [c for c in self.conditions if c.field == field_name]
        if len(found) != 1:
            return None
        return found[0]

    def set_sort(
        self, field_name: str, direction: SortDirection = SortDirection.ASC
    ) -> "FilterModel[T]":
        self.sort_by = (field_name, SortDirection(direction))
        return self


def filter_and_sort(
    items: Iterable[T],
    filter_model: FilterModel[T] | None = None,
    fields: Sequence[str] | None = None,
) -> tuple[list[T], int]:
    """
    Apply filter -> sort -> paginate, in that fixed order.

    Args:
        items: Collection to query
        filter_model: Filter descriptor (None means page 1 of 100, no
                      conditions)
        fields: If given, only conditions on these fields are evaluated
                (the others were already applied upstream)

    Returns:
        Tuple of (page of items, number of items after filtering and before
        pagination)
    """
    filter_model = filter_model or FilterModel()
    data = list(items)

    for condition in filter_model.conditions:
        if fields is not None and condition.field not in fields:
            continue
        data = [item for item in data if condition.matches(item)]

    if filter_model.sort_by:
        name, direction = filter_model.sort_by
        # sorted() is stable, including with reverse=True
        data = sorted(
            data,
            key=lambda item: _sort_key(getattr(item, name, None)),
            reverse=direction == SortDirection.DESC,
        )

    total = len(data)
    if filter_model.skip_pagination:
        return data, total

    start = (filter_model.page - 1) * filter_model.limit
    return data[start : start + filter_model.limit], total


def _sort_key(value: Any) -> tuple[bool, Any]:
    # Missing values sort after present ones in ascending order
    if value is None:
        return (True, 0)
    if isinstance(value, Enum):
        return (False, value.value)
    return (False, value)
