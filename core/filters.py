"""
Filter compilation for funnel analysis.

Turns the declarative filters stored on a funnel definition into a composite
predicate. Filters that reference a field outside the allow-list, an unknown
operator, or a value that does not fit the operator are dropped rather than
rejected, so the analysis still runs on whatever remains.

The compiled predicate renders either as a parameterised ClickHouse fragment
(values always go through query parameters) or as a Polars expression for the
in-memory event store.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import polars as pl

from models import ALLOWED_FIELDS, ALLOWED_OPERATORS, Filter, FilterOperator

logger = logging.getLogger(__name__)


def is_allowed_field(name: str) -> bool:
    return name in ALLOWED_FIELDS


def is_allowed_operator(name: str) -> bool:
    return name in ALLOWED_OPERATORS


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally"""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class FilterCondition:
    """A single validated filter with its value normalised for the operator"""

    field: str
    operator: FilterOperator
    value: object  # str for scalar operators, tuple[str, ...] for in/not_in

    def to_sql(self, params: dict, key: str) -> str:
        if self.operator == FilterOperator.EQUALS:
            params[key] = self.value
            return f"{self.field} = {{{key}:String}}"
        if self.operator == FilterOperator.NOT_EQUALS:
            params[key] = self.value
            return f"{self.field} != {{{key}:String}}"
        if self.operator == FilterOperator.CONTAINS:
            params[key] = f"%{escape_like(self.value)}%"
            return f"{self.field} LIKE {{{key}:String}}"
        params[key] = list(self.value)
        if self.operator == FilterOperator.IN:
            return f"{self.field} IN {{{key}:Array(String)}}"
        return f"{self.field} NOT IN {{{key}:Array(String)}}"

    def to_polars(self) -> pl.Expr:
        column = pl.col(self.field).cast(pl.Utf8)
        if self.operator == FilterOperator.EQUALS:
            return column == self.value
        if self.operator == FilterOperator.NOT_EQUALS:
            return column != self.value
        if self.operator == FilterOperator.CONTAINS:
            return column.str.contains(self.value, literal=True)
        if self.operator == FilterOperator.IN:
            return column.is_in(list(self.value))
        return ~column.is_in(list(self.value))


@dataclass(frozen=True)
class CompiledFilter:
    """AND-composite of valid filter conditions"""

    conditions: tuple[FilterCondition, ...] = ()
    dropped: tuple[Filter, ...] = field(default=(), compare=False)

    @property
    def is_tautology(self) -> bool:
        return not self.conditions

    @property
    def fields(self) -> set[str]:
        return {c.field for c in self.conditions}

    def to_sql(self, params: dict, prefix: str = "f") -> str:
        """
        Render as a SQL fragment to append to a WHERE clause.

        Returns "" for an empty filter set, otherwise " AND cond AND cond".
        Parameter values are written into params under prefix-scoped keys.
        """
        if not self.conditions:
            return ""
        parts = [
            condition.to_sql(params, f"{prefix}_{i}_{condition.field}")
            for i, condition in enumerate(self.conditions)
        ]
        return " AND " + " AND ".join(parts)

    def to_polars(self) -> pl.Expr:
        expr = pl.lit(True)
        for condition in self.conditions:
            expr = expr & condition.to_polars()
        return expr


def _normalise_value(operator: FilterOperator, value) -> Optional[object]:
    if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
        if isinstance(value, str):
            values = (value,) if value else ()
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = tuple(str(v) for v in value)
        else:
            return None
        return values or None

    if isinstance(value, str) and value:
        return value
    return None


def compile_filter(filter_: Filter) -> Optional[FilterCondition]:
    """Validate one filter; returns None when it must be dropped"""
    if not is_allowed_field(filter_.field) or not is_allowed_operator(filter_.operator):
        return None
    operator = FilterOperator(filter_.operator)
    value = _normalise_value(operator, filter_.value)
    if value is None:
        return None
    return FilterCondition(field=filter_.field, operator=operator, value=value)


def compile_filters(filters: Iterable[Filter]) -> CompiledFilter:
    """Compile filters into an AND-composite predicate, dropping invalid ones"""
    conditions = []
    dropped = []
    for filter_ in filters or ():
        condition = compile_filter(filter_)
        if condition is None:
            logger.debug(
                f"Dropping filter field={filter_.field!r} operator={filter_.operator!r}"
            )
            dropped.append(filter_)
            continue
        conditions.append(condition)

    if dropped:
        logger.info(f"Dropped {len(dropped)} invalid filter(s), {len(conditions)} remain")
    return CompiledFilter(conditions=tuple(conditions), dropped=tuple(dropped))
