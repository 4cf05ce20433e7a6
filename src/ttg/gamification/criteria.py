"""Structured unlock criteria.

Catalog entries carry criteria as plain dicts:

    {"type": "count", "stat": "task_completed", "op": ">=", "value": 10}
    {"type": "category", "category": "learning", "op": ">=", "value": 20}
    {"type": "all", "predicates": [...]}      # also "any"

``parse`` turns one into a predicate tree; ``evaluate`` runs it against a
flat ``{stat: value}`` mapping. Comparisons go through an operator table.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from ttg.errors import CriteriaEvaluationError

OPERATORS: dict[str, Callable[[int, int], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "==": operator.eq,
    "<=": operator.le,
    "<": operator.lt,
}


def category_stat(category: str) -> str:
    """Counter name holding the number of actions in a category."""
    return f"category:{category.strip().lower()}"


@dataclass(frozen=True)
class CountThreshold:
    stat: str
    op: str
    value: int

    def evaluate(self, stats: Mapping[str, int]) -> bool:
        return OPERATORS[self.op](stats.get(self.stat, 0), self.value)


@dataclass(frozen=True)
class CategoryCount:
    category: str
    op: str
    value: int

    def evaluate(self, stats: Mapping[str, int]) -> bool:
        return OPERATORS[self.op](stats.get(category_stat(self.category), 0), self.value)


@dataclass(frozen=True)
class Composite:
    mode: str  # "all" | "any"
    predicates: tuple[Predicate, ...]

    def evaluate(self, stats: Mapping[str, int]) -> bool:
        results = (p.evaluate(stats) for p in self.predicates)
        return all(results) if self.mode == "all" else any(results)


Predicate = Union[CountThreshold, CategoryCount, Composite]


def _threshold(raw: Mapping[str, Any], definition_id: int | None) -> tuple[str, int]:
    op = raw.get("op", ">=")
    if op not in OPERATORS:
        raise CriteriaEvaluationError(definition_id, f"unknown operator {op!r}")
    value = raw.get("value")
    if isinstance(value, bool) or not isinstance(value, int):
        raise CriteriaEvaluationError(definition_id, f"value must be an integer, got {value!r}")
    return op, value


def parse(raw: Any, definition_id: int | None = None) -> Predicate:
    """Parse a criteria dict. Raises CriteriaEvaluationError when malformed."""
    if not isinstance(raw, Mapping):
        raise CriteriaEvaluationError(definition_id, f"criteria must be an object, got {type(raw).__name__}")

    kind = raw.get("type")
    if kind == "count":
        stat = raw.get("stat")
        if not isinstance(stat, str) or not stat:
            raise CriteriaEvaluationError(definition_id, "count criteria needs a 'stat'")
        op, value = _threshold(raw, definition_id)
        return CountThreshold(stat, op, value)

    if kind == "category":
        category = raw.get("category")
        if not isinstance(category, str) or not category:
            raise CriteriaEvaluationError(definition_id, "category criteria needs a 'category'")
        op, value = _threshold(raw, definition_id)
        return CategoryCount(category, op, value)

    if kind in ("all", "any"):
        children = raw.get("predicates")
        if not isinstance(children, list) or not children:
            raise CriteriaEvaluationError(definition_id, f"'{kind}' criteria needs a non-empty 'predicates' list")
        return Composite(kind, tuple(parse(child, definition_id) for child in children))

    raise CriteriaEvaluationError(definition_id, f"unknown criteria type {kind!r}")

