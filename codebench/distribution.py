"""Split the cases of a job definition across its coders."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import ConfigurationError
from .shared.keys import VariableKey
from .store import ResponseContext


class CaseOrdering(str, Enum):
    CONTINUOUS = "continuous"
    ALTERNATING = "alternating"


@dataclass(frozen=True)
class DoubleCoding:
    absolute: Optional[int] = None
    percentage: Optional[float] = None

    def count(self, total: int) -> int:
        if self.absolute is not None and self.absolute > 0:
            return min(self.absolute, total)
        if self.percentage is not None and self.percentage > 0:
            return min(math.floor(self.percentage / 100 * total), total)
        return 0


@dataclass
class ItemSummary:
    total: int = 0
    double_coded: int = 0
    single_assigned: int = 0


@dataclass
class Distribution:
    cases: Dict[str, List[ResponseContext]] = field(default_factory=dict)
    items: Dict[VariableKey, ItemSummary] = field(default_factory=dict)

    def case_count(self, coder: str) -> int:
        return len(self.cases.get(coder, []))


def _person_sort(case: ResponseContext) -> tuple:
    return (case.person.login, case.person.code, case.person.group, case.booklet)


def order_cases(cases: Sequence[ResponseContext], ordering: CaseOrdering) -> List[ResponseContext]:
    if ordering is CaseOrdering.ALTERNATING:
        key = lambda case: (case.unit_name, *_person_sort(case), case.variable_id, case.response_id)  # noqa: E731
    else:
        key = lambda case: (case.variable_id, case.unit_name, *_person_sort(case), case.response_id)  # noqa: E731
    return sorted(cases, key=key)


def _split_among_coders(cases: Sequence[ResponseContext], coders: Sequence[str]) -> Dict[str, List[ResponseContext]]:
    """Contiguous near-equal slices, earlier coders take the remainder."""
    base, remainder = divmod(len(cases), len(coders))
    buckets: Dict[str, List[ResponseContext]] = {}
    start = 0
    for index, coder in enumerate(coders):
        size = base + (1 if index < remainder else 0)
        buckets[coder] = list(cases[start : start + size])
        start += size
    return buckets


def distribute_cases(
    cases_by_item: Dict[VariableKey, List[ResponseContext]],
    coders: Sequence[str],
    *,
    double_coding: DoubleCoding = DoubleCoding(),
    ordering: CaseOrdering = CaseOrdering.CONTINUOUS,
    max_cases: Optional[int] = None,
) -> Distribution:
    """Assign cases of every item to coders.

    The first ``double_coding.count(total)`` ordered cases of an item go to
    every coder, the rest is split into contiguous slices. ``max_cases`` caps
    the number of distinct cases handed out across all items.
    """
    if not coders:
        raise ConfigurationError("A job definition needs at least one coder")
    sorted_coders = sorted(coders)
    distribution = Distribution(cases={coder: [] for coder in sorted_coders})
    remaining = max_cases if max_cases and max_cases > 0 else None

    for item in sorted(cases_by_item):
        ordered = order_cases(cases_by_item[item], ordering)
        if remaining is not None:
            ordered = ordered[:remaining]
            remaining -= len(ordered)
        doubled = double_coding.count(len(ordered))
        double_cases, single_cases = ordered[:doubled], ordered[doubled:]
        for coder in sorted_coders:
            distribution.cases[coder].extend(double_cases)
        for coder, bucket in _split_among_coders(single_cases, sorted_coders).items():
            distribution.cases[coder].extend(bucket)
        distribution.items[item] = ItemSummary(
            total=len(ordered),
            double_coded=len(double_cases),
            single_assigned=len(single_cases),
        )
        if remaining == 0:
            break
    return distribution
