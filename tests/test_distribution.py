from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.distribution import CaseOrdering, DoubleCoding, distribute_cases, order_cases
from codebench.errors import ConfigurationError
from codebench.shared.keys import PersonKey, VariableKey
from codebench.shared.models import CODING_INCOMPLETE, LatestCoding
from codebench.store import ResponseContext


def _case(response_id: int, login: str, unit: str = "U1", variable: str = "V1") -> ResponseContext:
    return ResponseContext(
        response_id=response_id,
        unit_name=unit,
        unit_alias=None,
        variable_id=variable,
        value="x",
        person=PersonKey(login, "c", "g"),
        booklet="B1",
        latest=LatestCoding(CODING_INCOMPLETE, None, None),
    )


def test_double_coding_count() -> None:
    assert DoubleCoding().count(10) == 0
    assert DoubleCoding(absolute=3).count(10) == 3
    assert DoubleCoding(absolute=30).count(10) == 10
    assert DoubleCoding(percentage=25).count(10) == 2
    assert DoubleCoding(absolute=1, percentage=90).count(10) == 1


def test_cases_are_split_in_contiguous_slices() -> None:
    key = VariableKey("U1", "V1")
    cases = [_case(index, f"p{index}") for index in range(5)]

    distribution = distribute_cases({key: cases}, ["coder_b", "coder_a"])

    assert [case.response_id for case in distribution.cases["coder_a"]] == [0, 1, 2]
    assert [case.response_id for case in distribution.cases["coder_b"]] == [3, 4]
    assert distribution.items[key].single_assigned == 5


def test_double_coded_cases_go_to_every_coder() -> None:
    key = VariableKey("U1", "V1")
    cases = [_case(index, f"p{index}") for index in range(4)]

    distribution = distribute_cases({key: cases}, ["a", "b"], double_coding=DoubleCoding(absolute=2))

    assert [case.response_id for case in distribution.cases["a"]] == [0, 1, 2]
    assert [case.response_id for case in distribution.cases["b"]] == [0, 1, 3]
    assert distribution.items[key].double_coded == 2


def test_max_cases_caps_across_items() -> None:
    first, second = VariableKey("U1", "V1"), VariableKey("U1", "V2")
    cases = {
        first: [_case(1, "p1"), _case(2, "p2")],
        second: [_case(3, "p1", variable="V2"), _case(4, "p2", variable="V2")],
    }

    distribution = distribute_cases(cases, ["a"], max_cases=3)

    assert distribution.items[first].total == 2
    assert distribution.items[second].total == 1
    assert distribution.case_count("a") == 3


def test_alternating_order_groups_by_person() -> None:
    cases = [_case(1, "p2", variable="V1"), _case(2, "p1", variable="V2"), _case(3, "p1", variable="V1")]

    continuous = [case.response_id for case in order_cases(cases, CaseOrdering.CONTINUOUS)]
    alternating = [case.response_id for case in order_cases(cases, CaseOrdering.ALTERNATING)]

    assert continuous == [3, 1, 2]
    assert alternating == [3, 2, 1]


def test_a_coder_is_required() -> None:
    with pytest.raises(ConfigurationError):
        distribute_cases({}, [])
