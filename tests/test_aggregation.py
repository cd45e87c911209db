from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.aggregation import (
    AggregationOptions,
    ColumnPerCoderStrategy,
    CoderPseudonymizer,
    EnrichedCoding,
    ExportShape,
    MostFrequentStrategy,
    PseudoMode,
    coding_comment,
    display_code,
    modal_value,
    strategy_for,
)
from codebench.shared.keys import PersonKey
from codebench.store import CodingRecord


def _record(record_id: int, coder: str, variable: str, code, *, login: str = "alice", notes=None, issue=None):
    return CodingRecord(
        id=record_id,
        response_id=record_id,
        coding_job_id=1,
        coder=coder,
        person=PersonKey(login, login[0] + "1", "g"),
        booklet="B1",
        unit_name="UNIT1",
        variable_id=variable,
        code=code,
        score=None,
        notes=notes,
        coding_issue_option=issue,
        updated_at=None,
    )


def test_modal_value_prefers_first_seen_on_ties() -> None:
    assert modal_value([2, 1]).value == 2
    assert modal_value([1, 2, 2]) == modal_value([2, 2, 1])
    result = modal_value([1, 2, 2, None])
    assert result.value == 2
    assert result.deviation_count == 1


def test_modal_value_of_nothing() -> None:
    result = modal_value([None, None])
    assert result.value is None
    assert result.deviation_count == 0


def test_pseudonyms_follow_sorted_names() -> None:
    pseudonymize = CoderPseudonymizer(["coder_b", "coder_a", "coder_b"])

    assert pseudonymize("coder_a") == "K1"
    assert pseudonymize("coder_b") == "K2"
    assert pseudonymize("coder_a") == "K1"
    assert pseudonymize("unknown") == "unknown"


def test_random_pseudonyms_are_reproducible_with_a_seed() -> None:
    coders = [f"coder_{index}" for index in range(8)]
    first = CoderPseudonymizer(coders, PseudoMode.RANDOM, seed=42)
    second = CoderPseudonymizer(reversed(coders), PseudoMode.RANDOM, seed=42)

    assert first.mapping == second.mapping
    assert sorted(first.mapping.values()) == sorted(f"K{index}" for index in range(1, 9))


def test_missing_value_codes_are_blank() -> None:
    assert [display_code(code) for code in (None, -4, -1, 0, 3)] == ["", "", "", 0, 3]


def test_coding_comment_prefers_issue_text() -> None:
    assert coding_comment(_record(1, "a", "V1", 1, issue=2, notes="see")) == "New code needed"
    assert coding_comment(_record(1, "a", "V1", 0, notes="ignored")) == ""
    assert coding_comment(_record(1, "a", "V1", 1, notes="unsure")) == "unsure"
    assert coding_comment(_record(1, "a", "V1", 1, issue=2, notes="see"), comments_instead_of_codes=True) == "see"


def test_strategy_for_picks_shape_and_anonymizes() -> None:
    options = AggregationOptions(shape=ExportShape.MOST_FREQUENT, anonymize=True)
    strategy = strategy_for(options, ["coder_b", "coder_a"])

    assert isinstance(strategy, MostFrequentStrategy)
    strategy.accept(EnrichedCoding(_record(1, "coder_b", "V1", 1)))
    assert strategy.coders == {"K2"}


def test_column_per_coder_adds_modal_per_variable() -> None:
    strategy = ColumnPerCoderStrategy(AggregationOptions(include_modal=True, include_comments=True))
    for record in (
        _record(1, "coder_a", "V1", 1),
        _record(2, "coder_b", "V1", 2, notes="check"),
        _record(3, "coder_a", "V2", 3, login="bob"),
    ):
        strategy.accept(EnrichedCoding(record))

    assert strategy.columns() == [
        "Test Person Login",
        "Test Person Code",
        "Test Person Group",
        "UNIT1_V1_coder_a",
        "UNIT1_V1_coder_b",
        "UNIT1_V1_Modal Value",
        "UNIT1_V1_Deviation Count",
        "UNIT1_V2_coder_a",
        "UNIT1_V2_Modal Value",
        "UNIT1_V2_Deviation Count",
        "Comments",
    ]
    rows = list(strategy.rows())
    assert rows[0] == ["alice", "a1", "g", 1, 2, 1, 1, "", "", "", "coder_b: check"]
    assert rows[1] == ["bob", "b1", "g", "", "", "", "", 3, 3, 0, ""]
