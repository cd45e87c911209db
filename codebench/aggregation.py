"""Multi-coder aggregation: modal values, coder pseudonyms and export shapes.

Every export shape is a :class:`ShapeStrategy`. Streaming shapes turn each
coding into a row as soon as it arrives; accumulating shapes collect codings
per test taker and emit their rows once the cursor is exhausted. The
strategy is picked once per export by :func:`strategy_for`.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterable, Iterator, List, Optional, Sequence, Tuple

from .replay import ReplayUrlOptions
from .shared.keys import PersonKey, VariableKey
from .store import CodingRecord
from .utils import deterministic_choice, format_timestamp

CODING_ISSUE_TEXTS = {
    1: "Code assignment uncertain",
    2: "New code needed",
    3: "Invalid (joke answer)",
    4: "Technical problems",
}

PERSON_COLUMNS = ["Test Person Login", "Test Person Code", "Test Person Group"]
REPLAY_COLUMN = "Replay URL"
MODAL_COLUMN = "Modal Value"
DEVIATION_COLUMN = "Deviation Count"
COMMENTS_COLUMN = "Comments"
COMMENT_SEPARATOR = " | "


class ExportShape(str, Enum):
    DETAILED = "detailed"
    MOST_FREQUENT = "most-frequent"
    ROW_PER_VARIABLE = "new-row-per-variable"
    COLUMN_PER_CODER = "new-column-per-coder"

    @property
    def is_tabular_text(self) -> bool:
        return self is ExportShape.DETAILED


class PseudoMode(str, Enum):
    PSEUDO = "pseudo"
    RANDOM = "random"


@dataclass(frozen=True)
class ModalResult:
    value: Optional[Hashable]
    deviation_count: int


def modal_value(values: Iterable[Optional[Hashable]]) -> ModalResult:
    """Most frequent value and how many values differ from it.

    ``None`` entries are ignored. Ties go to the value that was seen first, so
    the result only depends on the order codings arrive in, which the cursor
    keeps stable. An empty input has no modal value.
    """
    counts: Dict[Hashable, int] = {}
    best: Optional[Hashable] = None
    best_count = 0
    total = 0
    for value in values:
        if value is None:
            continue
        total += 1
        counts[value] = counts.get(value, 0) + 1
        if counts[value] > best_count:
            best, best_count = value, counts[value]
    if total == 0:
        return ModalResult(None, 0)
    return ModalResult(best, total - best_count)


class CoderPseudonymizer:
    """Maps raw coder names to ``K1..Kn`` for one export run."""

    def __init__(self, coders: Iterable[str], mode: PseudoMode = PseudoMode.PSEUDO, seed: Optional[int] = None) -> None:
        names = sorted(set(coders))
        if mode is PseudoMode.RANDOM:
            names = deterministic_choice(names, seed) if seed is not None else random.sample(names, len(names))
        self.mode = mode
        self.mapping = {name: f"K{index + 1}" for index, name in enumerate(names)}

    def __call__(self, coder: str) -> str:
        return self.mapping.get(coder, coder)


@dataclass
class AggregationOptions:
    shape: ExportShape = ExportShape.MOST_FREQUENT
    anonymize: bool = False
    pseudo_mode: PseudoMode = PseudoMode.PSEUDO
    include_comments: bool = False
    include_modal: bool = False
    exclude_auto_coded: bool = True
    comments_instead_of_codes: bool = False
    include_double_coded: bool = False
    replay: Optional[ReplayUrlOptions] = None
    pseudo_seed: Optional[int] = None

    @property
    def include_replay(self) -> bool:
        return self.replay is not None and self.replay.enabled


@dataclass(frozen=True)
class EnrichedCoding:
    record: CodingRecord
    replay_url: str = ""


def display_code(code: Optional[int]) -> object:
    """Missing-value codes -4..-1 are exported as blanks."""
    if code is None or -4 <= code <= -1:
        return ""
    return code


def coding_comment(record: CodingRecord, comments_instead_of_codes: bool = False) -> str:
    if comments_instead_of_codes:
        return record.notes or ""
    if record.coding_issue_option:
        return CODING_ISSUE_TEXTS.get(record.coding_issue_option, str(record.coding_issue_option))
    if record.code == 0:
        return ""
    return record.notes or ""


def _person_cells(person: PersonKey) -> List[object]:
    return [person.login, person.code, person.group]


@dataclass
class _PersonCodings:
    person: PersonKey
    replay_url: str = ""
    codings: Dict[VariableKey, List[Tuple[str, CodingRecord]]] = field(default_factory=dict)

    def add(self, coder: str, coding: EnrichedCoding) -> None:
        if not self.replay_url and coding.replay_url:
            self.replay_url = coding.replay_url
        self.codings.setdefault(coding.record.key, []).append((coder, coding.record))


class ShapeStrategy:
    streaming = False

    def __init__(self, options: AggregationOptions, pseudonymize=None) -> None:
        self.options = options
        self.pseudonymize = pseudonymize or (lambda coder: coder)

    def columns(self) -> List[str]:
        raise NotImplementedError

    def accept(self, coding: EnrichedCoding) -> Optional[List[object]]:
        raise NotImplementedError

    def rows(self) -> Iterator[List[object]]:
        return iter(())

    def _comment_cell(self, entries: Sequence[Tuple[str, CodingRecord]]) -> str:
        parts = [f"{coder}: {record.notes}" for coder, record in entries if record.notes]
        return COMMENT_SEPARATOR.join(parts)


class DetailedStrategy(ShapeStrategy):
    """One row per coding, written while paging."""

    streaming = True

    def columns(self) -> List[str]:
        columns = ["Person", "Coder", "Variable", "Comment", "Coded At", "Code"]
        if self.options.include_replay:
            columns.append(REPLAY_COLUMN)
        return columns

    def accept(self, coding: EnrichedCoding) -> Optional[List[object]]:
        record = coding.record
        if record.code is None:
            return None
        row: List[object] = [
            record.person.code or record.person.login,
            self.pseudonymize(record.coder),
            record.key.label,
            coding_comment(record, self.options.comments_instead_of_codes),
            format_timestamp(record.updated_at),
            display_code(record.code),
        ]
        if self.options.include_replay:
            row.append(coding.replay_url)
        return row


class _AccumulatingStrategy(ShapeStrategy):
    def __init__(self, options: AggregationOptions, pseudonymize=None) -> None:
        super().__init__(options, pseudonymize)
        self.persons: Dict[PersonKey, _PersonCodings] = {}
        self.variables: set[VariableKey] = set()
        self.coders: set[str] = set()

    def accept(self, coding: EnrichedCoding) -> Optional[List[object]]:
        record = coding.record
        if record.code is None:
            return None
        coder = self.pseudonymize(record.coder)
        person = self.persons.get(record.person)
        if person is None:
            person = self.persons[record.person] = _PersonCodings(record.person)
        person.add(coder, coding)
        self.variables.add(record.key)
        self.coders.add(coder)
        return None

    def _base_columns(self) -> List[str]:
        columns = list(PERSON_COLUMNS)
        if self.options.include_replay:
            columns.append(REPLAY_COLUMN)
        return columns

    def _base_cells(self, person: _PersonCodings) -> List[object]:
        cells = _person_cells(person.person)
        if self.options.include_replay:
            cells.append(person.replay_url)
        return cells

    def _sorted_persons(self) -> List[_PersonCodings]:
        return [self.persons[key] for key in sorted(self.persons)]


class MostFrequentStrategy(_AccumulatingStrategy):
    """One row per test taker, one column per variable holding the modal code."""

    def columns(self) -> List[str]:
        return self._base_columns() + [key.label for key in sorted(self.variables)]

    def rows(self) -> Iterator[List[object]]:
        variables = sorted(self.variables)
        for person in self._sorted_persons():
            row = self._base_cells(person)
            for key in variables:
                entries = person.codings.get(key, [])
                if self.options.comments_instead_of_codes:
                    row.append(self._comment_cell(entries))
                else:
                    modal = modal_value(record.code for _, record in entries)
                    row.append(display_code(modal.value))
            yield row


class RowPerVariableStrategy(_AccumulatingStrategy):
    """One row per (test taker, variable), one column per coder."""

    def columns(self) -> List[str]:
        columns = self._base_columns() + ["Variable"] + sorted(self.coders)
        if self.options.include_modal:
            columns += [MODAL_COLUMN, DEVIATION_COLUMN]
        if self.options.include_comments:
            columns.append(COMMENTS_COLUMN)
        return columns

    def rows(self) -> Iterator[List[object]]:
        coders = sorted(self.coders)
        for person in self._sorted_persons():
            for key in sorted(person.codings):
                entries = person.codings[key]
                by_coder: Dict[str, Optional[int]] = {}
                for coder, record in entries:
                    by_coder.setdefault(coder, record.code)
                row = self._base_cells(person) + [key.label]
                row += [display_code(by_coder.get(coder)) for coder in coders]
                if self.options.include_modal:
                    modal = modal_value(record.code for _, record in entries)
                    row += [display_code(modal.value), modal.deviation_count]
                if self.options.include_comments:
                    row.append(self._comment_cell(entries))
                yield row


class ColumnPerCoderStrategy(_AccumulatingStrategy):
    """One row per test taker, one column per (variable, coder) pair."""

    def _layout(self) -> List[Tuple[VariableKey, List[str]]]:
        coders_by_variable: Dict[VariableKey, set[str]] = {}
        for person in self.persons.values():
            for key, entries in person.codings.items():
                coders_by_variable.setdefault(key, set()).update(coder for coder, _ in entries)
        return [(key, sorted(coders_by_variable[key])) for key in sorted(coders_by_variable)]

    def columns(self) -> List[str]:
        columns = self._base_columns()
        for key, coders in self._layout():
            columns += [f"{key.label}_{coder}" for coder in coders]
            if self.options.include_modal:
                columns += [f"{key.label}_{MODAL_COLUMN}", f"{key.label}_{DEVIATION_COLUMN}"]
        if self.options.include_comments:
            columns.append(COMMENTS_COLUMN)
        return columns

    def rows(self) -> Iterator[List[object]]:
        layout = self._layout()
        for person in self._sorted_persons():
            row = self._base_cells(person)
            comments: List[Tuple[str, CodingRecord]] = []
            for key, coders in layout:
                entries = person.codings.get(key, [])
                comments.extend(entries)
                by_coder: Dict[str, Optional[int]] = {}
                for coder, record in entries:
                    by_coder.setdefault(coder, record.code)
                row += [display_code(by_coder.get(coder)) for coder in coders]
                if self.options.include_modal:
                    modal = modal_value(record.code for _, record in entries)
                    row += [display_code(modal.value), modal.deviation_count if entries else ""]
            if self.options.include_comments:
                row.append(self._comment_cell(comments))
            yield row


_STRATEGIES = {
    ExportShape.DETAILED: DetailedStrategy,
    ExportShape.MOST_FREQUENT: MostFrequentStrategy,
    ExportShape.ROW_PER_VARIABLE: RowPerVariableStrategy,
    ExportShape.COLUMN_PER_CODER: ColumnPerCoderStrategy,
}


def strategy_for(
    options: AggregationOptions,
    coder_names: Sequence[str] = (),
) -> ShapeStrategy:
    pseudonymize = None
    if options.anonymize:
        pseudonymize = CoderPseudonymizer(coder_names, options.pseudo_mode, options.pseudo_seed)
    return _STRATEGIES[ExportShape(options.shape)](options, pseudonymize)
