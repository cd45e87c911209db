"""Coverage and conflict accounting for job definitions.

The accountant answers two questions for a workspace: which variables still
need manual coding and how much of that work the job definitions already
claim. All maps are keyed by :class:`VariableKey` with upper-cased unit names
so unit names compare case-insensitively.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .cache import VariablePageCache
from .shared.keys import VariableKey, variable_key
from .shared.models import APPROVED, DRAFT, PENDING_REVIEW, JobDefinition
from .store import JobDefinitionStore, ResponseStore

log = logging.getLogger(__name__)

MEDIA_PREFIXES = ("image", "text", "audio", "frame", "video")
DERIVED_SUFFIX = "_0"


def is_denylisted(variable_id: str) -> bool:
    """Media and derived helper variables never need manual coding."""
    return variable_id.lower().startswith(MEDIA_PREFIXES) or variable_id.endswith(DERIVED_SUFFIX)


@dataclass(frozen=True)
class CaseCount:
    key: VariableKey
    total: int
    claimed: int

    @property
    def available(self) -> int:
        return self.total - self.claimed


@dataclass(frozen=True)
class Conflict:
    key: VariableKey
    definitions: Tuple[Tuple[int, str], ...]


@dataclass(frozen=True)
class CoverageReport:
    total_variables: int
    covered_variables: int
    covered_by_status: Dict[str, List[VariableKey]]
    conflicted: List[Conflict]
    missing: List[VariableKey]
    partially_covered: int
    fully_covered: int
    coverage_percentage: float
    case_counts: List[CaseCount]

    @property
    def covered_by_draft(self) -> int:
        return len(self.covered_by_status[DRAFT])

    @property
    def covered_by_pending_review(self) -> int:
        return len(self.covered_by_status[PENDING_REVIEW])

    @property
    def covered_by_approved(self) -> int:
        return len(self.covered_by_status[APPROVED])

    def to_frame(self) -> pd.DataFrame:
        """One row per variable with case counts and coverage classification."""
        conflicted = {conflict.key for conflict in self.conflicted}
        missing = set(self.missing)
        records = []
        for count in self.case_counts:
            if count.key in missing:
                state = "missing"
            elif count.claimed >= count.total:
                state = "full"
            elif count.claimed > 0:
                state = "partial"
            else:
                state = "covered"
            records.append(
                {
                    "unit_name": count.key.unit_name,
                    "variable_id": count.key.variable_id,
                    "total": count.total,
                    "claimed": count.claimed,
                    "available": count.available,
                    "state": state,
                    "conflicted": count.key in conflicted,
                }
            )
        columns = ["unit_name", "variable_id", "total", "claimed", "available", "state", "conflicted"]
        return pd.DataFrame.from_records(records, columns=columns)


@dataclass(frozen=True)
class CaseCoverage:
    total_cases: int
    cases_in_jobs: int
    unique_cases_in_jobs: int
    double_coded_cases: int
    unassigned_cases: int
    coverage_percentage: float


@dataclass(frozen=True)
class ApprovalCheck:
    ok: bool
    unavailable: List[str] = field(default_factory=list)


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class CoverageAccountant:
    def __init__(
        self,
        responses: ResponseStore,
        definitions: JobDefinitionStore,
        cache_factory: Optional[Callable[[int], VariablePageCache]] = None,
    ) -> None:
        self.responses = responses
        self.definitions = definitions
        self._cache_factory = cache_factory or (
            lambda workspace_id: VariablePageCache.for_export(workspace_id, responses)
        )

    # ------------------------------------------------------------------ #

    def variables_needing_coding(
        self,
        workspace_id: int,
        cache: Optional[VariablePageCache] = None,
    ) -> Dict[VariableKey, int]:
        """Count responses per variable that still wait for manual coding."""
        cache = cache or self._cache_factory(workspace_id)
        needed: Dict[VariableKey, int] = defaultdict(int)
        for key, count in self.responses.count_needing_coding(workspace_id).items():
            if self.needs_manual_coding(key, cache):
                needed[key.normalized()] += count
        return dict(needed)

    @staticmethod
    def is_manual_variable(key: VariableKey, cache: VariablePageCache) -> bool:
        """False for variables the scheme derives or the denylist marks as media."""
        return not (cache.is_excluded(key) or is_denylisted(key.variable_id))

    def needs_manual_coding(self, key: VariableKey, cache: VariablePageCache) -> bool:
        if not self.is_manual_variable(key, cache):
            return False
        if key.variable_id not in cache.declared_variables(key.unit_name):
            log.debug("variable not declared by unit", extra={"variable": key.label})
            return False
        return True

    def claimed_cases(self, workspace_id: int) -> Dict[VariableKey, int]:
        claimed: Dict[VariableKey, int] = defaultdict(int)
        for key, count in self.responses.claimed_case_counts(workspace_id).items():
            claimed[key.normalized()] += count
        return dict(claimed)

    def definition_variables(self, definition: JobDefinition) -> List[VariableKey]:
        """Direct and bundle-expanded variables of a definition, first occurrence kept."""
        keys: List[VariableKey] = []
        seen = set()
        raw: List[object] = list(definition.assigned_variables or [])
        for bundle in self.definitions.bundles(definition.workspace_id, definition.assigned_bundles or []):
            raw.extend(bundle.variables or [])
        for item in raw:
            key = variable_key(item).normalized()
            if key not in seen:
                seen.add(key)
                keys.append(key)
        return keys

    # ------------------------------------------------------------------ #

    def coverage_overview(self, workspace_id: int) -> CoverageReport:
        needed = self.variables_needing_coding(workspace_id)
        claimed = self.claimed_cases(workspace_id)

        covering: Dict[VariableKey, List[Tuple[int, str]]] = defaultdict(list)
        for definition in self.definitions.list(workspace_id):
            for key in self.definition_variables(definition):
                if key in needed:
                    covering[key].append((int(definition.id), definition.status))

        by_status: Dict[str, List[VariableKey]] = {DRAFT: [], PENDING_REVIEW: [], APPROVED: []}
        conflicted: List[Conflict] = []
        missing: List[VariableKey] = []
        case_counts: List[CaseCount] = []
        partially = fully = 0

        for key in sorted(needed):
            total = needed[key]
            claimed_count = min(claimed.get(key, 0), total)
            case_counts.append(CaseCount(key, total, claimed_count))
            defs = covering.get(key)
            if not defs:
                missing.append(key)
                continue
            for status in {status for _, status in defs}:
                by_status.setdefault(status, []).append(key)
            if claimed_count >= total:
                fully += 1
                if len(defs) >= 2:
                    conflicted.append(Conflict(key, tuple(defs)))
            elif claimed_count > 0:
                partially += 1

        covered = len(needed) - len(missing)
        return CoverageReport(
            total_variables=len(needed),
            covered_variables=covered,
            covered_by_status=by_status,
            conflicted=conflicted,
            missing=missing,
            partially_covered=partially,
            fully_covered=fully,
            coverage_percentage=_percentage(covered, len(needed)),
            case_counts=case_counts,
        )

    def case_coverage(self, workspace_id: int) -> CaseCoverage:
        needed = self.variables_needing_coding(workspace_id)
        claimed = self.claimed_cases(workspace_id)
        total_cases = sum(needed.values())
        unique = sum(min(claimed.get(key, 0), total) for key, total in needed.items())
        in_jobs = self.responses.count_coding_units(workspace_id)
        return CaseCoverage(
            total_cases=total_cases,
            cases_in_jobs=in_jobs,
            unique_cases_in_jobs=unique,
            double_coded_cases=max(in_jobs - sum(claimed.values()), 0),
            unassigned_cases=total_cases - unique,
            coverage_percentage=_percentage(unique, total_cases),
        )

    # ------------------------------------------------------------------ #

    def unavailable_variables(self, workspace_id: int, keys: Iterable[VariableKey]) -> List[str]:
        """Labels of variables that no longer need coding or have no unclaimed case."""
        needed = self.variables_needing_coding(workspace_id)
        claimed = self.claimed_cases(workspace_id)
        unavailable = []
        for key in keys:
            key = key.normalized()
            total = needed.get(key)
            if total is None or total - claimed.get(key, 0) <= 0:
                unavailable.append(key.label)
        return unavailable

    def check_approval(self, definition: JobDefinition) -> ApprovalCheck:
        unavailable = self.unavailable_variables(
            definition.workspace_id, self.definition_variables(definition)
        )
        return ApprovalCheck(ok=not unavailable, unavailable=unavailable)

    def available_cases(self, workspace_id: int, keys: Sequence[VariableKey]) -> Dict[VariableKey, int]:
        needed = self.variables_needing_coding(workspace_id)
        claimed = self.claimed_cases(workspace_id)
        return {
            key.normalized(): max(needed.get(key.normalized(), 0) - claimed.get(key.normalized(), 0), 0)
            for key in keys
        }
