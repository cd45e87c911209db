"""Job definition lifecycle: drafting, review, approval and instantiation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .coverage import ApprovalCheck, CoverageAccountant
from .distribution import CaseOrdering, Distribution, DoubleCoding, distribute_cases
from .errors import ApprovalRefused, ConfigurationError, InvalidTransition
from .shared.keys import VariableKey, as_mapping, variable_key
from .shared.models import APPROVED, DRAFT, PENDING_REVIEW, JobDefinition
from .store import JobDefinitionStore, ResponseContext, ResponseStore

log = logging.getLogger(__name__)

_TRANSITIONS = {
    DRAFT: {PENDING_REVIEW, APPROVED},
    PENDING_REVIEW: {APPROVED},
    APPROVED: set(),
}

_EDITABLE_FIELDS = (
    "assigned_variables",
    "assigned_bundles",
    "assigned_coders",
    "double_coding_absolute",
    "double_coding_percentage",
    "case_ordering_mode",
    "max_coding_cases",
)


@dataclass
class CodingJobPlan:
    definition_id: int
    job_ids: Dict[str, int] = field(default_factory=dict)
    distribution: Distribution = field(default_factory=Distribution)

    @property
    def jobs_created(self) -> int:
        return len(self.job_ids)


class JobDefinitionService:
    def __init__(
        self,
        definitions: JobDefinitionStore,
        responses: ResponseStore,
        accountant: CoverageAccountant,
    ) -> None:
        self.definitions = definitions
        self.responses = responses
        self.accountant = accountant

    def get(self, definition_id: int) -> JobDefinition:
        return self.definitions.get(definition_id)

    def list(self, workspace_id: int, status: Optional[str] = None) -> List[JobDefinition]:
        return self.definitions.list(workspace_id, status)

    def delete(self, definition_id: int) -> None:
        self.definitions.delete(definition_id)

    # ------------------------------------------------------------------ #

    def _normalize_fields(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = set(values) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown job definition fields: {', '.join(sorted(unknown))}")
        normalized = dict(values)
        if "assigned_variables" in normalized:
            normalized["assigned_variables"] = [
                as_mapping(variable_key(item)) for item in normalized["assigned_variables"] or []
            ]
        if "case_ordering_mode" in normalized:
            try:
                normalized["case_ordering_mode"] = CaseOrdering(normalized["case_ordering_mode"]).value
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        return normalized

    def _refuse_unavailable(self, definition: JobDefinition, keys: List[VariableKey], action: str) -> None:
        unavailable = self.accountant.unavailable_variables(definition.workspace_id, keys)
        if unavailable:
            raise ApprovalRefused(unavailable, action=action)

    def create(self, workspace_id: int, **values: Any) -> JobDefinition:
        definition = JobDefinition(id=None, workspace_id=workspace_id, **self._normalize_fields(values))
        self._refuse_unavailable(
            definition, self.accountant.definition_variables(definition), "create job definition"
        )
        return self.definitions.save(definition)

    def update(self, definition_id: int, **changes: Any) -> JobDefinition:
        definition = self.definitions.get(definition_id)
        before = set(self.accountant.definition_variables(definition))
        for name, value in self._normalize_fields(changes).items():
            setattr(definition, name, value)
        added = [key for key in self.accountant.definition_variables(definition) if key not in before]
        self._refuse_unavailable(definition, added, "update job definition")
        return self.definitions.save(definition)

    # ------------------------------------------------------------------ #

    def can_approve(self, definition_id: int) -> ApprovalCheck:
        return self.accountant.check_approval(self.definitions.get(definition_id))

    def _transition(self, definition_id: int, target: str) -> JobDefinition:
        definition = self.definitions.get(definition_id)
        if target not in _TRANSITIONS.get(definition.status, set()):
            raise InvalidTransition(definition.status, target)
        if target == APPROVED:
            check = self.accountant.check_approval(definition)
            if not check.ok:
                raise ApprovalRefused(check.unavailable)
        definition.status = target
        log.info("job definition %s moved to %s", definition_id, target)
        return self.definitions.save(definition)

    def submit_for_review(self, definition_id: int) -> JobDefinition:
        return self._transition(definition_id, PENDING_REVIEW)

    def approve(self, definition_id: int) -> JobDefinition:
        return self._transition(definition_id, APPROVED)

    # ------------------------------------------------------------------ #

    def plan(self, definition: JobDefinition) -> Distribution:
        keys = set(self.accountant.definition_variables(definition))
        claimed = self.responses.claimed_response_ids(definition.workspace_id)
        cases: Dict[VariableKey, List[ResponseContext]] = {key: [] for key in keys}
        for context in self.responses.iter_needing_coding(definition.workspace_id):
            key = context.key.normalized()
            if key in cases and context.response_id not in claimed:
                cases[key].append(context)
        return distribute_cases(
            cases,
            [str(coder) for coder in definition.assigned_coders or []],
            double_coding=DoubleCoding(definition.double_coding_absolute, definition.double_coding_percentage),
            ordering=CaseOrdering(definition.case_ordering_mode or CaseOrdering.CONTINUOUS.value),
            max_cases=definition.max_coding_cases,
        )

    def instantiate(self, definition_id: int) -> CodingJobPlan:
        """Create one coding job per coder from an approved definition, exactly once."""
        definition = self.definitions.get(definition_id)
        if definition.status != APPROVED:
            raise ConfigurationError(
                f"Job definition {definition_id} must be approved before creating coding jobs"
            )
        if definition.instantiated_at is not None:
            raise ConfigurationError(f"Job definition {definition_id} was already used to create coding jobs")
        distribution = self.plan(definition)
        if not self.definitions.mark_instantiated(definition_id):
            raise ConfigurationError(f"Job definition {definition_id} was already used to create coding jobs")
        plan = CodingJobPlan(definition_id=definition_id, distribution=distribution)
        for coder, cases in distribution.cases.items():
            if not cases:
                continue
            plan.job_ids[coder] = self.definitions.create_coding_job(
                definition.workspace_id,
                f"{coder} - definition {definition_id}",
                definition_id,
                [coder],
                [(case.response_id, case.key) for case in cases],
            )
        log.info(
            "instantiated job definition",
            extra={"definition_id": definition_id, "jobs": plan.jobs_created},
        )
        return plan
