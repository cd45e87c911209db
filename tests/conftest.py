from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.config import ExportLimits, WorkbenchConfig
from codebench.importer import import_workspace
from codebench.service import CodingWorkbench
from codebench.shared.models import APPROVED, DRAFT, PENDING_REVIEW, JobDefinition

WORKSPACE = 1

INCOMPLETE = {"status_v1": "CODING_INCOMPLETE"}


def _responses(*rows: tuple[str, str | None]) -> list[dict]:
    return [{"variable_id": variable, "value": value, **INCOMPLETE} for variable, value in rows]


def workspace_payload() -> dict:
    """Three considered test takers plus one ignored one, two units, three coding jobs."""
    return {
        "persons": [
            {
                "login": "alice",
                "code": "c1",
                "group": "g1",
                "booklets": [
                    {
                        "name": "B1",
                        "units": [
                            {
                                "name": "UNIT1",
                                "alias": "First unit",
                                "responses": _responses(
                                    ("V1", "x"),
                                    ("V2", "y"),
                                    ("V3", "auto"),
                                    ("image1", "img"),
                                    ("V1_0", "helper"),
                                    ("V9", "stale"),
                                ),
                            },
                            {"name": "UNIT2", "responses": _responses(("A1", "a"), ("A2", "z"))},
                        ],
                    }
                ],
            },
            {
                "login": "bob",
                "code": "c2",
                "group": "g1",
                "booklets": [
                    {
                        "name": "B1",
                        "units": [
                            {"name": "UNIT1", "responses": _responses(("V1", "x"), ("V2", "y"))},
                            {"name": "UNIT2", "responses": _responses(("A1", "a"))},
                        ],
                    }
                ],
            },
            {
                "login": "carol",
                "code": "c3",
                "group": "g2",
                "booklets": [
                    {
                        "name": "B1",
                        "units": [
                            {"name": "UNIT1", "responses": _responses(("V1", "x"), ("V2", ""))},
                            {
                                "name": "UNIT2",
                                "responses": [
                                    {
                                        "variable_id": "A1",
                                        "value": "a",
                                        "status_v1": "CODING_INCOMPLETE",
                                        "status_v2": "CODING_COMPLETE",
                                        "code_v2": 1,
                                    }
                                ],
                            },
                        ],
                    }
                ],
            },
            {
                "login": "dave",
                "code": "c4",
                "group": "g2",
                "consider": False,
                "booklets": [
                    {"name": "B1", "units": [{"name": "UNIT1", "responses": _responses(("V1", "x"))}]}
                ],
            },
        ],
        "unit_resources": [
            {
                "unit_name": "UNIT1",
                "kind": "definition",
                "data": {
                    "variables": ["V1", "V2", "V3", "image1", "V1_0"],
                    "pages": [{"variables": ["V1"]}, {"variables": ["V2", "V3"]}],
                },
            },
            {"unit_name": "UNIT2", "kind": "definition", "data": {"variables": ["A1", "A2"]}},
            {
                "unit_name": "UNIT1",
                "kind": "scheme",
                "data": {"variableCodings": [{"id": "V3", "sourceType": "BASE_NO_VALUE"}, {"id": "V1"}]},
            },
        ],
        "bundles": [{"id": 1, "name": "unit two", "variables": [{"unit_name": "UNIT2", "variable_id": "A1"}]}],
        "coding_jobs": [
            {
                "name": "J1",
                "coders": ["coder_b"],
                "units": [
                    {"login": "alice", "code": "c1", "booklet": "B1", "unit": "UNIT1", "variable_id": "V1",
                     "coding": 1, "updated_at": "2024-03-05T14:07:09"},
                    {"login": "bob", "code": "c2", "booklet": "B1", "unit": "UNIT1", "variable_id": "V1",
                     "coding": 2},
                    {"login": "carol", "code": "c3", "booklet": "B1", "unit": "UNIT1", "variable_id": "V1",
                     "coding": 1, "coding_issue_option": 2, "notes": "see screenshot"},
                ],
            },
            {
                "name": "J2",
                "coders": ["coder_a"],
                "units": [
                    {"login": "alice", "code": "c1", "booklet": "B1", "unit": "UNIT1", "variable_id": "V1",
                     "coding": 1},
                    {"login": "bob", "code": "c2", "booklet": "B1", "unit": "UNIT1", "variable_id": "V1",
                     "coding": 1, "notes": "unsure"},
                    {"login": "alice", "code": "c1", "booklet": "B1", "unit": "UNIT1", "variable_id": "V3",
                     "coding": 0},
                    {"login": "bob", "code": "c2", "booklet": "B1", "unit": "UNIT1", "variable_id": "V2",
                     "coding": 3},
                ],
            },
            {
                "name": "training",
                "training_id": 7,
                "coders": ["coder_c"],
                "units": [
                    {"login": "alice", "code": "c1", "booklet": "B1", "unit": "UNIT2", "variable_id": "A1",
                     "coding": 1},
                ],
            },
        ],
    }


@pytest.fixture
def workbench(tmp_path: Path) -> CodingWorkbench:
    db_path = tmp_path / "workspace.db"
    config = WorkbenchConfig(database_path=db_path, limits=ExportLimits(batch_size=2))
    bench = CodingWorkbench(db_path, config)
    import_workspace(bench.database, WORKSPACE, workspace_payload())
    return bench


@pytest.fixture
def definitions(workbench: CodingWorkbench) -> dict[str, JobDefinition]:
    store = workbench.definition_store
    created = {
        "draft": JobDefinition(
            id=None,
            workspace_id=WORKSPACE,
            status=DRAFT,
            assigned_variables=[
                {"unit_name": "UNIT1", "variable_id": "V1"},
                {"unit_name": "UNIT1", "variable_id": "V2"},
            ],
            assigned_coders=["coder_a"],
        ),
        "pending": JobDefinition(
            id=None,
            workspace_id=WORKSPACE,
            status=PENDING_REVIEW,
            assigned_variables=[{"unit_name": "unit1", "variable_id": "V1"}],
        ),
        "approved": JobDefinition(id=None, workspace_id=WORKSPACE, status=APPROVED, assigned_bundles=[1]),
    }
    return {name: store.save(definition) for name, definition in created.items()}
