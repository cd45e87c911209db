"""Workspace ingestion from JSON documents."""
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

from .errors import ConfigurationError
from .shared.database import Database, fetch_one
from .shared.keys import as_mapping, variable_key
from .shared.models import (
    Booklet,
    Coder,
    CodingJob,
    CodingJobCoder,
    CodingJobUnit,
    Person,
    Response,
    Unit,
    UnitResource,
    VariableBundle,
)
from .utils import utc_now

log = logging.getLogger(__name__)

ResponseRef = Tuple[str, str, str, str, str]

_RESPONSE_FIELDS = (
    "status_v1",
    "code_v1",
    "score_v1",
    "status_v2",
    "code_v2",
    "score_v2",
    "status_v3",
    "code_v3",
    "score_v3",
)


def _import_persons(
    conn: sqlite3.Connection,
    workspace_id: int,
    persons: Iterable[Mapping],
) -> Dict[ResponseRef, int]:
    refs: Dict[ResponseRef, int] = {}
    for person_row in persons:
        person = Person(
            id=None,
            workspace_id=workspace_id,
            login=str(person_row["login"]),
            code=str(person_row.get("code", "")),
            group_name=str(person_row.get("group", "")),
            consider=1 if person_row.get("consider", True) else 0,
        )
        person.id = person.save(conn)
        for booklet_row in person_row.get("booklets", []):
            booklet = Booklet(id=None, person_id=person.id, name=str(booklet_row["name"]))
            booklet.id = booklet.save(conn)
            for unit_row in booklet_row.get("units", []):
                unit = Unit(id=None, booklet_id=booklet.id, name=str(unit_row["name"]), alias=unit_row.get("alias"))
                unit.id = unit.save(conn)
                for response_row in unit_row.get("responses", []):
                    response = Response(
                        id=None,
                        unit_id=unit.id,
                        variable_id=str(response_row["variable_id"]),
                        value=response_row.get("value"),
                        **{name: response_row.get(name) for name in _RESPONSE_FIELDS},
                    )
                    ref = (person.login, person.code, booklet.name, unit.name, response.variable_id)
                    refs[ref] = response.save(conn)
    return refs


def _coder_id(conn: sqlite3.Connection, username: str) -> int:
    row = fetch_one(conn, "SELECT id FROM coders WHERE username = ?", [username])
    if row:
        return int(row["id"])
    return Coder(id=None, username=username).save(conn)


def _import_coding_jobs(
    conn: sqlite3.Connection,
    workspace_id: int,
    jobs: Iterable[Mapping],
    refs: Dict[ResponseRef, int],
) -> int:
    count = 0
    for job_row in jobs:
        job = CodingJob(
            id=None,
            workspace_id=workspace_id,
            name=str(job_row["name"]),
            training_id=job_row.get("training_id"),
            created_at=job_row.get("created_at") or utc_now(),
        )
        job.id = job.save(conn)
        for username in job_row.get("coders", []):
            CodingJobCoder(coding_job_id=job.id, coder_id=_coder_id(conn, str(username))).save(conn)
        for unit_row in job_row.get("units", []):
            ref = (
                str(unit_row["login"]),
                str(unit_row.get("code", "")),
                str(unit_row["booklet"]),
                str(unit_row["unit"]),
                str(unit_row["variable_id"]),
            )
            response_id = refs.get(ref)
            if response_id is None:
                raise ConfigurationError(f"Coding job {job.name} references unknown response {ref}")
            CodingJobUnit(
                id=None,
                coding_job_id=job.id,
                response_id=response_id,
                unit_name=ref[3],
                variable_id=ref[4],
                code=unit_row.get("coding"),
                score=unit_row.get("score"),
                notes=unit_row.get("notes"),
                coding_issue_option=unit_row.get("coding_issue_option"),
                updated_at=unit_row.get("updated_at"),
            ).save(conn)
        count += 1
    return count


def import_workspace(database: Database, workspace_id: int, payload: Mapping) -> Dict[str, int]:
    """Load persons, unit resources, bundles and coding jobs into one workspace.

    Coding job units point at responses by ``login``, ``code``, ``booklet``,
    ``unit`` and ``variable_id``; the code a coder assigned is read from
    ``coding``.
    """
    with database.transaction() as conn:
        refs = _import_persons(conn, workspace_id, payload.get("persons", []))
        UnitResource.insert_many(
            conn,
            [
                UnitResource(
                    workspace_id=workspace_id,
                    unit_name=str(row["unit_name"]),
                    kind=str(row["kind"]),
                    data=row.get("data") or {},
                )
                for row in payload.get("unit_resources", [])
            ],
        )
        for bundle_row in payload.get("bundles", []):
            VariableBundle(
                id=bundle_row.get("id"),
                workspace_id=workspace_id,
                name=str(bundle_row["name"]),
                description=bundle_row.get("description"),
                variables=[as_mapping(variable_key(item)) for item in bundle_row.get("variables", [])],
            ).save(conn)
        jobs = _import_coding_jobs(conn, workspace_id, payload.get("coding_jobs", []), refs)
    counts = {
        "responses": len(refs),
        "unit_resources": len(payload.get("unit_resources", [])),
        "bundles": len(payload.get("bundles", [])),
        "coding_jobs": jobs,
    }
    log.info("workspace imported", extra={"workspace_id": workspace_id, **counts})
    return counts


def import_workspace_file(database: Database, workspace_id: int, path: Path) -> Dict[str, int]:
    payload = json.loads(Path(path).read_text("utf-8"))
    return import_workspace(database, workspace_id, payload)
