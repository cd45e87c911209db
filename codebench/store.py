"""SQLite backed response and job-definition stores.

The export pipeline and the accountant only talk to these classes, never to
SQL directly. Every query is keyed by workspace and large reads are paged with
an ``id > last_id ORDER BY id LIMIT n`` cursor so a caller never needs more
than one page in memory.
"""
from __future__ import annotations

import contextlib
import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from .errors import NotFound, StoreError
from .shared.database import Database, fetch_all, fetch_one
from .shared.keys import PersonKey, VariableKey
from .shared.models import (
    CODING_INCOMPLETE,
    Coder,
    CodingJob,
    CodingJobCoder,
    CodingJobUnit,
    JobDefinition,
    LatestCoding,
    Response,
    UnitResource,
    VariableBundle,
)
from .utils import utc_now

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponseContext:
    """A response still waiting for manual coding, with its test-taker context."""

    response_id: int
    unit_name: str
    unit_alias: Optional[str]
    variable_id: str
    value: Optional[str]
    person: PersonKey
    booklet: str
    latest: LatestCoding

    @property
    def key(self) -> VariableKey:
        return VariableKey(self.unit_name, self.variable_id)


@dataclass(frozen=True)
class CodingRecord:
    """One coder's coding of one response, as stored on a coding job unit."""

    id: int
    response_id: int
    coding_job_id: int
    coder: str
    person: PersonKey
    booklet: str
    unit_name: str
    variable_id: str
    code: Optional[int]
    score: Optional[int]
    notes: Optional[str]
    coding_issue_option: Optional[int]
    updated_at: Optional[str]

    @property
    def key(self) -> VariableKey:
        return VariableKey(self.unit_name, self.variable_id)


_LATEST_STATUS = "COALESCE(r.status_v3, r.status_v2, r.status_v1)"

_NEEDS_CODING_FROM = f"""
    FROM responses r
    JOIN units u ON u.id = r.unit_id
    JOIN booklets b ON b.id = u.booklet_id
    JOIN persons p ON p.id = b.person_id
    WHERE p.workspace_id = ?
      AND p.consider = 1
      AND {_LATEST_STATUS} = ?
      AND r.value IS NOT NULL AND r.value <> ''
"""

# Coding units of non-training jobs, attributed to the first coder of their job.
_ATTRIBUTED_UNITS = """
    WITH attributed AS (
        SELECT cju.*,
               COALESCE(
                   (SELECT c.username FROM coding_job_coders jc
                    JOIN coders c ON c.id = jc.coder_id
                    WHERE jc.coding_job_id = cj.id
                    ORDER BY c.id LIMIT 1),
                   'Job ' || cj.id
               ) AS coder_name
        FROM coding_job_units cju
        JOIN coding_jobs cj ON cj.id = cju.coding_job_id
        WHERE cj.workspace_id = ? AND cj.training_id IS NULL
    )
"""

_CODING_RECORD_SELECT = (
    _ATTRIBUTED_UNITS
    + """
    SELECT a.id, a.response_id, a.coding_job_id, a.coder_name, a.unit_name, a.variable_id,
           a.code, a.score, a.notes, a.coding_issue_option, a.updated_at,
           p.login, p.code AS person_code, p.group_name, b.name AS booklet_name
    FROM attributed a
    JOIN responses r ON r.id = a.response_id
    JOIN units u ON u.id = r.unit_id
    JOIN booklets b ON b.id = u.booklet_id
    JOIN persons p ON p.id = b.person_id
    WHERE a.id > ?
"""
)


def _coding_record(row: sqlite3.Row) -> CodingRecord:
    return CodingRecord(
        id=row["id"],
        response_id=row["response_id"],
        coding_job_id=row["coding_job_id"],
        coder=row["coder_name"],
        person=PersonKey(row["login"], row["person_code"], row["group_name"] or ""),
        booklet=row["booklet_name"],
        unit_name=row["unit_name"],
        variable_id=row["variable_id"],
        code=row["code"],
        score=row["score"],
        notes=row["notes"],
        coding_issue_option=row["coding_issue_option"],
        updated_at=row["updated_at"],
    )


class _StoreBase:
    def __init__(self, database: Database) -> None:
        self.database = database

    @contextlib.contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            log.error("store operation failed", extra={"action": action, "error": str(exc)})
            raise StoreError(f"Failed to {action}: {exc}") from exc


class ResponseStore(_StoreBase):
    """Read access to responses, coding jobs and unit authoring resources."""

    # ------------------------------------------------------------------ #
    # responses waiting for manual coding

    def count_needing_coding(self, workspace_id: int) -> Dict[VariableKey, int]:
        sql = (
            "SELECT u.name AS unit_name, r.variable_id, COUNT(r.id) AS n"
            + _NEEDS_CODING_FROM
            + " GROUP BY u.name, r.variable_id"
        )
        with self._guard("count responses needing coding"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id, CODING_INCOMPLETE])
        return {VariableKey(row["unit_name"], row["variable_id"]): int(row["n"]) for row in rows}

    def fetch_needing_coding(
        self,
        workspace_id: int,
        after_id: int,
        limit: int,
    ) -> List[ResponseContext]:
        sql = (
            """
            SELECT r.*, u.name AS unit_name, u.alias AS unit_alias, b.name AS booklet_name,
                   p.login, p.code AS person_code, p.group_name
            """
            + _NEEDS_CODING_FROM
            + " AND r.id > ? ORDER BY r.id LIMIT ?"
        )
        with self._guard("fetch responses needing coding"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id, CODING_INCOMPLETE, after_id, limit])
        contexts = []
        for row in rows:
            response = Response.from_row(row)
            contexts.append(
                ResponseContext(
                    response_id=row["id"],
                    unit_name=row["unit_name"],
                    unit_alias=row["unit_alias"],
                    variable_id=row["variable_id"],
                    value=row["value"],
                    person=PersonKey(row["login"], row["person_code"], row["group_name"] or ""),
                    booklet=row["booklet_name"],
                    latest=response.latest(),
                )
            )
        return contexts

    def iter_needing_coding(self, workspace_id: int, batch_size: int = 5000) -> Iterator[ResponseContext]:
        last_id = 0
        while True:
            page = self.fetch_needing_coding(workspace_id, last_id, batch_size)
            yield from page
            if len(page) < batch_size:
                return
            last_id = page[-1].response_id

    # ------------------------------------------------------------------ #
    # coding job units

    def claimed_case_counts(self, workspace_id: int) -> Dict[VariableKey, int]:
        sql = """
            SELECT cju.unit_name, cju.variable_id, COUNT(DISTINCT cju.response_id) AS n
            FROM coding_job_units cju
            JOIN coding_jobs cj ON cj.id = cju.coding_job_id
            WHERE cj.workspace_id = ? AND cj.training_id IS NULL
            GROUP BY cju.unit_name, cju.variable_id
        """
        with self._guard("count claimed cases"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id])
        return {VariableKey(row["unit_name"], row["variable_id"]): int(row["n"]) for row in rows}

    def claimed_response_ids(self, workspace_id: int) -> set[int]:
        sql = """
            SELECT DISTINCT cju.response_id
            FROM coding_job_units cju
            JOIN coding_jobs cj ON cj.id = cju.coding_job_id
            WHERE cj.workspace_id = ? AND cj.training_id IS NULL
        """
        with self._guard("list claimed responses"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id])
        return {int(row["response_id"]) for row in rows}

    def count_coding_jobs(self, workspace_id: int) -> int:
        with self._guard("count coding jobs"), self.database.reader() as conn:
            row = fetch_one(
                conn,
                "SELECT COUNT(*) AS n FROM coding_jobs WHERE workspace_id = ? AND training_id IS NULL",
                [workspace_id],
            )
        return int(row["n"]) if row else 0

    def count_coding_units(self, workspace_id: int) -> int:
        sql = _ATTRIBUTED_UNITS + "SELECT COUNT(*) AS n FROM attributed"
        with self._guard("count coding units"), self.database.reader() as conn:
            row = fetch_one(conn, sql, [workspace_id])
        return int(row["n"]) if row else 0

    def fetch_codings(
        self,
        workspace_id: int,
        after_id: int,
        limit: int,
        *,
        variable: Optional[VariableKey] = None,
        coder: Optional[str] = None,
    ) -> List[CodingRecord]:
        sql = _CODING_RECORD_SELECT
        params: list = [workspace_id, after_id]
        if variable is not None:
            sql += " AND a.unit_name = ? AND a.variable_id = ?"
            params.extend([variable.unit_name, variable.variable_id])
        if coder is not None:
            sql += " AND a.coder_name = ?"
            params.append(coder)
        sql += " ORDER BY a.id LIMIT ?"
        params.append(limit)
        with self._guard("fetch coding units"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, params)
        return [_coding_record(row) for row in rows]

    def coding_counts_by_variable(self, workspace_id: int) -> Dict[VariableKey, int]:
        sql = (
            _ATTRIBUTED_UNITS
            + """
            SELECT unit_name, variable_id, COUNT(*) AS n FROM attributed
            GROUP BY unit_name, variable_id ORDER BY unit_name, variable_id
            """
        )
        with self._guard("count codings per variable"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id])
        return {VariableKey(row["unit_name"], row["variable_id"]): int(row["n"]) for row in rows}

    def coding_counts_by_coder(self, workspace_id: int) -> Dict[str, int]:
        sql = (
            _ATTRIBUTED_UNITS
            + "SELECT coder_name, COUNT(*) AS n FROM attributed GROUP BY coder_name ORDER BY coder_name"
        )
        with self._guard("count codings per coder"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, [workspace_id])
        return {row["coder_name"]: int(row["n"]) for row in rows}

    def coder_names(self, workspace_id: int) -> List[str]:
        return sorted(self.coding_counts_by_coder(workspace_id))

    # ------------------------------------------------------------------ #
    # unit authoring resources

    def unit_resource(self, workspace_id: int, unit_name: str, kind: str) -> Optional[dict]:
        sql = (
            "SELECT * FROM unit_resources WHERE workspace_id = ? AND UPPER(unit_name) = UPPER(?) AND kind = ?"
        )
        with self._guard("load unit resource"), self.database.reader() as conn:
            row = fetch_one(conn, sql, [workspace_id, unit_name, kind])
        return _resource_data(row) if row else None

    def unit_resources(self, workspace_id: int, kind: str) -> Dict[str, dict]:
        with self._guard("load unit resources"), self.database.reader() as conn:
            rows = fetch_all(
                conn,
                "SELECT * FROM unit_resources WHERE workspace_id = ? AND kind = ? ORDER BY unit_name",
                [workspace_id, kind],
            )
        resources: Dict[str, dict] = {}
        for row in rows:
            data = _resource_data(row)
            if data is not None:
                resources[row["unit_name"].upper()] = data
        return resources


def _resource_data(row: sqlite3.Row) -> Optional[dict]:
    # malformed JSON drops this unit only
    try:
        return UnitResource.from_row(row).data
    except ValueError as exc:
        log.warning(
            "skipping unreadable unit resource",
            extra={"unit": row["unit_name"], "kind": row["kind"], "error": str(exc)},
        )
        return None


class JobDefinitionStore(_StoreBase):
    """Persistence for job definitions, variable bundles and coding jobs."""

    def get(self, definition_id: int) -> JobDefinition:
        with self._guard("load job definition"), self.database.reader() as conn:
            row = fetch_one(conn, "SELECT * FROM job_definitions WHERE id = ?", [definition_id])
        if row is None:
            raise NotFound(f"Job definition {definition_id} not found")
        return JobDefinition.from_row(row)

    def list(self, workspace_id: int, status: Optional[str] = None) -> List[JobDefinition]:
        sql = "SELECT * FROM job_definitions WHERE workspace_id = ?"
        params: list = [workspace_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY id"
        with self._guard("list job definitions"), self.database.reader() as conn:
            rows = fetch_all(conn, sql, params)
        return [JobDefinition.from_row(row) for row in rows]

    def save(self, definition: JobDefinition) -> JobDefinition:
        if definition.created_at is None:
            definition.created_at = utc_now()
        with self._guard("save job definition"), self.database.transaction() as conn:
            definition.id = definition.save(conn)
        return definition

    def delete(self, definition_id: int) -> None:
        with self._guard("delete job definition"), self.database.transaction() as conn:
            cur = conn.execute("DELETE FROM job_definitions WHERE id = ?", [definition_id])
        if cur.rowcount == 0:
            raise NotFound(f"Job definition {definition_id} not found")

    def bundles(self, workspace_id: int, bundle_ids: Iterable[int]) -> List[VariableBundle]:
        ids = [int(bundle_id) for bundle_id in bundle_ids]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._guard("load variable bundles"), self.database.reader() as conn:
            rows = fetch_all(
                conn,
                f"SELECT * FROM variable_bundles WHERE workspace_id = ? AND id IN ({placeholders}) ORDER BY id",
                [workspace_id, *ids],
            )
        return [VariableBundle.from_row(row) for row in rows]

    def save_bundle(self, bundle: VariableBundle) -> VariableBundle:
        with self._guard("save variable bundle"), self.database.transaction() as conn:
            bundle.id = bundle.save(conn)
        return bundle

    def create_coding_job(
        self,
        workspace_id: int,
        name: str,
        definition_id: Optional[int],
        coder_names: Sequence[str],
        cases: Sequence[tuple[int, VariableKey]],
    ) -> int:
        """Persist one coding job with its coders and one unit per case."""
        with self._guard("create coding job"), self.database.transaction() as conn:
            job = CodingJob(
                id=None,
                workspace_id=workspace_id,
                name=name,
                job_definition_id=definition_id,
                created_at=utc_now(),
            )
            job.id = job.save(conn)
            for coder_name in coder_names:
                existing = fetch_one(conn, "SELECT id FROM coders WHERE username = ?", [coder_name])
                coder_id = existing["id"] if existing else Coder(id=None, username=coder_name).save(conn)
                CodingJobCoder(coding_job_id=job.id, coder_id=coder_id).save(conn)
            CodingJobUnit.insert_many(
                conn,
                [
                    CodingJobUnit(
                        id=None,
                        coding_job_id=job.id,
                        response_id=response_id,
                        unit_name=key.unit_name,
                        variable_id=key.variable_id,
                    )
                    for response_id, key in cases
                ],
            )
        return int(job.id)

    def mark_instantiated(self, definition_id: int) -> bool:
        """Stamp the definition as used; returns False when it already was."""
        with self._guard("mark job definition instantiated"), self.database.transaction() as conn:
            cur = conn.execute(
                "UPDATE job_definitions SET instantiated_at = ? WHERE id = ? AND instantiated_at IS NULL",
                [utc_now(), definition_id],
            )
        return cur.rowcount == 1
