"""Database schema helpers."""
from __future__ import annotations

from pathlib import Path
import sqlite3

from .shared.database import Database, ensure_schema
from .shared.models import (
    Booklet,
    Coder,
    CodingJob,
    CodingJobCoder,
    CodingJobUnit,
    JobDefinition,
    Person,
    Response,
    Unit,
    UnitResource,
    VariableBundle,
)
from .utils import ensure_dir

WORKSPACE_MODELS = [
    Person,
    Booklet,
    Unit,
    Response,
    Coder,
    CodingJob,
    CodingJobCoder,
    CodingJobUnit,
    JobDefinition,
    VariableBundle,
    UnitResource,
]

WORKSPACE_INDEXES = [
    """CREATE INDEX IF NOT EXISTS idx_persons_workspace ON persons(workspace_id, consider);""",
    """CREATE INDEX IF NOT EXISTS idx_booklets_person ON booklets(person_id);""",
    """CREATE INDEX IF NOT EXISTS idx_units_booklet ON units(booklet_id);""",
    """CREATE INDEX IF NOT EXISTS idx_responses_unit ON responses(unit_id);""",
    """CREATE INDEX IF NOT EXISTS idx_coding_jobs_workspace ON coding_jobs(workspace_id, training_id);""",
    """CREATE INDEX IF NOT EXISTS idx_job_units_job ON coding_job_units(coding_job_id);""",
    """CREATE INDEX IF NOT EXISTS idx_job_units_variable ON coding_job_units(unit_name, variable_id);""",
    """CREATE INDEX IF NOT EXISTS idx_job_definitions_workspace ON job_definitions(workspace_id, status);""",
]


def initialize_db(conn: sqlite3.Connection) -> None:
    ensure_schema(conn, WORKSPACE_MODELS)
    for statement in WORKSPACE_INDEXES:
        conn.execute(statement)


def initialize_workspace_db(path: Path) -> Database:
    """Create the workspace SQLite file if needed and return a handle to it."""
    ensure_dir(Path(path).parent)
    database = Database(path)
    with database.transaction() as conn:
        initialize_db(conn)
    return database
