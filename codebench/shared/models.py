"""Dataclass style records representing the persistent workspace schema.

Each model inherits from :class:`Record` which provides helpers for creating
tables and saving rows. Integer primary keys left as ``None`` are assigned by
SQLite on insert.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .database import Record

CODING_INCOMPLETE = "CODING_INCOMPLETE"
CODING_COMPLETE = "CODING_COMPLETE"

DRAFT = "draft"
PENDING_REVIEW = "pending_review"
APPROVED = "approved"
DEFINITION_STATUSES = (DRAFT, PENDING_REVIEW, APPROVED)


# ----------------------------- test takers ---------------------------------- #


@dataclass
class Person(Record):
    id: Optional[int]
    workspace_id: int
    login: str
    code: str
    group_name: str = ""
    consider: int = 1

    __tablename__ = "persons"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS persons (
            id INTEGER PRIMARY KEY,
            workspace_id INTEGER NOT NULL,
            login TEXT NOT NULL,
            code TEXT NOT NULL,
            group_name TEXT NOT NULL DEFAULT '',
            consider INTEGER NOT NULL DEFAULT 1
        )
        """
    )


@dataclass
class Booklet(Record):
    id: Optional[int]
    person_id: int
    name: str

    __tablename__ = "booklets"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS booklets (
            id INTEGER PRIMARY KEY,
            person_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            FOREIGN KEY(person_id) REFERENCES persons(id) ON DELETE CASCADE
        )
        """
    )


@dataclass
class Unit(Record):
    id: Optional[int]
    booklet_id: int
    name: str
    alias: Optional[str] = None

    __tablename__ = "units"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS units (
            id INTEGER PRIMARY KEY,
            booklet_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            alias TEXT NULL,
            FOREIGN KEY(booklet_id) REFERENCES booklets(id) ON DELETE CASCADE
        )
        """
    )


@dataclass
class Response(Record):
    id: Optional[int]
    unit_id: int
    variable_id: str
    value: Optional[str] = None
    status_v1: Optional[str] = None
    code_v1: Optional[int] = None
    score_v1: Optional[int] = None
    status_v2: Optional[str] = None
    code_v2: Optional[int] = None
    score_v2: Optional[int] = None
    status_v3: Optional[str] = None
    code_v3: Optional[int] = None
    score_v3: Optional[int] = None

    __tablename__ = "responses"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS responses (
            id INTEGER PRIMARY KEY,
            unit_id INTEGER NOT NULL,
            variable_id TEXT NOT NULL,
            value TEXT NULL,
            status_v1 TEXT NULL,
            code_v1 INTEGER NULL,
            score_v1 INTEGER NULL,
            status_v2 TEXT NULL,
            code_v2 INTEGER NULL,
            score_v2 INTEGER NULL,
            status_v3 TEXT NULL,
            code_v3 INTEGER NULL,
            score_v3 INTEGER NULL,
            FOREIGN KEY(unit_id) REFERENCES units(id) ON DELETE CASCADE
        )
        """
    )

    def latest(self) -> "LatestCoding":
        """Return the coding of the highest round that carries a value."""
        return LatestCoding(
            status=_first_present(self.status_v3, self.status_v2, self.status_v1),
            code=_first_present(self.code_v3, self.code_v2, self.code_v1),
            score=_first_present(self.score_v3, self.score_v2, self.score_v1),
        )


@dataclass(frozen=True)
class LatestCoding:
    status: Optional[str]
    code: Optional[int]
    score: Optional[int]


def _first_present(*values):
    for value in values:
        if value is not None:
            return value
    return None


# ------------------------------ coding jobs --------------------------------- #


@dataclass
class Coder(Record):
    id: Optional[int]
    username: str

    __tablename__ = "coders"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS coders (
            id INTEGER PRIMARY KEY,
            username TEXT NOT NULL UNIQUE
        )
        """
    )


@dataclass
class CodingJob(Record):
    id: Optional[int]
    workspace_id: int
    name: str
    training_id: Optional[int] = None
    job_definition_id: Optional[int] = None
    status: str = "pending"
    created_at: Optional[str] = None

    __tablename__ = "coding_jobs"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS coding_jobs (
            id INTEGER PRIMARY KEY,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            training_id INTEGER NULL,
            job_definition_id INTEGER NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NULL
        )
        """
    )


@dataclass
class CodingJobCoder(Record):
    coding_job_id: int
    coder_id: int

    __tablename__ = "coding_job_coders"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS coding_job_coders (
            coding_job_id INTEGER NOT NULL,
            coder_id INTEGER NOT NULL,
            PRIMARY KEY (coding_job_id, coder_id),
            FOREIGN KEY(coding_job_id) REFERENCES coding_jobs(id) ON DELETE CASCADE,
            FOREIGN KEY(coder_id) REFERENCES coders(id) ON DELETE CASCADE
        )
        """
    )


@dataclass
class CodingJobUnit(Record):
    id: Optional[int]
    coding_job_id: int
    response_id: int
    unit_name: str
    variable_id: str
    code: Optional[int] = None
    score: Optional[int] = None
    notes: Optional[str] = None
    coding_issue_option: Optional[int] = None
    updated_at: Optional[str] = None

    __tablename__ = "coding_job_units"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS coding_job_units (
            id INTEGER PRIMARY KEY,
            coding_job_id INTEGER NOT NULL,
            response_id INTEGER NOT NULL,
            unit_name TEXT NOT NULL,
            variable_id TEXT NOT NULL,
            code INTEGER NULL,
            score INTEGER NULL,
            notes TEXT NULL,
            coding_issue_option INTEGER NULL,
            updated_at TEXT NULL,
            FOREIGN KEY(coding_job_id) REFERENCES coding_jobs(id) ON DELETE CASCADE,
            FOREIGN KEY(response_id) REFERENCES responses(id) ON DELETE CASCADE
        )
        """
    )


# --------------------------- job definitions -------------------------------- #


@dataclass
class JobDefinition(Record):
    id: Optional[int]
    workspace_id: int
    status: str = DRAFT
    assigned_variables: list = field(default_factory=list)
    assigned_bundles: list = field(default_factory=list)
    assigned_coders: list = field(default_factory=list)
    double_coding_absolute: Optional[int] = None
    double_coding_percentage: Optional[float] = None
    case_ordering_mode: str = "continuous"
    max_coding_cases: Optional[int] = None
    instantiated_at: Optional[str] = None
    created_at: Optional[str] = None

    __tablename__ = "job_definitions"
    __json_fields__ = ("assigned_variables", "assigned_bundles", "assigned_coders")
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS job_definitions (
            id INTEGER PRIMARY KEY,
            workspace_id INTEGER NOT NULL,
            status TEXT NOT NULL CHECK(status IN ('draft','pending_review','approved')),
            assigned_variables TEXT NOT NULL DEFAULT '[]',
            assigned_bundles TEXT NOT NULL DEFAULT '[]',
            assigned_coders TEXT NOT NULL DEFAULT '[]',
            double_coding_absolute INTEGER NULL,
            double_coding_percentage REAL NULL,
            case_ordering_mode TEXT NOT NULL DEFAULT 'continuous',
            max_coding_cases INTEGER NULL,
            instantiated_at TEXT NULL,
            created_at TEXT NULL
        )
        """
    )


@dataclass
class VariableBundle(Record):
    id: Optional[int]
    workspace_id: int
    name: str
    description: Optional[str] = None
    variables: list = field(default_factory=list)

    __tablename__ = "variable_bundles"
    __json_fields__ = ("variables",)
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS variable_bundles (
            id INTEGER PRIMARY KEY,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT NULL,
            variables TEXT NOT NULL DEFAULT '[]'
        )
        """
    )


# --------------------------- authoring files -------------------------------- #


@dataclass
class UnitResource(Record):
    """Authoring metadata of a unit: its page layout or its coding scheme."""

    workspace_id: int
    unit_name: str
    kind: str
    data: dict = field(default_factory=dict)

    __tablename__ = "unit_resources"
    __json_fields__ = ("data",)
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS unit_resources (
            workspace_id INTEGER NOT NULL,
            unit_name TEXT NOT NULL,
            kind TEXT NOT NULL CHECK(kind IN ('definition','scheme')),
            data TEXT NOT NULL,
            PRIMARY KEY (workspace_id, unit_name, kind)
        )
        """
    )
