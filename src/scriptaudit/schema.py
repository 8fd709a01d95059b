# src/scriptaudit/schema.py
"""
Relation registry.

Every relation is row-shaped, keyed by host + script + detail, and travels
as a pipe-delimited flat file before it reaches the relational store.
Schedule is the one relation whose key is narrower than the row: a script
scheduled twice collapses to the last-loaded entry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import NamedTuple


class ScriptLocation(NamedTuple):
    host: str
    script_name: str
    absolute_path: str


class ProjectMembership(NamedTuple):
    host: str
    script_name: str
    namespace: str


class Dependency(NamedTuple):
    host: str
    script_name: str
    referenced_script_name: str


class Connection(NamedTuple):
    host: str
    script_name: str
    external_resource: str


class Schedule(NamedTuple):
    host: str
    script_name: str
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str


@dataclass(frozen=True)
class Relation:
    name: str
    table: str
    row_type: type
    key: tuple[str, ...]

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self.row_type._fields)

    @property
    def value_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.key)

    @property
    def filename(self) -> str:
        return f"{self.name}.lst"

    def create_sql(self) -> str:
        cols = ",\n  ".join(f"{c} TEXT NOT NULL" for c in self.columns)
        return (
            f"CREATE TABLE IF NOT EXISTS {self.table} (\n"
            f"  {cols},\n"
            f"  PRIMARY KEY ({', '.join(self.key)})\n"
            f")"
        )

    def upsert_sql(self) -> str:
        cols = ", ".join(self.columns)
        marks = ", ".join("?" for _ in self.columns)
        key = ", ".join(self.key)
        if not self.value_columns:
            action = "DO NOTHING"
        else:
            action = "DO UPDATE SET " + ", ".join(f"{c}=excluded.{c}" for c in self.value_columns)
        return f"INSERT INTO {self.table} ({cols}) VALUES ({marks}) ON CONFLICT({key}) {action}"


SCRIPT_LOCATION = Relation(
    name="script_location",
    table="ScriptLocation",
    row_type=ScriptLocation,
    key=("host", "script_name", "absolute_path"),
)
PROJECT_MEMBERSHIP = Relation(
    name="project_membership",
    table="ProjectMembership",
    row_type=ProjectMembership,
    key=("host", "script_name", "namespace"),
)
DEPENDENCY = Relation(
    name="dependency",
    table="Dependency",
    row_type=Dependency,
    key=("host", "script_name", "referenced_script_name"),
)
CONNECTION = Relation(
    name="connection",
    table="Connection",
    row_type=Connection,
    key=("host", "script_name", "external_resource"),
)
SCHEDULE = Relation(
    name="schedule",
    table="Schedule",
    row_type=Schedule,
    key=("host", "script_name"),
)

RELATIONS: tuple[Relation, ...] = (SCRIPT_LOCATION, PROJECT_MEMBERSHIP, DEPENDENCY, CONNECTION, SCHEDULE)
RELATIONS_BY_NAME: dict[str, Relation] = {r.name: r for r in RELATIONS}
RELATION_FILENAMES: frozenset[str] = frozenset(r.filename for r in RELATIONS)


@dataclass
class Snapshot:
    """One host-run's worth of rows, keyed by relation name."""

    locations: list[ScriptLocation] = field(default_factory=list)
    memberships: list[ProjectMembership] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    schedules: list[Schedule] = field(default_factory=list)

    def rows(self, relation: Relation) -> list[tuple]:
        return list(
            {
                SCRIPT_LOCATION.name: self.locations,
                PROJECT_MEMBERSHIP.name: self.memberships,
                DEPENDENCY.name: self.dependencies,
                CONNECTION.name: self.connections,
                SCHEDULE.name: self.schedules,
            }[relation.name]
        )

    def counts(self) -> dict[str, int]:
        return {r.name: len(self.rows(r)) for r in RELATIONS}

    @classmethod
    def from_relations(cls, rows_by_name: dict[str, list[tuple]]) -> "Snapshot":
        return cls(
            locations=[ScriptLocation(*r) for r in rows_by_name.get(SCRIPT_LOCATION.name, [])],
            memberships=[ProjectMembership(*r) for r in rows_by_name.get(PROJECT_MEMBERSHIP.name, [])],
            dependencies=[Dependency(*r) for r in rows_by_name.get(DEPENDENCY.name, [])],
            connections=[Connection(*r) for r in rows_by_name.get(CONNECTION.name, [])],
            schedules=[Schedule(*r) for r in rows_by_name.get(SCHEDULE.name, [])],
        )
