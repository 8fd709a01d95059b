# src/scriptaudit/normalize.py
from __future__ import annotations

import logging
from typing import Iterable, TypeVar

from scriptaudit.schema import Connection, Dependency, ProjectMembership, ScriptLocation, Snapshot

logger = logging.getLogger(__name__)

Row = TypeVar("Row", bound=tuple)


def dedupe(rows: Iterable[Row]) -> list[Row]:
    """Set semantics over full tuples, stable (host, script, target) order for reproducible snapshots."""
    return sorted(set(rows))


def normalize_dependencies(rows: Iterable[Dependency]) -> list[Dependency]:
    # exact, case-sensitive comparison on the bare name
    return dedupe(r for r in rows if r.referenced_script_name != r.script_name)


def normalize_connections(rows: Iterable[Connection]) -> list[Connection]:
    return dedupe(rows)


def normalize_snapshot(
        *,
        locations: Iterable[ScriptLocation],
        memberships: Iterable[ProjectMembership],
        dependencies: Iterable[Dependency],
        connections: Iterable[Connection],
        snapshot: Snapshot | None = None,
) -> Snapshot:
    """
    Merge raw extraction output into the invariant-respecting relations.
    Schedules pass through untouched from the given snapshot: their order is
    the job-table order, and the load collapses repeats to the last one.
    """
    raw_deps = list(dependencies)
    raw_conns = list(connections)

    out = Snapshot(
        locations=dedupe(locations),
        memberships=dedupe(memberships),
        dependencies=normalize_dependencies(raw_deps),
        connections=normalize_connections(raw_conns),
        schedules=list(snapshot.schedules) if snapshot is not None else [],
    )
    logger.info(
        "normalized dependencies %d -> %d, connections %d -> %d",
        len(raw_deps),
        len(out.dependencies),
        len(raw_conns),
        len(out.connections),
    )
    return out
