# src/scriptaudit/main.py
from __future__ import annotations

import os
from typing import Any, Dict, Optional

from scriptaudit.job import AuditJob
from scriptaudit.store import SQLiteStore


def _discover_aws_region(explicit: Optional[str] = None) -> Optional[str]:
    if explicit:
        return explicit
    # default region discovery (AWS commonly sets one of these)
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or None


def run(
        job_payload: Dict[str, Any],
        dry_run: bool = False,
        *,
        payload_src: str = "unknown",
        aws_region: Optional[str] = None,
        mode: str = "audit",
        pack: bool = False,
        upload: bool = False,
) -> Dict[str, Any]:
    """
    Core entrypoint used by scriptaudit.cli for one host.

    mode is one of "schedule" (job table only), "audit" (full snapshot to flat
    files) or "load" (full snapshot, then upsert into the store). pack turns the
    flat files into a host bundle; upload also ships it to S3.
    """
    aws_region = _discover_aws_region(aws_region)

    from scriptaudit.graph import run_audit_graph

    # Let AuditStageError bubble up so the CLI can render stage-aware JSON.
    return run_audit_graph(
        payload=job_payload,
        payload_src=payload_src,
        dry_run=dry_run,
        aws_region=aws_region,
        mode=mode,
        pack=pack,
        upload=upload,
    )


def aggregate(
        job_payload: Dict[str, Any],
        dry_run: bool = False,
        *,
        payload_src: str = "unknown",
        aws_region: Optional[str] = None,
        rebuild: bool = False,
) -> Dict[str, Any]:
    """Central-host entrypoint: ingest waiting bundles, or rebuild the store from all of them."""
    aws_region = _discover_aws_region(aws_region)

    from scriptaudit.graph import MODE_INGEST, MODE_REBUILD, run_aggregation_graph

    return run_aggregation_graph(
        payload=job_payload,
        payload_src=payload_src,
        dry_run=dry_run,
        aws_region=aws_region,
        mode=MODE_REBUILD if rebuild else MODE_INGEST,
    )


def schema(job_payload: Dict[str, Any], dry_run: bool = False) -> Dict[str, Any]:
    """Create the tables if needed and return their DDL; a dry run inspects an in-memory store."""
    job = AuditJob.model_validate(job_payload)
    db_path = ":memory:" if dry_run else job.output.db_path
    with SQLiteStore(db_path) as store:
        store.create_schema()
        tables = store.dump_schema()
    return {"ok": True, "db_path": db_path, "tables": tables}
