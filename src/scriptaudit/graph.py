# src/scriptaudit/graph.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TypedDict

from scriptaudit.bundle import Bundle, TarBundle, discover_bundles, host_from_bundle, mark_loaded
from scriptaudit.flatfiles import read_snapshot, remove_files, snapshot_paths, write_snapshot
from scriptaudit.inventory import find_scripts, script_locations
from scriptaudit.job import AuditJob
from scriptaudit.namespace import project_memberships
from scriptaudit.normalize import normalize_snapshot
from scriptaudit.schedule import parse_crontab, read_crontab
from scriptaudit.schema import RELATION_FILENAMES, RELATIONS, RELATIONS_BY_NAME, SCHEDULE, Connection, Dependency, ProjectMembership, Snapshot
from scriptaudit.signals import SignalExtractor
from scriptaudit.store import LoadReport, SQLiteStore, load_snapshot
from scriptaudit.transport import S3BundleTransport
from scriptaudit.utils import sha256_file
from scriptaudit.validate_basic import validate_basic_artifacts

try:
    from langgraph.graph import END, StateGraph
except Exception as e:  # pragma: no cover
    raise RuntimeError("LangGraph is required. Install 'langgraph'.") from e

logger = logging.getLogger(__name__)

# -----------------------------
# Stages (canonical)
# -----------------------------
STAGE_INIT = "init"
STAGE_PARSE_JOB = "parse_job"
STAGE_EXTRACT_SCHEDULE = "extract_schedule"
STAGE_SCAN_INVENTORY = "scan_inventory"
STAGE_EXTRACT_SIGNALS = "extract_signals"
STAGE_DERIVE_NAMESPACES = "derive_namespaces"
STAGE_NORMALIZE = "normalize"
STAGE_WRITE_FLAT_FILES = "write_flat_files"
STAGE_VALIDATE_BASIC = "validate_basic"
STAGE_LOAD_STORE = "load_store"
STAGE_PACKAGE_BUNDLE = "package_bundle"
STAGE_DOWNLOAD_BUNDLES = "download_bundles"
STAGE_PREPARE_STORE = "prepare_store"
STAGE_UNPACK_BUNDLE = "unpack_bundle"
STAGE_LOAD_BUNDLE = "load_bundle"
STAGE_PURGE_BUNDLE = "purge_bundle"
STAGE_EMIT_RESULT = "emit_result"
STAGE_DONE = "done"
STAGE_DONE_DRY_RUN = "done_dry_run"

# -----------------------------
# Modes
# -----------------------------
MODE_SCHEDULE = "schedule"
MODE_AUDIT = "audit"
MODE_LOAD = "load"
MODE_INGEST = "ingest"
MODE_REBUILD = "rebuild"


class AuditStageError(RuntimeError):
    def __init__(self, stage: str, inner: Exception):
        super().__init__(str(inner))
        self.stage = stage
        self.inner = inner


@dataclass(frozen=True)
class RuntimeConfig:
    dry_run: bool
    aws_region: str | None
    mode: str = MODE_AUDIT
    pack: bool = False
    upload: bool = False


class AuditState(TypedDict, total=False):
    payload: dict[str, Any]
    payload_src: str
    config: RuntimeConfig
    stage: str

    job: AuditJob

    paths: list[str]
    raw_dependencies: list[Dependency]
    raw_connections: list[Connection]
    memberships: list[ProjectMembership]
    snapshot: Snapshot

    local_paths: dict[str, str]
    hashes: dict[str, str]

    load_report: Optional[LoadReport]
    bundle_path: Optional[str]
    s3_uri: Optional[str]
    purged: list[str]

    result: dict[str, Any]


class AggregationState(TypedDict, total=False):
    payload_src: str
    config: RuntimeConfig
    stage: str

    job: AuditJob
    discarded: list[str]

    # bundle queue: collected -> packaged arrive here; each goes unpacked -> loaded -> purged
    pending: list[str]
    current: str
    unpack_dir: str
    unpacked: list[str]
    current_report: Optional[LoadReport]
    outcomes: list[dict[str, Any]]
    # local bundle path -> S3 key, for bundles fetched from the transport
    remote_keys: dict[str, str]

    result: dict[str, Any]


def _parse_job(payload: dict[str, Any]) -> AuditJob:
    job = AuditJob.model_validate(payload).finalize()
    Path(job.output.out_dir).mkdir(parents=True, exist_ok=True)
    return job


# =====================================================================================
# Audit graph (one host): schedule -> scan -> extract -> normalize -> flat files -> load/pack
# =====================================================================================


def node_load_job(state: AuditState) -> AuditState:
    stage = STAGE_PARSE_JOB
    try:
        job = _parse_job(state["payload"])
        cfg = state["config"]

        relations = (SCHEDULE,) if cfg.mode == MODE_SCHEDULE else RELATIONS

        state["stage"] = stage
        state["job"] = job
        state["local_paths"] = snapshot_paths(job.output.out_dir, relations)
        state["snapshot"] = Snapshot()
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_extract_schedule(state: AuditState) -> AuditState:
    stage = STAGE_EXTRACT_SCHEDULE
    try:
        job = state["job"]
        text = read_crontab(job.crontab_file)
        entries = parse_crontab(text, job.host or "", job.filters.script_extensions)

        snapshot = state["snapshot"]
        snapshot.schedules = [e.schedule for e in entries]

        state["stage"] = stage
        state["snapshot"] = snapshot
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_scan_inventory(state: AuditState) -> AuditState:
    stage = STAGE_SCAN_INVENTORY
    try:
        job = state["job"]
        paths = find_scripts(job.root or "", job.filters.patterns)
        state["stage"] = stage
        state["paths"] = paths
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_extract_signals(state: AuditState) -> AuditState:
    stage = STAGE_EXTRACT_SIGNALS
    try:
        job = state["job"]
        extractor = SignalExtractor.from_job(job)
        deps, conns = extractor.extract_all(state["paths"], max_workers=job.limits.max_workers)
        state["stage"] = stage
        state["raw_dependencies"] = deps
        state["raw_connections"] = conns
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_derive_namespaces(state: AuditState) -> AuditState:
    stage = STAGE_DERIVE_NAMESPACES
    try:
        job = state["job"]
        state["stage"] = stage
        state["memberships"] = project_memberships(state["paths"], job.root or "", job.host or "")
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_normalize(state: AuditState) -> AuditState:
    stage = STAGE_NORMALIZE
    try:
        job = state["job"]
        state["snapshot"] = normalize_snapshot(
            locations=script_locations(state["paths"], job.host or ""),
            memberships=state.get("memberships", []),
            dependencies=state.get("raw_dependencies", []),
            connections=state.get("raw_connections", []),
            snapshot=state["snapshot"],
        )
        state["stage"] = stage
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_write_flat_files(state: AuditState) -> AuditState:
    stage = STAGE_WRITE_FLAT_FILES
    try:
        job = state["job"]
        lp = state["local_paths"]
        relations = [RELATIONS_BY_NAME[name] for name in lp]
        write_snapshot(job.output.out_dir, state["snapshot"], relations)
        state["stage"] = stage
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_validate_basic(state: AuditState) -> AuditState:
    stage = STAGE_VALIDATE_BASIC
    try:
        lp = state["local_paths"]
        validate_basic_artifacts(lp)
        state["stage"] = stage
        state["hashes"] = {name: sha256_file(p) for name, p in lp.items()}
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_load_store(state: AuditState) -> AuditState:
    stage = STAGE_LOAD_STORE
    try:
        job = state["job"]
        cfg = state["config"]

        if cfg.dry_run:
            state["stage"] = stage
            state["load_report"] = None
            return state

        with SQLiteStore(job.output.db_path) as store:
            report = load_snapshot(store, state["snapshot"])

        state["stage"] = stage
        state["load_report"] = report
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_package_bundle(state: AuditState) -> AuditState:
    """collected -> packaged; the host's flat files are purged once they live in the bundle."""
    stage = STAGE_PACKAGE_BUNDLE
    try:
        job = state["job"]
        cfg = state["config"]
        lp = state["local_paths"]

        if cfg.upload and job.transport is None:
            raise ValueError("Uploading a bundle requires transport.s3_bucket to be configured.")

        bundle: Bundle = TarBundle()
        bundle_path = bundle.pack(list(lp.values()), job.output.bundle_dir, job.host or "")

        purged: list[str] = []
        s3_uri: Optional[str] = None
        if not cfg.dry_run:
            purged = remove_files(lp.values())
            if cfg.upload and job.transport is not None:
                transport = S3BundleTransport(
                    bucket=job.transport.s3_bucket,
                    prefix=job.transport.s3_prefix,
                    region=cfg.aws_region,
                )
                s3_uri = transport.upload_bundle(bundle_path)

        state["stage"] = stage
        state["bundle_path"] = str(bundle_path)
        state["purged"] = purged
        state["s3_uri"] = s3_uri
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_emit_result(state: AuditState) -> AuditState:
    stage = STAGE_EMIT_RESULT
    try:
        job = state["job"]
        cfg = state["config"]
        snapshot = state["snapshot"]
        report = state.get("load_report")
        lp = state["local_paths"]

        counts = snapshot.counts()
        state["result"] = {
            "ok": report.ok if report is not None else True,
            "stage": STAGE_DONE_DRY_RUN if cfg.dry_run else STAGE_DONE,
            "mode": cfg.mode,
            "host": job.host,
            "root": job.root,
            "timestamp_utc": job.timestamp_utc,
            "job_payload_source": state.get("payload_src", "unknown"),
            "counts": {name: counts[name] for name in lp},
            "artifacts": {
                "flat_files": dict(lp),
                "purged": state.get("purged", []),
                "bundle": state.get("bundle_path"),
                "s3_uri": state.get("s3_uri"),
                "db_path": job.output.db_path if cfg.mode == MODE_LOAD else None,
            },
            "load": report.as_dict() if report is not None else None,
            "hashes": state.get("hashes", {}),
        }
        state["stage"] = stage
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def _route_after_schedule(state: AuditState) -> str:
    return "write_flat_files" if state["config"].mode == MODE_SCHEDULE else "scan_inventory"


def _route_after_validate(state: AuditState) -> str:
    cfg = state["config"]
    if cfg.mode == MODE_LOAD:
        return "load_store"
    return "package_bundle" if cfg.pack else "emit_result"


def _route_after_load(state: AuditState) -> str:
    return "package_bundle" if state["config"].pack else "emit_result"


def build_audit_graph():
    g = StateGraph(AuditState)

    g.add_node("load_job", node_load_job)
    g.add_node("extract_schedule", node_extract_schedule)
    g.add_node("scan_inventory", node_scan_inventory)
    g.add_node("extract_signals", node_extract_signals)
    g.add_node("derive_namespaces", node_derive_namespaces)
    g.add_node("normalize", node_normalize)
    g.add_node("write_flat_files", node_write_flat_files)
    g.add_node("validate_basic", node_validate_basic)
    g.add_node("load_store", node_load_store)
    g.add_node("package_bundle", node_package_bundle)
    g.add_node("emit_result", node_emit_result)

    g.set_entry_point("load_job")
    g.add_edge("load_job", "extract_schedule")
    g.add_conditional_edges(
        "extract_schedule",
        _route_after_schedule,
        {"scan_inventory": "scan_inventory", "write_flat_files": "write_flat_files"},
    )
    g.add_edge("scan_inventory", "extract_signals")
    g.add_edge("extract_signals", "derive_namespaces")
    g.add_edge("derive_namespaces", "normalize")
    g.add_edge("normalize", "write_flat_files")
    g.add_edge("write_flat_files", "validate_basic")
    g.add_conditional_edges(
        "validate_basic",
        _route_after_validate,
        {"load_store": "load_store", "package_bundle": "package_bundle", "emit_result": "emit_result"},
    )
    g.add_conditional_edges(
        "load_store",
        _route_after_load,
        {"package_bundle": "package_bundle", "emit_result": "emit_result"},
    )
    g.add_edge("package_bundle", "emit_result")
    g.add_edge("emit_result", END)

    return g.compile()


def run_audit_graph(
        *,
        payload: dict[str, Any],
        payload_src: str,
        dry_run: bool,
        aws_region: str | None,
        mode: str = MODE_AUDIT,
        pack: bool = False,
        upload: bool = False,
) -> dict[str, Any]:
    app = build_audit_graph()
    state: AuditState = {
        "payload": payload,
        "payload_src": payload_src,
        "config": RuntimeConfig(dry_run=dry_run, aws_region=aws_region, mode=mode, pack=pack, upload=upload),
        "stage": STAGE_INIT,
    }
    final_state = app.invoke(state)
    return final_state["result"]


# =====================================================================================
# Aggregation graph (central host): prepare store -> (unpack -> load -> purge)* -> result
# =====================================================================================


def node_prepare_store(state: AggregationState) -> AggregationState:
    stage = STAGE_PREPARE_STORE
    try:
        job = state["job"]
        cfg = state["config"]

        discarded: list[str] = []
        if not cfg.dry_run:
            if cfg.mode == MODE_REBUILD:
                discarded = SQLiteStore.discard(job.output.db_path)
                logger.info("discarded store %s for rebuild", job.output.db_path)
            # tables exist even when no bundle arrives
            with SQLiteStore(job.output.db_path) as store:
                store.create_schema()

        state["stage"] = stage
        state["discarded"] = discarded
        state["outcomes"] = list(state.get("outcomes", []))
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_next_bundle(state: AggregationState) -> AggregationState:
    pending = list(state.get("pending", []))
    state["current"] = pending.pop(0)
    state["pending"] = pending
    return state


def node_unpack_bundle(state: AggregationState) -> AggregationState:
    stage = STAGE_UNPACK_BUNDLE
    try:
        job = state["job"]
        current = state["current"]

        unpack_dir = Path(job.output.out_dir) / host_from_bundle(current)
        # files left by an earlier failed or dry-run ingest must not leak into this bundle
        stale = remove_files(unpack_dir / name for name in sorted(RELATION_FILENAMES))
        if stale:
            logger.warning("removed %d stale file(s) from %s", len(stale), unpack_dir)
        bundle: Bundle = TarBundle()
        unpacked = bundle.unpack(current, unpack_dir)
        logger.info("unpacked %s (%d file(s))", Path(current).name, len(unpacked))

        state["stage"] = stage
        state["unpack_dir"] = str(unpack_dir)
        state["unpacked"] = [str(p) for p in unpacked]
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_load_bundle(state: AggregationState) -> AggregationState:
    stage = STAGE_LOAD_BUNDLE
    try:
        job = state["job"]
        cfg = state["config"]
        current = state["current"]

        snapshot = read_snapshot(state["unpack_dir"])

        report: Optional[LoadReport] = None
        if not cfg.dry_run:
            with SQLiteStore(job.output.db_path) as store:
                report = load_snapshot(store, snapshot)

        outcomes = list(state.get("outcomes", []))
        outcomes.append(
            {
                "bundle": Path(current).name,
                "host": host_from_bundle(current),
                "counts": snapshot.counts(),
                "load": report.as_dict() if report is not None else None,
                "purged": False,
            }
        )

        state["stage"] = stage
        state["current_report"] = report
        state["outcomes"] = outcomes
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_purge_bundle(state: AggregationState) -> AggregationState:
    """loaded -> purged, only after a clean load; a failed bundle stays in place for another attempt."""
    stage = STAGE_PURGE_BUNDLE
    try:
        job = state["job"]
        cfg = state["config"]
        report = state.get("current_report")

        outcomes = list(state.get("outcomes", []))
        if not cfg.dry_run and report is not None and report.ok:
            remove_files(state.get("unpacked", []))
            unpack_dir = Path(state["unpack_dir"])
            if unpack_dir.is_dir() and not any(unpack_dir.iterdir()):
                unpack_dir.rmdir()
            moved = mark_loaded(state["current"], job.output.bundle_dir)
            key = state.get("remote_keys", {}).get(state["current"])
            if key and job.transport is not None:
                S3BundleTransport(
                    bucket=job.transport.s3_bucket,
                    prefix=job.transport.s3_prefix,
                    region=cfg.aws_region,
                ).delete_bundle(key)
            if outcomes:
                outcomes[-1] = {**outcomes[-1], "purged": True, "archived_as": str(moved), "remote_deleted": key}
        elif report is not None and not report.ok:
            logger.error("bundle %s left in place after load failure", Path(state["current"]).name)

        state["stage"] = stage
        state["outcomes"] = outcomes
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def node_emit_aggregation_result(state: AggregationState) -> AggregationState:
    stage = STAGE_EMIT_RESULT
    try:
        job = state["job"]
        cfg = state["config"]
        outcomes = state.get("outcomes", [])

        ok = all((o.get("load") or {}).get("ok", True) for o in outcomes)
        state["result"] = {
            "ok": ok,
            "stage": STAGE_DONE_DRY_RUN if cfg.dry_run else STAGE_DONE,
            "mode": cfg.mode,
            "db_path": job.output.db_path,
            "bundle_dir": job.output.bundle_dir,
            "job_payload_source": state.get("payload_src", "unknown"),
            "discarded": state.get("discarded", []),
            "bundles": outcomes,
        }
        state["stage"] = stage
        return state
    except Exception as e:
        raise AuditStageError(stage, e) from e


def _route_next_bundle(state: AggregationState) -> str:
    return "next_bundle" if state.get("pending") else "emit_result"


def build_aggregation_graph():
    g = StateGraph(AggregationState)

    g.add_node("prepare_store", node_prepare_store)
    g.add_node("next_bundle", node_next_bundle)
    g.add_node("unpack_bundle", node_unpack_bundle)
    g.add_node("load_bundle", node_load_bundle)
    g.add_node("purge_bundle", node_purge_bundle)
    g.add_node("emit_result", node_emit_aggregation_result)

    g.set_entry_point("prepare_store")
    g.add_conditional_edges(
        "prepare_store",
        _route_next_bundle,
        {"next_bundle": "next_bundle", "emit_result": "emit_result"},
    )
    g.add_edge("next_bundle", "unpack_bundle")
    g.add_edge("unpack_bundle", "load_bundle")
    g.add_edge("load_bundle", "purge_bundle")
    g.add_conditional_edges(
        "purge_bundle",
        _route_next_bundle,
        {"next_bundle": "next_bundle", "emit_result": "emit_result"},
    )
    g.add_edge("emit_result", END)

    return g.compile()


def run_aggregation_graph(
        *,
        payload: dict[str, Any],
        payload_src: str,
        dry_run: bool,
        aws_region: str | None,
        mode: str = MODE_INGEST,
) -> dict[str, Any]:
    """
    ingest: load bundles waiting in bundle_dir, then archive them under loaded/.
    rebuild: discard the store and replay every bundle, archived ones first.
    """
    try:
        job = _parse_job(payload)
    except Exception as e:
        raise AuditStageError(STAGE_PARSE_JOB, e) from e

    remote_keys: dict[str, str] = {}
    if job.transport is not None and not dry_run:
        try:
            remote_keys = S3BundleTransport(
                bucket=job.transport.s3_bucket,
                prefix=job.transport.s3_prefix,
                region=aws_region,
            ).download_bundles(job.output.bundle_dir)
        except Exception as e:
            raise AuditStageError(STAGE_DOWNLOAD_BUNDLES, e) from e

    bundles = discover_bundles(job.output.bundle_dir, include_loaded=(mode == MODE_REBUILD))
    logger.info("%s: %d bundle(s) to replay from %s", mode, len(bundles), job.output.bundle_dir)

    app = build_aggregation_graph()
    state: AggregationState = {
        "payload_src": payload_src,
        "config": RuntimeConfig(dry_run=dry_run, aws_region=aws_region, mode=mode),
        "stage": STAGE_INIT,
        "job": job,
        "pending": [str(b) for b in bundles],
        "outcomes": [],
        "remote_keys": remote_keys,
    }
    # four steps per bundle plus the fixed head and tail
    final_state = app.invoke(state, config={"recursion_limit": 10 + 5 * len(bundles)})
    return final_state["result"]
