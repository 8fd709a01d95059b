# src/scriptaudit/cli.py
from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import questionary

from . import __version__
from . import main as main_module

logger = logging.getLogger(__name__)

JOB_ENV_VAR = "SCRIPTAUDIT_JOB_JSON"

STAGE_PARSE_JOB = "parse_job"
STAGE_CONFIRM = "confirm"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_EMPTY_INVENTORY = 3
EXIT_LOAD_FAILED = 4
EXIT_DECLINED = 5


class DestructiveActionDeclined(RuntimeError):
    pass


def _strip_wrapping_quotes(v: str) -> str:
    v = v.strip()
    if len(v) >= 2 and ((v[0] == v[-1] == '"') or (v[0] == v[-1] == "'")):
        return v[1:-1]
    return v


def _parse_dotenv_line(line: str) -> tuple[str, str] | None:
    """KEY=VALUE, optionally exported or quoted; a quoted value ends at its closing quote, values are not expanded."""
    s = line.strip()
    if not s or s.startswith("#"):
        return None

    if s.startswith("export "):
        s = s[len("export "):].lstrip()
        if not s:
            return None

    if "=" not in s:
        return None

    key, rest = s.split("=", 1)
    key = key.strip()
    if not key:
        return None

    val = rest.strip()
    if not val:
        return key, ""

    if val[0] in ("'", '"'):
        quote = val[0]
        out = []
        escaped = False
        i = 1
        while i < len(val):
            ch = val[i]
            if escaped:
                out.append(ch)
                escaped = False
            elif quote == '"' and ch == "\\":
                escaped = True
            elif ch == quote:
                break
            else:
                out.append(ch)
            i += 1
        return key, "".join(out)

    value = val.split("#", 1)[0]
    return key, _strip_wrapping_quotes(value)


def _load_dotenv_file(path: str, *, override: bool = False) -> bool:
    """Job settings may live in a .env next to the crontab; False when there is no such file."""
    p = Path(path)
    if not p.exists() or not p.is_file():
        return False

    for raw_line in p.read_text(encoding="utf-8").splitlines():
        parsed = _parse_dotenv_line(raw_line)
        if not parsed:
            continue
        k, v = parsed
        if not override and k in os.environ:
            continue
        os.environ[k] = v
    return True


def _read_job_payload(payload_src_hint: str | None) -> tuple[dict[str, Any], str]:
    """
    The job payload is optional: without SCRIPTAUDIT_JOB_JSON every setting
    takes its default and CLI flags fill in the rest.

    Returns: (payload_dict, payload_src_string)
    """
    raw = os.environ.get(JOB_ENV_VAR)
    if not raw or not raw.strip():
        return {}, "defaults"

    payload = json.loads(raw)

    if not isinstance(payload, dict):
        raise TypeError(f"{JOB_ENV_VAR} must decode to a JSON object (dict).")

    src = payload_src_hint or f"env:{JOB_ENV_VAR}"
    return payload, src


def _apply_flags(payload: dict[str, Any], args: argparse.Namespace) -> dict[str, Any]:
    """CLI flags take precedence over the env payload."""
    out = copy.deepcopy(payload)

    for attr in ("host", "root", "crontab_file"):
        v = getattr(args, attr, None)
        if v is not None:
            out[attr] = v

    output = dict(out.get("output") or {})
    for attr, key in (("out_dir", "out_dir"), ("db", "db_path"), ("bundle_dir", "bundle_dir")):
        v = getattr(args, attr, None)
        if v is not None:
            output[key] = v
    if output:
        out["output"] = output

    if getattr(args, "workers", None) is not None:
        limits = dict(out.get("limits") or {})
        limits["max_workers"] = args.workers
        out["limits"] = limits

    if getattr(args, "s3_bucket", None) is not None or getattr(args, "s3_prefix", None) is not None:
        transport = dict(out.get("transport") or {})
        if args.s3_bucket is not None:
            transport["s3_bucket"] = args.s3_bucket
        if args.s3_prefix is not None:
            transport["s3_prefix"] = args.s3_prefix
        out["transport"] = transport

    return out


def _print_success(obj: dict[str, Any]) -> None:
    print(json.dumps(obj, separators=(",", ":")), file=sys.stdout)


def _print_failure(stage: str, err: Exception) -> None:
    out = {
        "ok": False,
        "stage": stage,
        "error_code": f"SCRIPTAUDIT_FAILED_{stage.upper()}",
        "error_message": str(err),
    }
    print(json.dumps(out, separators=(",", ":")), file=sys.stdout)


def _confirm(message: str) -> bool:
    # No terminal to ask on: treat as a decline.
    if not sys.stdin.isatty():
        return False
    return bool(questionary.confirm(message, default=False).ask())


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--host", help="Host identifier stamped on every row (default: short hostname).")
    common.add_argument("--root", help="Scan root (default: home directory).")
    common.add_argument(
        "--crontab-file",
        dest="crontab_file",
        metavar="PATH",
        help="Read the job table from this file instead of 'crontab -l'.",
    )
    common.add_argument("--out-dir", dest="out_dir", metavar="DIR", help="Where flat relation files are written.")
    common.add_argument("--db", dest="db", metavar="PATH", help="SQLite store path.")
    common.add_argument("--bundle-dir", dest="bundle_dir", metavar="DIR", help="Where bundles are written and found.")
    common.add_argument("--workers", type=int, metavar="N", help="Extraction threads.")
    common.add_argument("--s3-bucket", dest="s3_bucket", metavar="BUCKET", help="Optional S3 bucket for bundles.")
    common.add_argument("--s3-prefix", dest="s3_prefix", metavar="PREFIX", help="Key prefix under the bucket.")
    common.add_argument(
        "--aws-region",
        dest="aws_region",
        metavar="REGION",
        help="Optional AWS region override (otherwise AWS_REGION/AWS_DEFAULT_REGION are used).",
    )
    return common


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="scriptaudit",
        description="Script inventory, dependency and schedule audit",
    )
    parser.add_argument(
        "--dotenv",
        nargs="?",
        const=".env",
        default=None,
        metavar="PATH",
        help="Optional: load env vars from a local .env file (default: ./.env).",
    )
    parser.add_argument(
        "--dotenv-override",
        action="store_true",
        help="Optional: allow .env values to override already-set environment variables.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run in dry-run mode (no store writes, uploads or purges).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr.")
    parser.add_argument(
        "--version",
        action="version",
        version=f"scriptaudit {__version__}",
    )

    common = _common_options()
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("cron", parents=[common], help="Collect the job table into the Schedule file.")

    p_audit = sub.add_parser("audit", parents=[common], help="Snapshot this host into flat relation files.")
    p_audit.add_argument("--pack", action="store_true", help="Package the flat files into a host bundle.")
    p_audit.add_argument("--upload", action="store_true", help="Also upload the bundle to S3 (implies --pack).")

    p_load = sub.add_parser("load", parents=[common], help="Snapshot this host and load it into the store.")
    p_load.add_argument("--pack", action="store_true", help="Package the flat files into a host bundle.")

    sub.add_parser("ingest", parents=[common], help="Load every waiting bundle into the store.")

    p_rebuild = sub.add_parser("rebuild", parents=[common], help="Discard the store and replay every bundle.")
    p_rebuild.add_argument("--yes", action="store_true", help="Do not ask before discarding the store.")

    sub.add_parser("schema", parents=[common], help="Create the tables if needed and print their DDL.")

    return parser.parse_args(argv)


def _dispatch(args: argparse.Namespace, payload: dict[str, Any], payload_src: str, dry_run: bool) -> dict[str, Any]:
    cmd = args.command

    if cmd == "schema":
        return main_module.schema(payload, dry_run=dry_run)

    if cmd in ("ingest", "rebuild"):
        rebuild = cmd == "rebuild"
        if rebuild and not dry_run and not args.yes:
            db = (payload.get("output") or {}).get("db_path", "audit.db")
            if not _confirm(f"Discard {db} and replay every bundle?"):
                raise DestructiveActionDeclined(f"rebuild of {db} not confirmed")
        return main_module.aggregate(
            payload,
            dry_run=dry_run,
            payload_src=payload_src,
            aws_region=args.aws_region,
            rebuild=rebuild,
        )

    mode = {"cron": "schedule", "audit": "audit", "load": "load"}[cmd]
    upload = bool(getattr(args, "upload", False))
    return main_module.run(
        job_payload=payload,
        dry_run=dry_run,
        payload_src=payload_src,
        aws_region=args.aws_region,
        mode=mode,
        pack=bool(getattr(args, "pack", False)) or upload,
        upload=upload,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _setup_logging(bool(args.verbose))

    dry_run = bool(args.dry_run)

    payload_src_hint: str | None = None
    had_payload_before = bool(os.environ.get(JOB_ENV_VAR, "").strip())

    if args.dotenv:
        loaded = _load_dotenv_file(str(args.dotenv), override=bool(args.dotenv_override))
        if loaded and not had_payload_before and bool(os.environ.get(JOB_ENV_VAR, "").strip()):
            payload_src_hint = f"dotenv:{args.dotenv}#{JOB_ENV_VAR}"

    from scriptaudit.graph import AuditStageError
    from scriptaudit.inventory import EmptyInventoryError

    try:
        payload, payload_src = _read_job_payload(payload_src_hint)
        payload = _apply_flags(payload, args)

        result = _dispatch(args, payload, payload_src, dry_run)
        _print_success(result)
        return EXIT_OK if result.get("ok", True) else EXIT_LOAD_FAILED

    except DestructiveActionDeclined as e:
        logger.warning("%s", e)
        _print_failure(STAGE_CONFIRM, e)
        return EXIT_DECLINED

    except AuditStageError as e:
        if isinstance(e.inner, EmptyInventoryError):
            logger.error("%s", e.inner)
            _print_failure(e.stage, e)
            return EXIT_EMPTY_INVENTORY
        logger.error("stage %s failed: %s", e.stage, e)
        _print_failure(e.stage, e)
        return EXIT_FAILED

    except Exception as e:  # noqa: BLE001 - top-level CLI error handler
        # Payload / argument issues are parse_job
        if isinstance(e, (json.JSONDecodeError, ValueError, TypeError)):
            _print_failure(STAGE_PARSE_JOB, e)
            return EXIT_FAILED

        _print_failure("unknown", e)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
