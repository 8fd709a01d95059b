# src/scriptaudit/schedule.py
"""
Job-table (crontab) parsing.

Example rows for host ilsdev1:
    ilsdev1|load_cma_stats.sh|45|23|*|*|*
    ilsdev1|load_discards.sh|30|08|*|*|1,2,3,4,5
Time fields are kept verbatim, so a two-digit hour stays two-digit.
"""
from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from scriptaudit.job import DEFAULT_SCRIPT_EXTENSIONS
from scriptaudit.schema import Schedule

logger = logging.getLogger(__name__)

COMMENT_MARKER = "#"

CRON_SPECIALS: dict[str, tuple[str, str, str, str, str]] = {
    "@yearly": ("0", "0", "1", "1", "*"),
    "@annually": ("0", "0", "1", "1", "*"),
    "@monthly": ("0", "0", "1", "*", "*"),
    "@weekly": ("0", "0", "*", "*", "0"),
    "@daily": ("0", "0", "*", "*", "*"),
    "@midnight": ("0", "0", "*", "*", "*"),
    "@hourly": ("0", "*", "*", "*", "*"),
}

SOURCE_DIRECTIVES = frozenset({".", "source"})
NON_SCRIPT_COMMANDS = frozenset({"cd"})

# SHELL=/bin/bash, PATH=..., MAILTO=...
_DIRECTIVE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*=")
_ENV_ASSIGN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_TIME_FIELD_RE = re.compile(r"^[0-9A-Za-z*/,\-]+$")
_SEGMENT_SPLIT_RE = re.compile(r"&&|\|\||;|\|")


@dataclass(frozen=True)
class CronEntry:
    schedule: Schedule
    command: str


def read_crontab(crontab_file: str | None = None) -> str:
    if crontab_file:
        return Path(crontab_file).read_text(encoding="utf-8", errors="replace")

    try:
        p = subprocess.run(["crontab", "-l"], capture_output=True, text=True)
    except FileNotFoundError:
        logger.warning("crontab is not available on this host; no schedules collected")
        return ""

    if p.returncode != 0:
        # "no crontab for <user>" also lands here
        logger.warning("crontab -l exited %d: %s", p.returncode, p.stderr.strip())
        return ""
    return p.stdout


def is_directive(line: str) -> bool:
    s = line.strip()
    return not s or s.startswith(COMMENT_MARKER) or bool(_DIRECTIVE_RE.match(s))


def _free_text(tokens: Sequence[str], host: str) -> list[str]:
    out: list[str] = []
    for t in tokens:
        if t.startswith(COMMENT_MARKER):
            break
        if t == host:
            continue
        out.append(t)
    return out


def _basename(word: str) -> str:
    return word.strip("'\"").rstrip(";").rsplit("/", 1)[-1]


def script_from_command(command: str, extensions: Sequence[str] = DEFAULT_SCRIPT_EXTENSIONS) -> str | None:
    """
    The first command word carrying a script extension wins; failing that, the
    first word of the first segment that is not a source directive or a cd.
    """
    exts = [re.escape(e) for e in extensions if e]
    ext_re = re.compile(rf"\.(?:{'|'.join(exts)})$") if exts else None

    fallback: str | None = None
    for segment in _SEGMENT_SPLIT_RE.split(command):
        words = [w for w in segment.split() if not _ENV_ASSIGN_RE.match(w)]
        if not words or words[0] in SOURCE_DIRECTIVES:
            continue

        if ext_re is not None:
            for w in words:
                name = _basename(w)
                if ext_re.search(name):
                    return name

        if fallback is None and words[0] not in NON_SCRIPT_COMMANDS:
            fallback = _basename(words[0]) or None

    return fallback


def parse_crontab_line(
        line: str,
        host: str,
        extensions: Sequence[str] = DEFAULT_SCRIPT_EXTENSIONS,
) -> CronEntry | None:
    if is_directive(line):
        return None

    tokens = line.split()
    head = tokens[0]
    if head.startswith("@"):
        fields = CRON_SPECIALS.get(head.lower())
        if fields is None:
            # @reboot carries no time fields
            return None
        rest = tokens[1:]
    else:
        if len(tokens) < 6:
            return None
        fields = (tokens[0], tokens[1], tokens[2], tokens[3], tokens[4])
        if not all(_TIME_FIELD_RE.match(f) for f in fields):
            return None
        rest = tokens[5:]

    command = " ".join(_free_text(rest, host))
    script = script_from_command(command, extensions)
    if not script:
        return None
    return CronEntry(Schedule(host, script, *fields), command)


def parse_crontab(
        text: str,
        host: str,
        extensions: Sequence[str] = DEFAULT_SCRIPT_EXTENSIONS,
) -> list[CronEntry]:
    entries: list[CronEntry] = []
    for line in text.splitlines():
        entry = parse_crontab_line(line, host, extensions)
        if entry is not None:
            entries.append(entry)
    logger.info("parsed %d scheduled job(s) for %s", len(entries), host)
    return entries
