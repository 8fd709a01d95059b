# src/scriptaudit/inventory.py
from __future__ import annotations

import logging
import os
from fnmatch import fnmatchcase
from typing import Iterable, Sequence

from scriptaudit.schema import ScriptLocation

logger = logging.getLogger(__name__)


class EmptyInventoryError(RuntimeError):
    """No file under the root matched any pattern; nothing downstream can run."""

    def __init__(self, root: str, patterns: Sequence[str]):
        self.root = root
        self.patterns = list(patterns)
        searched = ", ".join(f"'{p}'" for p in self.patterns)
        super().__init__(f"no scripts found in {root} with the following patterns: {searched}")


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def find_scripts(root: str, patterns: Sequence[str]) -> list[str]:
    """
    Absolute paths under root whose final segment matches one of patterns.

    Hidden directories are pruned during the walk and hidden files are
    skipped, so .git, .svn, .npm and friends never contribute. Matching is
    case-sensitive, like find -name.
    """
    root_abs = os.path.abspath(root)
    found: set[str] = set()

    for dirpath, dirs, filenames in os.walk(root_abs):
        dirs[:] = sorted(d for d in dirs if not _is_hidden(d))
        for fn in sorted(filenames):
            if _is_hidden(fn):
                continue
            if any(fnmatchcase(fn, pat) for pat in patterns):
                found.add(os.path.join(dirpath, fn))

    if not found:
        raise EmptyInventoryError(root_abs, patterns)

    logger.info("found %d script(s) under %s", len(found), root_abs)
    return sorted(found)


def script_locations(paths: Iterable[str], host: str) -> list[ScriptLocation]:
    return [ScriptLocation(host, os.path.basename(p), p) for p in paths]
