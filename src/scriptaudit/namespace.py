# src/scriptaudit/namespace.py
"""
Project grouping by directory.

A script at /home/user/a/b/foo.sh scanned from /home/user belongs to
project 'a/b'; that separates a/b/foo.sh from c/a/foo.sh without any
textual evidence linking them.
"""
from __future__ import annotations

import os
from typing import Iterable

from scriptaudit.schema import ProjectMembership

ROOT_NAMESPACE = "."


def relative_namespace(path: str, root: str) -> str:
    directory = os.path.dirname(os.path.abspath(path))
    root_abs = os.path.abspath(root)
    rel = os.path.relpath(directory, root_abs)
    if rel == os.curdir:
        return ROOT_NAMESPACE
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        # outside the scan root: keep the directory as-is
        return directory.replace(os.sep, "/")
    return rel.replace(os.sep, "/")


def qualified_namespace(path: str, root: str, host: str) -> str:
    """Containing directory with the root prefix replaced by the host: 'H|proj/a/b'."""
    return f"{host}|{relative_namespace(path, root)}"


def project_memberships(paths: Iterable[str], root: str, host: str) -> list[ProjectMembership]:
    return [ProjectMembership(host, os.path.basename(p), relative_namespace(p, root)) for p in paths]
