# src/scriptaudit/bundle.py
"""
AuditBundle: a host-named package carrying exactly one snapshot's flat
relation files. The archive format is an implementation detail behind the
Bundle protocol; the aggregation workflow only packs and unpacks.
"""
from __future__ import annotations

import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import Protocol, Sequence

from scriptaudit.schema import RELATION_FILENAMES

logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".audit.tar.gz"
LOADED_DIRNAME = "loaded"


def bundle_name(host: str) -> str:
    return f"{host}{BUNDLE_SUFFIX}"


def host_from_bundle(path: str | Path) -> str:
    name = Path(path).name
    if not name.endswith(BUNDLE_SUFFIX):
        raise ValueError(f"Not an audit bundle: {name}")
    return name[: -len(BUNDLE_SUFFIX)]


class Bundle(Protocol):
    def pack(self, files: Sequence[str | Path], dest_dir: str | Path, host: str) -> Path: ...

    def unpack(self, artifact: str | Path, dest_dir: str | Path) -> list[Path]: ...


class TarBundle:
    def pack(self, files: Sequence[str | Path], dest_dir: str | Path, host: str) -> Path:
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / bundle_name(host)
        tmp = target.with_name(target.name + ".tmp")

        with tarfile.open(tmp, "w:gz") as tar:
            for f in files:
                p = Path(f)
                if p.name not in RELATION_FILENAMES:
                    raise ValueError(f"Refusing to bundle non-relation file: {p}")
                tar.add(str(p), arcname=p.name)

        os.replace(tmp, target)
        logger.info("packaged %d file(s) into %s", len(files), target)
        return target

    def unpack(self, artifact: str | Path, dest_dir: str | Path) -> list[Path]:
        """Extract only known relation files, flat; anything else in the archive is ignored."""
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        out: list[Path] = []

        with tarfile.open(artifact, "r:*") as tar:
            for member in tar.getmembers():
                if not member.isfile() or member.name not in RELATION_FILENAMES:
                    logger.debug("ignoring bundle member %s", member.name)
                    continue
                src = tar.extractfile(member)
                if src is None:
                    continue
                target = dest / member.name
                with src, target.open("wb") as fh:
                    shutil.copyfileobj(src, fh)
                out.append(target)

        return sorted(out)


def discover_bundles(bundle_dir: str | Path, *, include_loaded: bool = False) -> list[Path]:
    """
    Bundles waiting in bundle_dir, by name. With include_loaded, already
    consumed bundles come first so a newer incoming bundle for the same host
    is replayed after its predecessor.
    """
    root = Path(bundle_dir)
    dirs = [root / LOADED_DIRNAME, root] if include_loaded else [root]
    found: list[Path] = []
    for d in dirs:
        if not d.is_dir():
            continue
        found.extend(sorted(p for p in d.iterdir() if p.is_file() and p.name.endswith(BUNDLE_SUFFIX)))
    return found


def mark_loaded(artifact: str | Path, bundle_dir: str | Path) -> Path:
    """Move a consumed bundle aside so an incremental ingest never loads it twice."""
    loaded_dir = Path(bundle_dir) / LOADED_DIRNAME
    loaded_dir.mkdir(parents=True, exist_ok=True)
    target = loaded_dir / Path(artifact).name
    if Path(artifact).resolve() != target.resolve():
        os.replace(artifact, target)
    return target
