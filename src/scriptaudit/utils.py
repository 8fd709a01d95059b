# src/scriptaudit/utils.py
from __future__ import annotations

import hashlib
import socket
from datetime import datetime, timezone
from pathlib import Path


def utc_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def sha256_file(path: str | Path) -> str:
    return sha256_bytes(Path(path).read_bytes())


def is_probably_binary(data: bytes, *, sample_size: int = 8192, min_utf8_ratio: float = 0.85) -> bool:
    """A script is skipped as binary when its head holds a NUL or is mostly not UTF-8."""
    if not data:
        return False

    sample = data[:sample_size]

    if b"\x00" in sample:
        return True

    try:
        sample.decode("utf-8")
        return False
    except UnicodeDecodeError:
        pass

    # share of the head that survives a lossy decode
    decoded = sample.decode("utf-8", errors="ignore")
    preserved = len(decoded.encode("utf-8"))
    ratio = preserved / max(1, len(sample))
    return ratio < min_utf8_ratio


def short_hostname() -> str:
    # "ilsdev1.example.org" -> "ilsdev1"
    name = socket.gethostname() or "localhost"
    return name.split(".", 1)[0] or "localhost"

