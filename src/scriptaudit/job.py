# src/scriptaudit/job.py
from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from scriptaudit.utils import short_hostname, utc_ts

DEFAULT_PATTERNS = ["*.js", "*.sh", "*.py", "*.pl", "Makefile"]

# Generated or target-listing files: they name other scripts necessarily.
DEFAULT_SKIP_DEPENDENCY_PATTERNS = ["*.js", "Makefile"]

DEFAULT_SCRIPT_EXTENSIONS = ["pl", "sh", "py", "js"]


def _default_remote_keywords() -> dict[str, list[str]]:
    return {
        "remote_shell": ["ssh", "rsh", "telnet"],
        "file_transfer": ["scp", "sftp", "rsync", "ftp"],
        "database_client": ["mysql", "psql", "sqlplus", "isql"],
        "mail_sender": ["mailx", "sendmail", "mutt"],
    }


class Filters(BaseModel):
    patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_PATTERNS))
    skip_dependency_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_DEPENDENCY_PATTERNS))
    script_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_SCRIPT_EXTENSIONS))
    comment_markers: list[str] = ["#"]

    @field_validator("patterns")
    @classmethod
    def _patterns_not_empty(cls, v: list[str]) -> list[str]:
        v = [p for p in v if p and p.strip()]
        if not v:
            raise ValueError("filters.patterns must name at least one filename pattern")
        return v

    @field_validator("script_extensions")
    @classmethod
    def _strip_dots(cls, v: list[str]) -> list[str]:
        return [e.strip().lstrip(".") for e in v if e and e.strip().lstrip(".")]


class Vocabulary(BaseModel):
    remote_keywords: dict[str, list[str]] = Field(default_factory=_default_remote_keywords)

    def keywords(self) -> list[str]:
        out: set[str] = set()
        for words in self.remote_keywords.values():
            out.update(w.strip() for w in words if w and w.strip())
        return sorted(out)


class Limits(BaseModel):
    max_file_bytes: int = 10 * 1024 * 1024
    max_workers: int = Field(default=1, ge=1)


class Output(BaseModel):
    out_dir: str = "."
    db_path: str = "audit.db"
    bundle_dir: str = "bundles"


class Transport(BaseModel):
    s3_bucket: str
    s3_prefix: str = "scriptaudit"


class AuditJob(BaseModel):
    host: str | None = None
    root: str | None = None
    crontab_file: str | None = None
    filters: Filters = Field(default_factory=Filters)
    vocabulary: Vocabulary = Field(default_factory=Vocabulary)
    limits: Limits = Field(default_factory=Limits)
    output: Output = Field(default_factory=Output)
    transport: Transport | None = None

    # derived at runtime
    timestamp_utc: str | None = None

    def finalize(self) -> "AuditJob":
        """
        Contract:
        - host defaults to the short hostname and is the identity stamped on every row.
        - root is made absolute without resolving symlinks, so namespaces keep the
          path the operator typed.
        """
        self.host = (self.host or "").strip() or short_hostname()
        if "|" in self.host or any(c.isspace() for c in self.host):
            raise ValueError(f"host identifier must not contain '|' or whitespace: {self.host!r}")

        root = os.path.expanduser(self.root) if self.root else str(Path.home())
        self.root = os.path.abspath(root)
        self.timestamp_utc = utc_ts()
        return self
