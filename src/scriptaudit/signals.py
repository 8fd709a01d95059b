# src/scriptaudit/signals.py
from __future__ import annotations

import ipaddress
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, Iterator, Sequence

from scriptaudit.job import AuditJob
from scriptaudit.schema import Connection, Dependency
from scriptaudit.utils import is_probably_binary

logger = logging.getLogger(__name__)

KIND_DEPENDENCY = "dependency"
KIND_CONNECTION = "connection"

# Recorded when a remote-access keyword has no address on its line.
LOCALHOST = "localhost"

# -----------------------------
# Address shapes
# -----------------------------
# local@domain with optional sub-domains; a trailing sentence dot is not part of the domain.
EMAIL_PATTERN = r"[\w.+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*"
URL_PATTERN = r"\bhttps?://[^\s'\"<>|`]+"
IPV4_PATTERN = r"(?<![\w.])(?:\d{1,3}\.){3}\d{1,3}(?!\w|\.\d)"

EMAIL_RE = re.compile(EMAIL_PATTERN)
URL_RE = re.compile(URL_PATTERN)
IPV4_RE = re.compile(IPV4_PATTERN)

ADDRESS_RE = re.compile(rf"(?P<url>{URL_PATTERN})|(?P<email>{EMAIL_PATTERN})|(?P<ipv4>{IPV4_PATTERN})")

_URL_TRAILING = ".,;:)]}"


@dataclass(frozen=True)
class Signal:
    kind: str
    rule: str
    value: str


@dataclass(frozen=True)
class SignalRule:
    """One independent matcher: a compiled pattern plus how to turn a match into a value."""

    name: str
    kind: str
    pattern: re.Pattern[str]
    resolve: Callable[[re.Match[str]], str | None]

    def scan(self, text: str) -> Iterator[Signal]:
        for m in self.pattern.finditer(text):
            value = self.resolve(m)
            if value:
                yield Signal(self.kind, self.name, value)


def _clean_url(url: str) -> str:
    return url.rstrip(_URL_TRAILING)


def _valid_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def _first_address(text: str) -> str | None:
    for m in ADDRESS_RE.finditer(text):
        if m.group("url"):
            return _clean_url(m.group("url"))
        if m.group("email"):
            return m.group("email")
        ip = m.group("ipv4")
        if ip and _valid_ipv4(ip):
            return ip
    return None


def _rest_of_line(text: str, start: int) -> str:
    end = text.find("\n", start)
    return text[start:] if end == -1 else text[start:end]


def _resolve_keyword(m: re.Match[str]) -> str:
    return _first_address(_rest_of_line(m.string, m.end())) or LOCALHOST


def dependency_rule(extensions: Sequence[str]) -> SignalRule:
    """
    Two-or-more word characters not preceded by a word character, a dot, a
    script extension, then whitespace. Purely syntactic: string literals,
    arguments and real invocations all match alike.
    """
    exts = sorted({re.escape(e) for e in extensions if e}, key=lambda e: (-len(e), e))
    if not exts:
        raise ValueError("dependency_rule needs at least one script extension")
    pattern = re.compile(rf"(?<!\w)(\w{{2,}}\.(?:{'|'.join(exts)}))(?=\s)")
    return SignalRule("script_reference", KIND_DEPENDENCY, pattern, lambda m: m.group(1))


def connection_rules(keywords: Sequence[str]) -> list[SignalRule]:
    rules = [
        SignalRule("email", KIND_CONNECTION, EMAIL_RE, lambda m: m.group(0)),
        SignalRule("url", KIND_CONNECTION, URL_RE, lambda m: _clean_url(m.group(0))),
        SignalRule(
            "ipv4",
            KIND_CONNECTION,
            IPV4_RE,
            lambda m: m.group(0) if _valid_ipv4(m.group(0)) else None,
        ),
    ]
    words = sorted({re.escape(k) for k in keywords if k}, key=lambda k: (-len(k), k))
    if words:
        kw_re = re.compile(rf"\b(?:{'|'.join(words)})\b")
        rules.append(SignalRule("remote_keyword", KIND_CONNECTION, kw_re, _resolve_keyword))
    return rules


def strip_comment_lines(text: str, markers: Sequence[str] = ("#",)) -> str:
    """Drop lines whose first non-whitespace character starts a comment; keep line endings."""
    prefixes = tuple(m for m in markers if m)
    if not prefixes:
        return text
    return "".join(line for line in text.splitlines(keepends=True) if not line.lstrip().startswith(prefixes))


def _read_text(path: str, max_bytes: int) -> str | None:
    try:
        size = os.stat(path).st_size
        if size > max_bytes:
            logger.debug("skipping %s: %d bytes exceeds limit", path, size)
            return None
        raw = Path(path).read_bytes()
    except OSError as e:
        # dangling links, permissions
        logger.debug("skipping unreadable %s: %s", path, e)
        return None

    if is_probably_binary(raw):
        logger.debug("skipping binary %s", path)
        return None
    return raw.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class SignalExtractor:
    host: str
    dependency_rules: tuple[SignalRule, ...]
    connection_rules: tuple[SignalRule, ...]
    skip_dependency_patterns: tuple[str, ...] = ()
    comment_markers: tuple[str, ...] = ("#",)
    max_file_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_job(cls, job: AuditJob) -> "SignalExtractor":
        if not job.host:
            raise ValueError("AuditJob must be finalized before extraction (host is unset)")
        return cls(
            host=job.host,
            dependency_rules=(dependency_rule(job.filters.script_extensions),),
            connection_rules=tuple(connection_rules(job.vocabulary.keywords())),
            skip_dependency_patterns=tuple(job.filters.skip_dependency_patterns),
            comment_markers=tuple(job.filters.comment_markers),
            max_file_bytes=job.limits.max_file_bytes,
        )

    def skips_dependencies(self, script_name: str) -> bool:
        return any(fnmatchcase(script_name, pat) for pat in self.skip_dependency_patterns)

    def extract_text(self, script_name: str, text: str) -> tuple[list[Dependency], list[Connection]]:
        body = strip_comment_lines(text, self.comment_markers)

        deps: list[Dependency] = []
        if self.skips_dependencies(script_name):
            logger.debug("skipping dependency extraction for %s", script_name)
        else:
            for rule in self.dependency_rules:
                deps.extend(Dependency(self.host, script_name, s.value) for s in rule.scan(body))

        conns: list[Connection] = []
        for rule in self.connection_rules:
            conns.extend(Connection(self.host, script_name, s.value) for s in rule.scan(body))

        return deps, conns

    def extract_file(self, path: str) -> tuple[list[Dependency], list[Connection]]:
        text = _read_text(path, self.max_file_bytes)
        if text is None:
            return [], []
        logger.debug("analysing %s", path)
        return self.extract_text(os.path.basename(path), text)

    def extract_all(
            self,
            paths: Sequence[str],
            *,
            max_workers: int = 1,
    ) -> tuple[list[Dependency], list[Connection]]:
        """
        Raw (undeduplicated) streams for every path. Files are independent, so
        they may be read on a thread pool; nothing is returned until all are done.
        """
        if max_workers > 1 and len(paths) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                results = list(executor.map(self.extract_file, paths))
        else:
            results = [self.extract_file(p) for p in paths]

        deps: list[Dependency] = []
        conns: list[Connection] = []
        for d, c in results:
            deps.extend(d)
            conns.extend(c)

        logger.info(
            "extracted %d dependency and %d connection signal(s) from %d file(s)",
            len(deps),
            len(conns),
            len(paths),
        )
        return deps, conns
