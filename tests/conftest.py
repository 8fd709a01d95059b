from pathlib import Path

import boto3
import pytest
from moto import mock_aws

BUCKET = "audit-bundles"

LOAD_SH = """#!/bin/sh
# run old_job.sh first
helper.pl --fast
./load.sh again
ssh 10.0.0.5 uptime
echo done
"""

HELPER_PL = """use strict;
my $to = 'ops@example.com';
system("report.py --daily");
"""

APP_JS = """fetch('http://api.example.com/v1/items');
run('build.sh ');
"""

MAKEFILE = "all:\n\tdeploy.sh --now\n"

CRONTAB = """SHELL=/bin/bash
MAILTO=ops@example.com
# nightly loads
45 23 * * * /home/ilsdev/bin/load_cma_stats.sh >/dev/null 2>&1
30 08 * * 1,2,3,4,5 . ~/.bashrc; cd /s/sirsi; load_discards.sh ilsdev1 # weekday
@reboot /home/ilsdev/bin/startup.sh
@daily /usr/bin/find /tmp -mtime +7 -delete
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def script_tree(tmp_path: Path) -> Path:
    """
    home/
      Makefile
      proj/a/b/load.sh, helper.pl
      proj/c/a/load.sh
      proj/web/app.js
    plus hidden and non-matching files that must never be inventoried.
    """
    root = tmp_path / "home"
    _write(root / "Makefile", MAKEFILE)
    _write(root / "proj" / "a" / "b" / "load.sh", LOAD_SH)
    _write(root / "proj" / "a" / "b" / "helper.pl", HELPER_PL)
    _write(root / "proj" / "c" / "a" / "load.sh", "echo hi\n")
    _write(root / "proj" / "web" / "app.js", APP_JS)

    _write(root / ".git" / "hooks" / "pre-commit.sh", "lint.sh \n")
    _write(root / ".hidden.sh", "secret.sh \n")
    _write(root / "proj" / "notes.txt", "see load.sh \n")
    return root


@pytest.fixture
def crontab_file(tmp_path: Path) -> Path:
    return _write(tmp_path / "crontab.txt", CRONTAB)


@pytest.fixture
def aws(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket=BUCKET)
        yield
