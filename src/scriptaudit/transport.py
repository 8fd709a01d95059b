# src/scriptaudit/transport.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import boto3

from scriptaudit.bundle import BUNDLE_SUFFIX

logger = logging.getLogger(__name__)


@dataclass
class S3BundleTransport:
    """Ships bundles between audited hosts and the central host through one S3 prefix."""

    bucket: str
    prefix: str
    region: str | None = None

    def __post_init__(self):
        # region may be None; boto3 will use env/config
        self.s3 = boto3.client("s3", region_name=self.region)

    def _key(self, rel_key: str) -> str:
        rel_key = rel_key.lstrip("/")
        return f"{self.prefix.rstrip('/')}/{rel_key}"

    def upload_bundle(self, path: str | Path) -> str:
        p = Path(path)
        key = self._key(p.name)
        extra = {"ServerSideEncryption": "AES256", "ContentType": "application/gzip"}
        self.s3.upload_file(str(p), self.bucket, key, ExtraArgs=extra)
        logger.info("uploaded %s to s3://%s/%s", p.name, self.bucket, key)
        return f"s3://{self.bucket}/{key}"

    def list_bundle_keys(self) -> list[str]:
        keys: list[str] = []
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix.rstrip("/") + "/"):
            for obj in page.get("Contents", []) or []:
                key = obj.get("Key", "")
                if key.endswith(BUNDLE_SUFFIX):
                    keys.append(key)
        return sorted(keys)

    def download_bundles(self, dest_dir: str | Path) -> dict[str, str]:
        """Fetch every bundle under the prefix; returns local path -> object key."""
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        out: dict[str, str] = {}
        for key in self.list_bundle_keys():
            target = dest / key.rsplit("/", 1)[-1]
            self.s3.download_file(self.bucket, key, str(target))
            out[str(target)] = key
        logger.info("downloaded %d bundle(s) from s3://%s/%s", len(out), self.bucket, self.prefix)
        return out

    def delete_bundle(self, key: str) -> None:
        # a consumed bundle leaves the prefix so the next ingest does not fetch it again
        self.s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info("removed consumed s3://%s/%s", self.bucket, key)
