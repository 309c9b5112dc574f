"""
Artifact stores for the per-run output files.

Every run owns one output location; nothing here is shared between jails.

Supported Stores:
    - LocalDirectoryStore: files in a run directory, written atomically
    - S3ArtifactStore: local directory plus a copy of each file in S3

Usage:
    store = create_artifact_store(outdir="./f2b_cymru_out", jail="sshd")
    store.write("banned_ips.txt", "1.2.3.4\\n")
    store.write("apply_cmds.sh", script, executable=True)
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an artifact cannot be written to the run directory."""

    pass


class ArtifactStore(ABC):
    """Write-only sink for the files a run produces."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the artifacts (directory or URL)."""
        pass

    @abstractmethod
    def write(self, name: str, content: str, executable: bool = False) -> str:
        """
        Store one artifact, replacing any previous version.

        Args:
            name: File name inside the run directory.
            content: Full text content.
            executable: Mark the file executable (apply scripts).

        Returns:
            str: Path of the written file.

        Raises:
            StorageError: If the file cannot be written.
        """
        pass

    def path(self, name: str) -> str:
        return os.path.join(self.location, name)


class LocalDirectoryStore(ArtifactStore):
    """
    Writes artifacts into a single directory.

    Writes go to a temp file first and are renamed into place, so a reader
    polling for recommendations.txt never sees a half-written file.
    """

    def __init__(self, directory: str):
        self.directory = str(Path(directory).resolve())
        self._ensure_directory()

    @property
    def location(self) -> str:
        return self.directory

    def _ensure_directory(self) -> None:
        try:
            Path(self.directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create output directory {self.directory}: {e}") from e

    def write(self, name: str, content: str, executable: bool = False) -> str:
        target = os.path.join(self.directory, name)
        temp_file = f"{target}.tmp"
        try:
            self._ensure_directory()
            with open(temp_file, "w") as f:
                f.write(content)
            if executable:
                os.chmod(temp_file, 0o755)
            os.replace(temp_file, target)
        except OSError as e:
            logger.error(f"Failed to write {target}: {e}")
            raise StorageError(f"Failed to write {target}: {e}") from e
        logger.debug(f"Wrote {target} ({len(content)} bytes)")
        return target


class S3ArtifactStore(ArtifactStore):
    """
    Local directory store that also mirrors each artifact to S3.

    Objects land under s3://<bucket>/<prefix>/<jail>/<name>. A failed upload
    is logged and does not fail the run; the local copy is authoritative.

    Required IAM Permissions:
        - s3:PutObject
    """

    def __init__(
        self,
        local: LocalDirectoryStore,
        bucket: str,
        prefix: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
    ):
        self.local = local
        self.bucket = bucket
        self.prefix = prefix.strip("/")

        boto_config = Config(
            connect_timeout=10,
            read_timeout=30,
            retries={"max_attempts": 5, "mode": "adaptive"},
        )
        client_kwargs = {"region_name": region, "config": boto_config}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url

        self.s3 = boto3.client("s3", **client_kwargs)

    @property
    def location(self) -> str:
        return self.local.location

    def key_for(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def write(self, name: str, content: str, executable: bool = False) -> str:
        path = self.local.write(name, content, executable=executable)
        key = self.key_for(name)
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content.encode("utf-8"),
                ContentType="text/plain",
            )
            logger.debug(f"Mirrored {name} to s3://{self.bucket}/{key}")
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to mirror {name} to s3://{self.bucket}/{key}: {e}")
        return path


def create_artifact_store(
    outdir: str,
    jail: str = "",
    s3_bucket: Optional[str] = None,
    s3_prefix: str = "f2b-escalate",
    region: str = "us-east-1",
) -> ArtifactStore:
    """
    Factory for the configured artifact store.

    Example:
        # Local only (default)
        store = create_artifact_store("./f2b_cymru_out")

        # Local plus S3 mirror
        store = create_artifact_store(
            "./f2b_eradic_run/sshd", jail="sshd", s3_bucket="my-security-bucket"
        )
    """
    local = LocalDirectoryStore(outdir)
    if not s3_bucket:
        logger.info(f"Writing artifacts to {local.location}")
        return local

    prefix = "/".join(p for p in (s3_prefix.strip("/"), jail) if p)
    logger.info(f"Writing artifacts to {local.location} (mirror: s3://{s3_bucket}/{prefix})")
    return S3ArtifactStore(local, bucket=s3_bucket, prefix=prefix, region=region)
