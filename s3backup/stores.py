"""Artifact stores: S3-compatible object storage and plain directories."""
from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import List

import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import FilesystemConfig, ObjectStoreConfig
from .utils import ensure_directory, latest_artifact

LOGGER = logging.getLogger(__name__)

TRANSFER_ERRORS = (BotoCoreError, ClientError, Boto3Error)


class StoreTransferError(Exception):
    """Raised when moving an artifact to or from a store fails."""


class StoreBackend:
    """A destination for artifacts."""

    def upload(self, artifact) -> str:
        """Store a local artifact and return its key."""
        raise NotImplementedError

    def fetch(self, key: str) -> str:
        """Bring *key* into the save directory and return the local path."""
        raise NotImplementedError

    def latest(self, prefix: str) -> str:
        """Return the key of the newest artifact named ``<prefix><timestamp><ext>``."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
def build_s3_client(config: ObjectStoreConfig):
    addressing_style = "path" if config.force_path_style else "virtual"
    return boto3.client(
        "s3",
        endpoint_url=config.endpoint or None,
        region_name=config.region or None,
        aws_access_key_id=config.access_key or None,
        aws_secret_access_key=config.secret_key or None,
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": addressing_style}),
    )


class ObjectStore(StoreBackend):
    def __init__(self, config: ObjectStoreConfig, client=None) -> None:
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = build_s3_client(self.config)
            except (TRANSFER_ERRORS + (ValueError,)) as exc:
                raise StoreTransferError(f"Cannot create object store client: {exc}") from exc
        return self._client

    def key_for(self, name: str) -> str:
        prefix = self.config.prefix.strip("/")
        if not prefix or name.startswith(prefix + "/"):
            return name
        return f"{prefix}/{name}"

    def _location(self, key: str) -> str:
        return f"s3://{self.config.bucket}/{key}"

    def upload(self, artifact) -> str:
        path = Path(artifact)
        key = self.key_for(path.name)
        LOGGER.info("Uploading '%s' to '%s'.", path, self._location(key))
        try:
            self.client.upload_file(str(path), self.config.bucket, key)
        except (TRANSFER_ERRORS + (OSError,)) as exc:
            raise StoreTransferError(f"Cannot upload '{path}' to '{self._location(key)}': {exc}") from exc
        LOGGER.info("File '%s' uploaded to '%s'.", path, self._location(key))
        return key

    def fetch(self, key: str) -> str:
        key = self.key_for(key)
        try:
            destination = ensure_directory(Path(self.config.save_dir).expanduser()) / PurePosixPath(key).name
            LOGGER.info("Downloading '%s' to '%s'.", self._location(key), destination)
            self.client.download_file(self.config.bucket, key, str(destination))
        except (TRANSFER_ERRORS + (OSError,)) as exc:
            raise StoreTransferError(f"Cannot download '{self._location(key)}': {exc}") from exc
        return str(destination)

    def latest(self, prefix: str) -> str:
        search = self.key_for(prefix)
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=search):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except TRANSFER_ERRORS as exc:
            raise StoreTransferError(f"Cannot list '{self._location(search)}': {exc}") from exc
        newest = latest_artifact(keys, prefix)
        if newest is None:
            raise StoreTransferError(f"No artifact matching '{self._location(search)}' found.")
        return newest


class FilesystemStore(StoreBackend):
    """Copies artifacts to and from a local directory."""

    def __init__(self, config: FilesystemConfig) -> None:
        self.config = config

    @property
    def directory(self) -> Path:
        return Path(self.config.path).expanduser()

    def upload(self, artifact) -> str:
        source = Path(artifact)
        _copy(source, self.directory)
        LOGGER.info("File '%s' copied to '%s'.", source, self.directory)
        return source.name

    def fetch(self, key: str) -> str:
        source = self.directory / key
        destination = _copy(source, Path(self.config.save_dir).expanduser())
        return str(destination)

    def latest(self, prefix: str) -> str:
        try:
            names = [item.name for item in self.directory.iterdir() if item.is_file() and item.name.startswith(prefix)]
        except OSError as exc:
            raise StoreTransferError(f"Cannot list '{self.directory}': {exc}") from exc
        newest = latest_artifact(names, prefix)
        if newest is None:
            raise StoreTransferError(f"No artifact starting with '{prefix}' found in '{self.directory}'.")
        return newest


def _copy(source: Path, directory: Path) -> Path:
    if not source.is_file():
        raise StoreTransferError(f"Artifact '{source}' not found.")
    try:
        destination = ensure_directory(directory) / source.name
        if destination.exists() and destination.samefile(source):
            LOGGER.debug("'%s' is already in '%s'.", source, directory)
            return destination
        shutil.copy2(source, destination)
    except OSError as exc:
        raise StoreTransferError(f"Cannot copy '{source}' to '{directory}': {exc}") from exc
    return destination


__all__ = [
    "FilesystemStore",
    "ObjectStore",
    "StoreBackend",
    "StoreTransferError",
    "build_s3_client",
]
