"""Backup services: database dumps and directory archives."""
from __future__ import annotations

import gzip
import logging
import os
import shlex
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
import zlib
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .config import ConfigError, GogsConfig, MySQLConfig, PostgresConfig, TarballConfig
from .utils import artifact_extension, artifact_name, ensure_directory, is_gzip_artifact, mask_sensitive

LOGGER = logging.getLogger(__name__)

ALL_DATABASES = "all-databases"
POSTGRES_MAINTENANCE_DB = "postgres"
GOGS_CONFIG_ENTRY = "config"
GOGS_DATA_ENTRY = "data"

Clock = Callable[[], datetime]


class ExternalToolError(Exception):
    """Raised when a dump or restore utility fails."""

    def __init__(self, message: str, command: str = "", returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class ArchiveError(Exception):
    """Raised when an archive cannot be created or unpacked."""


# ---------------------------------------------------------------------------
def _tool_env(extra: Dict[str, Optional[str]]) -> Dict[str, str]:
    env = os.environ.copy()
    env.update({key: value for key, value in extra.items() if value})
    return env


def _read_stderr(handle) -> str:
    handle.seek(0)
    return handle.read().decode("utf-8", errors="replace").strip()


def _split_options(options: str) -> List[str]:
    try:
        return shlex.split(options or "")
    except ValueError as exc:
        raise ConfigError(f"Cannot parse extra database options '{options}': {exc}") from exc


def dump_to_file(
    command: Sequence[str],
    artifact: Path,
    *,
    compress: bool = False,
    env: Optional[Dict[str, str]] = None,
    secrets: Sequence[Optional[str]] = (),
) -> None:
    """Run *command* and stream its stdout into *artifact*.

    With *compress* the output is gzip-encoded on the fly. A failed dump
    leaves the partial artifact on disk.
    """

    display = mask_sensitive(shlex.join(command), secrets)
    LOGGER.info("Running dump command: %s", display)
    opener = gzip.open if compress else open
    with tempfile.TemporaryFile() as stderr, opener(artifact, "wb") as output:
        try:
            process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr, env=env)
        except OSError as exc:
            raise ExternalToolError(f"Cannot run '{command[0]}': {exc}", command=display) from exc
        try:
            with process.stdout:
                shutil.copyfileobj(process.stdout, output)
        except OSError as exc:
            process.kill()
            process.wait()
            raise ExternalToolError(f"Cannot write dump to '{artifact}': {exc}", command=display) from exc
        returncode = process.wait()
        errors = mask_sensitive(_read_stderr(stderr), secrets)

    if errors:
        LOGGER.warning("STDERR: %s", errors)
    if returncode != 0:
        raise ExternalToolError(
            f"Backup to '{artifact}' failed: '{display}' exited with code {returncode}: {errors}",
            command=display,
            returncode=returncode,
            stderr=errors,
        )


def restore_from_file(
    command: Sequence[str],
    artifact,
    *,
    ignore_exit_code: bool = False,
    env: Optional[Dict[str, str]] = None,
    secrets: Sequence[Optional[str]] = (),
) -> None:
    """Feed *artifact* into the stdin of *command*.

    Artifacts ending in ``.gz`` are decompressed while streaming. With
    *ignore_exit_code* a non-zero exit of the restore tool is only logged.
    """

    display = mask_sensitive(shlex.join(command), secrets)
    opener = gzip.open if is_gzip_artifact(artifact) else open
    try:
        source = opener(artifact, "rb")
    except OSError as exc:
        raise ArchiveError(f"Cannot open artifact '{artifact}': {exc}") from exc

    LOGGER.info("Restoring '%s' with: %s", artifact, display)
    with source, tempfile.TemporaryFile() as stderr:
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                env=env,
                bufsize=0,
            )
        except OSError as exc:
            raise ExternalToolError(f"Cannot run '{command[0]}': {exc}", command=display) from exc
        try:
            shutil.copyfileobj(source, process.stdin)
        except BrokenPipeError:
            # the exit code below tells whether this was an error
            LOGGER.debug("'%s' closed its input before the whole artifact was sent.", command[0])
        except (EOFError, gzip.BadGzipFile, zlib.error) as exc:
            process.kill()
            process.wait()
            raise ArchiveError(f"Artifact '{artifact}' is corrupt: {exc}") from exc
        except OSError as exc:
            process.kill()
            process.wait()
            raise ArchiveError(f"Cannot stream artifact '{artifact}' into '{command[0]}': {exc}") from exc
        finally:
            process.stdin.close()
        returncode = process.wait()
        errors = mask_sensitive(_read_stderr(stderr), secrets)

    if errors:
        LOGGER.warning("STDERR: %s", errors)
    if returncode == 0:
        return
    if ignore_exit_code:
        LOGGER.warning("Restore command '%s' exited with code %s, ignoring.", display, returncode)
        return
    raise ExternalToolError(
        f"Restore of '{artifact}' failed: '{display}' exited with code {returncode}: {errors}",
        command=display,
        returncode=returncode,
        stderr=errors,
    )


# ---------------------------------------------------------------------------
class ServiceBackend:
    """A source of backups.

    ``backup()`` writes a new artifact into the save directory and returns
    its path; ``restore()`` loads an artifact back into the service.
    """

    def __init__(self, config, clock: Clock = datetime.now) -> None:
        self.config = config
        self.clock = clock

    @property
    def name(self) -> str:
        """Logical name used as the artifact prefix."""
        raise NotImplementedError

    def backup(self) -> str:
        raise NotImplementedError

    def restore(self, artifact) -> None:
        raise NotImplementedError

    def _artifact_path(self, extension: str, compressed: bool = False) -> Path:
        save_dir = ensure_directory(Path(self.config.save_dir).expanduser())
        return save_dir / artifact_name(self.name, self.clock(), extension, compressed)


class MySQLService(ServiceBackend):
    dump_tool = "mysqldump"
    restore_tool = "mysql"

    config: MySQLConfig

    @property
    def name(self) -> str:
        return self.config.database or ALL_DATABASES

    def _connection_args(self) -> List[str]:
        args: List[str] = []
        if self.config.host:
            args += ["--host", self.config.host]
        if self.config.port:
            args += ["--port", self.config.port]
        if self.config.user:
            args += ["--user", self.config.user]
        return args

    def _env(self) -> Dict[str, str]:
        return _tool_env({"MYSQL_PWD": self.config.password})

    def backup(self) -> str:
        command = [self.dump_tool] + self._connection_args() + _split_options(self.config.options)
        command += [self.config.database] if self.config.database else ["--all-databases"]
        artifact = self._artifact_path(".sql", self.config.compress)
        dump_to_file(command, artifact, compress=self.config.compress, env=self._env(), secrets=[self.config.password])
        LOGGER.info("MySQL database '%s' saved to '%s'.", self.name, artifact)
        return str(artifact)

    def restore(self, artifact) -> None:
        command = [self.restore_tool] + self._connection_args()
        if self.config.database:
            command.append(self.config.database)
        restore_from_file(
            command,
            artifact,
            ignore_exit_code=self.config.ignore_exit_code,
            env=self._env(),
            secrets=[self.config.password],
        )
        LOGGER.info("MySQL database '%s' restored from '%s'.", self.name, artifact)


class PostgresService(ServiceBackend):
    dump_tool = "pg_dump"
    dump_all_tool = "pg_dumpall"
    restore_tool = "psql"
    custom_restore_tool = "pg_restore"
    custom_extension = ".dump"

    config: PostgresConfig

    @property
    def name(self) -> str:
        return self.config.database or ALL_DATABASES

    @property
    def custom_format(self) -> bool:
        # pg_dumpall has no custom format
        return self.config.custom and bool(self.config.database)

    def _connection_args(self) -> List[str]:
        args: List[str] = []
        if self.config.host:
            args += ["--host", self.config.host]
        if self.config.port:
            args += ["--port", self.config.port]
        if self.config.user:
            args += ["--username", self.config.user]
        return args

    def _env(self) -> Dict[str, str]:
        return _tool_env({"PGPASSWORD": self.config.password})

    def backup(self) -> str:
        options = _split_options(self.config.options)
        if self.config.database:
            command = [self.dump_tool] + self._connection_args()
            if self.custom_format:
                command.append("--format=custom")
            command += options + [self.config.database]
        else:
            command = [self.dump_all_tool] + self._connection_args() + options

        if self.custom_format:
            artifact = self._artifact_path(self.custom_extension)
            compress = False
        else:
            artifact = self._artifact_path(".sql", self.config.compress)
            compress = self.config.compress
        dump_to_file(command, artifact, compress=compress, env=self._env(), secrets=[self.config.password])
        LOGGER.info("Postgres database '%s' saved to '%s'.", self.name, artifact)
        return str(artifact)

    def restore(self, artifact) -> None:
        tool = self.custom_restore_tool if artifact_extension(artifact) == self.custom_extension else self.restore_tool
        command = [tool] + self._connection_args() + ["--dbname", self.config.database or POSTGRES_MAINTENANCE_DB]
        restore_from_file(
            command,
            artifact,
            ignore_exit_code=self.config.ignore_exit_code,
            env=self._env(),
            secrets=[self.config.password],
        )
        LOGGER.info("Postgres database '%s' restored from '%s'.", self.name, artifact)


class GogsService(ServiceBackend):
    """Zip of the Gogs config file and its data directory."""

    config: GogsConfig

    @property
    def name(self) -> str:
        return "gogs"

    def backup(self) -> str:
        config_file = Path(self.config.config_path).expanduser()
        data_dir = Path(self.config.data_path).expanduser()
        if not config_file.is_file():
            raise ArchiveError(f"Gogs config file '{config_file}' not found.")
        if not data_dir.is_dir():
            raise ArchiveError(f"Gogs data directory '{data_dir}' not found.")

        artifact = self._artifact_path(".zip")
        LOGGER.info("Archiving gogs config '%s' and data '%s'.", config_file, data_dir)
        try:
            with zipfile.ZipFile(artifact, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.write(config_file, arcname=f"{GOGS_CONFIG_ENTRY}/{config_file.name}")
                archive.writestr(zipfile.ZipInfo(GOGS_DATA_ENTRY + "/"), "")
                for path in sorted(data_dir.rglob("*")):
                    if path == artifact:
                        continue
                    arcname = f"{GOGS_DATA_ENTRY}/{path.relative_to(data_dir).as_posix()}"
                    if path.is_dir():
                        archive.writestr(zipfile.ZipInfo(arcname + "/"), "")
                        continue
                    archive.write(path, arcname=arcname)
        except OSError as exc:
            raise ArchiveError(f"Cannot create gogs archive '{artifact}': {exc}") from exc
        return str(artifact)

    def restore(self, artifact) -> None:
        config_file = Path(self.config.config_path).expanduser()
        data_dir = Path(self.config.data_path).expanduser()
        try:
            with zipfile.ZipFile(artifact) as archive, tempfile.TemporaryDirectory(prefix="gogs_restore_") as tmp:
                archive.extractall(tmp)
                configs = [item for item in (Path(tmp) / GOGS_CONFIG_ENTRY).glob("*") if item.is_file()]
                if len(configs) != 1:
                    raise ArchiveError(f"Archive '{artifact}' does not hold exactly one gogs config file.")
                ensure_directory(config_file.parent)
                shutil.copy2(configs[0], config_file)
                data_source = Path(tmp) / GOGS_DATA_ENTRY
                if data_source.is_dir():
                    shutil.copytree(data_source, data_dir, dirs_exist_ok=True)
        except zipfile.BadZipFile as exc:
            raise ArchiveError(f"Archive '{artifact}' is not a valid zip file: {exc}") from exc
        except OSError as exc:
            raise ArchiveError(f"Cannot restore gogs from '{artifact}': {exc}") from exc
        LOGGER.info("Gogs restored from '%s'.", artifact)


class TarballService(ServiceBackend):
    """Tar archive of an arbitrary directory."""

    config: TarballConfig

    @property
    def name(self) -> str:
        return self.config.name or Path(self.config.path).name or "tarball"

    def backup(self) -> str:
        source = Path(self.config.path).expanduser()
        if not source.is_dir():
            raise ArchiveError(f"Source directory '{source}' not found.")

        artifact = self._artifact_path(".tar", self.config.compress)
        mode = "w:gz" if self.config.compress else "w"
        LOGGER.info("Archiving '%s' into '%s'.", source, artifact)
        try:
            with tarfile.open(artifact, mode) as archive:
                for path in sorted(source.rglob("*")):
                    if path == artifact:
                        continue
                    archive.add(str(path), arcname=path.relative_to(source).as_posix(), recursive=False)
        except (OSError, tarfile.TarError) as exc:
            raise ArchiveError(f"Cannot create tarball on '{artifact}': {exc}") from exc
        return str(artifact)

    def restore(self, artifact) -> None:
        target = Path(self.config.path).expanduser()
        mode = "r:gz" if is_gzip_artifact(artifact) else "r:"
        LOGGER.info("Unpacking '%s' into '%s'.", artifact, target)
        try:
            ensure_directory(target)
            with tarfile.open(artifact, mode) as archive:
                members = _checked_members(archive, target)
                if hasattr(tarfile, "data_filter"):
                    archive.extractall(target, members=members, filter="data")
                else:
                    archive.extractall(target, members=members)
        except (OSError, EOFError, zlib.error, tarfile.TarError) as exc:
            raise ArchiveError(f"Cannot unpack tarball '{artifact}' into '{target}': {exc}") from exc


def _checked_members(archive: tarfile.TarFile, target: Path) -> List[tarfile.TarInfo]:
    root = target.resolve()
    members = archive.getmembers()
    for member in members:
        destination = (root / member.name).resolve()
        if member.name.startswith("/") or (destination != root and root not in destination.parents):
            raise ArchiveError(f"Archive member '{member.name}' points outside of '{target}'.")
    return members


__all__ = [
    "ArchiveError",
    "ExternalToolError",
    "GogsService",
    "MySQLService",
    "PostgresService",
    "ServiceBackend",
    "TarballService",
    "dump_to_file",
    "restore_from_file",
]
