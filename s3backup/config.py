"""Configuration models and option resolution for the backup tool.

Every tunable value is declared once as an :class:`Option` and resolved by
:class:`ConfigResolver` with the precedence

    command-line flag > environment variable > config file > default

The option tables are plain data, the command-line parser in
``backup_cli.py`` is generated from them.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_SAVE_DIR = "/tmp"
DEFAULT_GOGS_DATA = "/data"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class Option:
    name: str
    flag: str
    env: Optional[str] = None
    default: object = None
    boolean: bool = False
    secret: bool = False
    help: str = ""

    @property
    def key(self) -> str:
        """Key of the option inside the config file."""
        return self.flag.lstrip("-")


# ---------------------------------------------------------------------------
CONFIG_FILE = Option("config", "--config", "CONFIG_FILE", help="YAML file with option defaults.")
SAVE_DIR = Option("save_dir", "--savedir", "SAVE_DIR", DEFAULT_SAVE_DIR, help="Local directory for artifacts.")

GLOBAL_OPTIONS: Tuple[Option, ...] = (CONFIG_FILE, SAVE_DIR)

DATABASE_HOST = Option("database_host", "--database-host", "DATABASE_HOST", help="database host")
DATABASE_PORT = Option("database_port", "--database-port", "DATABASE_PORT", help="database port")
DATABASE_NAME = Option("database_name", "--database-name", "DATABASE_NAME", "", help="database name")
DATABASE_USER = Option("database_user", "--database-user", "DATABASE_USER", help="database user")
DATABASE_PASSWORD = Option(
    "database_password",
    "--database-password",
    "DATABASE_PASSWORD",
    secret=True,
    help="database password, or a path to a file holding it",
)
DATABASE_PASSWORD_FILE = Option(
    "database_password_file", "--database-password-file", "DATABASE_PASSWORD_FILE", help="database password file"
)
DATABASE_OPTIONS = Option(
    "database_options", "--database-options", "DATABASE_OPTIONS", "", help="extra options to pass to the dump tool"
)
DATABASE_COMPRESS = Option(
    "database_compress", "--database-compress", "DATABASE_COMPRESS", False, boolean=True, help="compress sql with gzip"
)
DATABASE_IGNORE_EXIT_CODE = Option(
    "database_ignore_exit_code",
    "--database-ignore-exit-code",
    "DATABASE_IGNORE_EXIT_CODE",
    False,
    boolean=True,
    help="ignore restore process exit code",
)
POSTGRES_CUSTOM = Option(
    "postgres_custom",
    "--postgres-custom",
    "POSTGRES_CUSTOM_FORMAT",
    False,
    boolean=True,
    help="use custom format (always compressed), ignored when database name is not set",
)

DATABASE_OPTIONS_TABLE: Tuple[Option, ...] = (
    DATABASE_HOST,
    DATABASE_PORT,
    DATABASE_NAME,
    DATABASE_USER,
    DATABASE_PASSWORD,
    DATABASE_PASSWORD_FILE,
    DATABASE_OPTIONS,
    DATABASE_COMPRESS,
    DATABASE_IGNORE_EXIT_CODE,
)

GOGS_CONFIG = Option("gogs_config", "--gogs-config", "GOGS_CONFIG", help="gogs config path")
GOGS_DATA = Option("gogs_data", "--gogs-data", "GOGS_DATA", DEFAULT_GOGS_DATA, help="gogs data path")

TARBALL_PATH = Option("tarball_path", "--tarball-path", "TARBALL_PATH_SOURCE", help="path to backup/restore")
TARBALL_NAME = Option("tarball_name", "--tarball-name", "TARBALL_NAME_PREFIX", "", help="backup file prefix")
TARBALL_COMPRESS = Option(
    "tarball_compress", "--tarball-compress", "TARBALL_COMPRESS", False, boolean=True, help="compress tarball with gzip"
)

S3_ENDPOINT = Option("s3_endpoint", "--s3-endpoint", "S3_ENDPOINT", help="object store endpoint url")
S3_REGION = Option("s3_region", "--s3-region", "S3_REGION", help="object store region")
S3_BUCKET = Option("s3_bucket", "--s3-bucket", "S3_BUCKET", help="object store bucket")
S3_ACCESS_KEY = Option("s3_access_key", "--s3-access-key", "S3_ACCESS_KEY", help="object store access key")
S3_SECRET_KEY = Option(
    "s3_secret_key",
    "--s3-secret-key",
    "S3_SECRET_KEY",
    secret=True,
    help="object store secret key, or a path to a file holding it",
)
S3_FORCE_PATH_STYLE = Option(
    "s3_force_path_style",
    "--s3-force-path-style",
    "S3_FORCE_PATH_STYLE",
    False,
    boolean=True,
    help="use path-style addressing (needed by most non-AWS endpoints)",
)
S3_PREFIX = Option("s3_prefix", "--s3-prefix", "S3_PREFIX", "", help="key prefix inside the bucket")

FILESYSTEM_PATH = Option("filesystem_path", "--filesystem-path", "FILESYSTEM_PATH", help="destination directory")

RESTORE_KEY = Option("restore_key", "--key", "RESTORE_KEY", help="artifact to restore (defaults to the newest one)")

SERVICE_OPTIONS: Dict[str, Tuple[Option, ...]] = {
    "mysql": DATABASE_OPTIONS_TABLE,
    "postgres": DATABASE_OPTIONS_TABLE + (POSTGRES_CUSTOM,),
    "gogs": (GOGS_CONFIG, GOGS_DATA),
    "tarball": (TARBALL_PATH, TARBALL_NAME, TARBALL_COMPRESS),
}

STORE_OPTIONS: Dict[str, Tuple[Option, ...]] = {
    "object-store": (
        S3_ENDPOINT,
        S3_REGION,
        S3_BUCKET,
        S3_ACCESS_KEY,
        S3_SECRET_KEY,
        S3_FORCE_PATH_STYLE,
        S3_PREFIX,
    ),
    "filesystem": (FILESYSTEM_PATH,),
}


# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class MySQLConfig:
    host: Optional[str] = None
    port: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    database: str = ""
    options: str = ""
    compress: bool = False
    ignore_exit_code: bool = False
    save_dir: str = DEFAULT_SAVE_DIR


@dataclass(frozen=True)
class PostgresConfig:
    host: Optional[str] = None
    port: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    database: str = ""
    options: str = ""
    compress: bool = False
    custom: bool = False
    ignore_exit_code: bool = False
    save_dir: str = DEFAULT_SAVE_DIR


@dataclass(frozen=True)
class GogsConfig:
    config_path: str
    data_path: str = DEFAULT_GOGS_DATA
    save_dir: str = DEFAULT_SAVE_DIR

    def validate(self) -> None:
        if not self.config_path:
            raise ConfigError("The gogs config path is not set (--gogs-config / GOGS_CONFIG).")
        if not self.data_path:
            raise ConfigError("The gogs data path is not set (--gogs-data / GOGS_DATA).")


@dataclass(frozen=True)
class TarballConfig:
    path: str
    name: str = ""
    compress: bool = False
    save_dir: str = DEFAULT_SAVE_DIR

    def validate(self) -> None:
        if not self.path:
            raise ConfigError("The tarball path is not set (--tarball-path / TARBALL_PATH_SOURCE).")


@dataclass(frozen=True)
class ObjectStoreConfig:
    bucket: str
    endpoint: Optional[str] = None
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = field(default=None, repr=False)
    force_path_style: bool = False
    prefix: str = ""
    save_dir: str = DEFAULT_SAVE_DIR

    def validate(self) -> None:
        if not self.bucket:
            raise ConfigError("The object store bucket is not set (--s3-bucket / S3_BUCKET).")


@dataclass(frozen=True)
class FilesystemConfig:
    path: str
    save_dir: str = DEFAULT_SAVE_DIR

    def validate(self) -> None:
        if not self.path:
            raise ConfigError("The filesystem store path is not set (--filesystem-path / FILESYSTEM_PATH).")


# ---------------------------------------------------------------------------
def parse_bool(value: object, option: Option) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Value '{value}' of option '{option.key}' is not a boolean.")


def read_secret_file(path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read secret file '{path}': {exc}") from exc


def resolve_secret(value: Optional[str]) -> Optional[str]:
    """Apply value-or-file indirection to *value*.

    A value naming an existing path is replaced by the trimmed contents of
    that file, any other value is returned verbatim.
    """

    if not value:
        return value
    try:
        exists = Path(value).exists()
    except (OSError, ValueError):
        exists = False
    if not exists:
        return value
    LOGGER.debug("Reading secret from file '%s'.", value)
    return read_secret_file(value)


def load_config_file(path) -> Dict[str, object]:
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config file '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file '{path}' is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping of options.")
    return {_file_key(key): value for key, value in data.items()}


def _file_key(key) -> str:
    """Config file keys match options regardless of dashes and underscores."""
    return str(key).replace("-", "").replace("_", "")


# ---------------------------------------------------------------------------
class ConfigResolver:
    """Resolve options and build the configuration records.

    Parameters
    ----------
    flags:
        Values given explicitly on the command line, keyed by option name.
        ``None`` means the flag was not given.
    environ:
        Environment mapping, :data:`os.environ` when omitted.
    file_values:
        Mapping loaded from the config file, keyed by option key.
    """

    def __init__(
        self,
        flags: Optional[Mapping[str, object]] = None,
        environ: Optional[Mapping[str, str]] = None,
        file_values: Optional[Mapping[str, object]] = None,
    ) -> None:
        self.flags = dict(flags or {})
        self.environ = os.environ if environ is None else environ
        self.file_values = {_file_key(key): value for key, value in (file_values or {}).items()}

    @classmethod
    def from_sources(
        cls,
        flags: Optional[Mapping[str, object]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ConfigResolver":
        """Build a resolver, loading the config file named by flag or env."""

        resolver = cls(flags, environ)
        config_path = resolver.value(CONFIG_FILE)
        if config_path:
            LOGGER.info("Loading option defaults from '%s'.", config_path)
            resolver.file_values = load_config_file(config_path)
        return resolver

    def _lookup(self, option: Option) -> Tuple[int, object]:
        """Return ``(rank, value)`` where rank 0 is a flag and 3 the default."""

        value = self.flags.get(option.name)
        if value is not None:
            return 0, value
        if option.env:
            value = self.environ.get(option.env)
            if value not in (None, ""):
                return 1, value
        value = self.file_values.get(_file_key(option.key))
        if value is not None:
            return 2, value
        return 3, option.default

    def raw_value(self, option: Option) -> object:
        return self._lookup(option)[1]

    def value(self, option: Option):
        value = self.raw_value(option)
        if option.boolean:
            return parse_bool(value, option)
        if value is None:
            return None
        value = str(value)
        if option.secret:
            value = resolve_secret(value)
        return value

    # ------------------------------------------------------------------
    def save_dir(self) -> str:
        return self.value(SAVE_DIR) or DEFAULT_SAVE_DIR

    def database_password(self) -> Optional[str]:
        """The password file wins unless the password came from a stronger source."""

        file_rank, password_file = self._lookup(DATABASE_PASSWORD_FILE)
        password_rank, _ = self._lookup(DATABASE_PASSWORD)
        if password_file not in (None, "") and file_rank <= password_rank:
            return read_secret_file(str(password_file))
        return self.value(DATABASE_PASSWORD)

    def mysql_config(self) -> MySQLConfig:
        return MySQLConfig(
            host=self.value(DATABASE_HOST),
            port=self.value(DATABASE_PORT),
            user=self.value(DATABASE_USER),
            password=self.database_password(),
            database=self.value(DATABASE_NAME) or "",
            options=self.value(DATABASE_OPTIONS) or "",
            compress=self.value(DATABASE_COMPRESS),
            ignore_exit_code=self.value(DATABASE_IGNORE_EXIT_CODE),
            save_dir=self.save_dir(),
        )

    def postgres_config(self) -> PostgresConfig:
        return PostgresConfig(
            host=self.value(DATABASE_HOST),
            port=self.value(DATABASE_PORT),
            user=self.value(DATABASE_USER),
            password=self.database_password(),
            database=self.value(DATABASE_NAME) or "",
            options=self.value(DATABASE_OPTIONS) or "",
            compress=self.value(DATABASE_COMPRESS),
            custom=self.value(POSTGRES_CUSTOM),
            ignore_exit_code=self.value(DATABASE_IGNORE_EXIT_CODE),
            save_dir=self.save_dir(),
        )

    def gogs_config(self) -> GogsConfig:
        config = GogsConfig(
            config_path=self.value(GOGS_CONFIG) or "",
            data_path=self.value(GOGS_DATA) or "",
            save_dir=self.save_dir(),
        )
        config.validate()
        return config

    def tarball_config(self) -> TarballConfig:
        config = TarballConfig(
            path=self.value(TARBALL_PATH) or "",
            name=self.value(TARBALL_NAME) or "",
            compress=self.value(TARBALL_COMPRESS),
            save_dir=self.save_dir(),
        )
        config.validate()
        return config

    def object_store_config(self) -> ObjectStoreConfig:
        config = ObjectStoreConfig(
            bucket=self.value(S3_BUCKET) or "",
            endpoint=self.value(S3_ENDPOINT),
            region=self.value(S3_REGION),
            access_key=self.value(S3_ACCESS_KEY),
            secret_key=self.value(S3_SECRET_KEY),
            force_path_style=self.value(S3_FORCE_PATH_STYLE),
            prefix=self.value(S3_PREFIX) or "",
            save_dir=self.save_dir(),
        )
        config.validate()
        return config

    def filesystem_config(self) -> FilesystemConfig:
        config = FilesystemConfig(path=self.value(FILESYSTEM_PATH) or "", save_dir=self.save_dir())
        config.validate()
        return config

    def service_config(self, service: str):
        builders = {
            "mysql": self.mysql_config,
            "postgres": self.postgres_config,
            "gogs": self.gogs_config,
            "tarball": self.tarball_config,
        }
        if service not in builders:
            raise ConfigError(f"Unknown service '{service}'.")
        return builders[service]()

    def store_config(self, store: str):
        builders = {
            "object-store": self.object_store_config,
            "filesystem": self.filesystem_config,
        }
        if store not in builders:
            raise ConfigError(f"Unknown store '{store}'.")
        return builders[store]()


__all__ = [
    "ConfigError",
    "ConfigResolver",
    "FilesystemConfig",
    "GLOBAL_OPTIONS",
    "GogsConfig",
    "MySQLConfig",
    "ObjectStoreConfig",
    "Option",
    "PostgresConfig",
    "RESTORE_KEY",
    "SERVICE_OPTIONS",
    "STORE_OPTIONS",
    "TarballConfig",
    "load_config_file",
    "resolve_secret",
]
