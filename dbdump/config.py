"""
Run configuration for dbdump.

A BackupConfig is built once at startup (by the CLI) and passed by reference
into every component. Nothing below reads the process environment; defaults
coming from DBDUMP_* variables are resolved by the CLI layer.
"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class ConfigurationError(Exception):
    """Raised when the run configuration is invalid or incomplete."""
    pass


class Engine(enum.Enum):
    """Supported database engines."""

    MYSQL = 'mysql'
    POSTGRESQL = 'postgresql'
    MONGODB = 'mongodb'


class Compression(enum.Enum):
    """Local compression algorithms. Value is the appended file extension."""

    BZIP2 = 'bz2'
    XZ = 'xz'


@dataclass(frozen=True)
class ConnectionProfile:
    """Where to connect and as whom."""

    ssh_host: str
    ssh_login: str
    identity_file: Path
    ssh_port: int = 22
    db_host: str = 'localhost'
    db_user: Optional[str] = None
    db_password: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        """True when both a database user and password were supplied."""
        return bool(self.db_user) and bool(self.db_password)


@dataclass(frozen=True)
class DumpOptions:
    """What to dump and how."""

    combined: bool = False
    database: Optional[str] = None
    ignore_system_schemas: bool = True
    max_packet_size: Optional[str] = None
    compression: Optional[Compression] = None


@dataclass(frozen=True)
class RetentionPolicy:
    """Where backups live and how long they are kept."""

    base_dir: Path
    days: int = 30
    time_subdir: bool = False


@dataclass(frozen=True)
class BackupConfig:
    """Complete, immutable configuration for one backup run."""

    engine: Engine
    profile: ConnectionProfile
    options: DumpOptions
    retention: RetentionPolicy

    @property
    def uses_custom_format(self) -> bool:
        """PostgreSQL per-database dumps switch to pg_dump's compressed archive format."""
        return (
            self.engine is Engine.POSTGRESQL
            and self.options.compression is not None
            and not self.options.combined
        )

    @property
    def extension(self) -> str:
        """Artifact file extension for this engine/compression combination."""
        if self.engine is Engine.MONGODB:
            return 'archive'
        if self.engine is Engine.POSTGRESQL and self.options.compression is not None:
            return 'dump'
        return 'sql'


def _parse_int(value, name: str, minimum: int = 0) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got: {value!r}")

    if number < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {number}")

    return number


def build_config(
    engine: str,
    ssh_host: Optional[str],
    ssh_login: Optional[str],
    identity_file: Optional[str],
    backup_dir: Optional[str],
    ssh_port=None,
    db_host: Optional[str] = None,
    db_user: Optional[str] = None,
    db_password: Optional[str] = None,
    retention_days='30',
    time_subdir: bool = False,
    bzip2: bool = False,
    xz: bool = False,
    combined: bool = False,
    database: Optional[str] = None,
    ignore_system_schemas: bool = True,
    max_packet_size: Optional[str] = None,
) -> BackupConfig:
    """
    Validate raw option values and build a BackupConfig.

    Args:
        engine: Engine name ('mysql', 'postgresql', 'mongodb')
        ssh_host: Remote SSH host
        ssh_login: Remote SSH login
        identity_file: Path to the private key used for SSH authentication
        backup_dir: Local base directory for backups
        ssh_port: Remote SSH port (default 22)
        db_host: Database host as seen from the remote host
        db_user: Optional database user
        db_password: Optional database password
        retention_days: Age threshold in days for the retention sweep
        time_subdir: Add an HH:MM subdirectory below the date directory
        bzip2: Compress artifacts with bzip2
        xz: Compress artifacts with xz
        combined: Dump all databases into a single artifact
        database: Dump only this database
        ignore_system_schemas: Skip engine system schemas when listing databases
        max_packet_size: mysqldump max_allowed_packet override

    Returns:
        Validated BackupConfig

    Raises:
        ConfigurationError: If any setting is missing or invalid
    """
    try:
        engine_value = Engine(str(engine).lower())
    except ValueError:
        valid = [e.value for e in Engine]
        raise ConfigurationError(f"Invalid engine: {engine}. Valid options: {valid}")

    if not ssh_host:
        raise ConfigurationError("Remote SSH host is required")
    if not ssh_login:
        raise ConfigurationError("Remote SSH login is required")
    if not identity_file:
        raise ConfigurationError("SSH identity file is required")

    identity_path = Path(identity_file).expanduser()
    if not identity_path.is_file():
        raise ConfigurationError(f"SSH identity file not found: {identity_file}")

    if not backup_dir:
        raise ConfigurationError("Backup directory is required")

    base_dir = Path(backup_dir).expanduser()
    if base_dir.exists() and not base_dir.is_dir():
        raise ConfigurationError(f"Backup directory is not a directory: {backup_dir}")

    if bzip2 and xz:
        raise ConfigurationError("Choose at most one compression algorithm (bzip2 or xz)")

    if combined and database:
        raise ConfigurationError("A single database cannot be selected together with a combined dump")

    if db_password and not db_user:
        raise ConfigurationError("A database password requires a database user")

    port = 22 if ssh_port in (None, '') else _parse_int(ssh_port, 'SSH port', minimum=1)
    days = _parse_int(retention_days, 'Retention days')

    compression = None
    if bzip2:
        compression = Compression.BZIP2
    elif xz:
        compression = Compression.XZ

    profile = ConnectionProfile(
        ssh_host=ssh_host,
        ssh_login=ssh_login,
        identity_file=identity_path,
        ssh_port=port,
        db_host=db_host or 'localhost',
        db_user=db_user or None,
        db_password=db_password or None,
    )

    options = DumpOptions(
        combined=combined,
        database=database or None,
        ignore_system_schemas=ignore_system_schemas,
        max_packet_size=max_packet_size or None,
        compression=compression,
    )

    retention = RetentionPolicy(
        base_dir=base_dir,
        days=days,
        time_subdir=time_subdir,
    )

    return BackupConfig(
        engine=engine_value,
        profile=profile,
        options=options,
        retention=retention,
    )
