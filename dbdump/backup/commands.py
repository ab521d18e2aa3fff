"""
Remote command construction for each database engine.

Commands are built as RemoteCommand values (program, ordered arguments,
environment assignments) and only rendered to a shell string when the
transport sends them. Building a command never executes anything.
"""

import enum
import shlex
from dataclasses import dataclass
from typing import Optional, Tuple

from dbdump.config import BackupConfig, Engine


MYSQL_SYSTEM_SCHEMAS = frozenset({'information_schema', 'performance_schema', 'sys'})
MONGODB_SYSTEM_DATABASES = frozenset({'local', 'config'})

POSTGRES_LIST_QUERY = (
    "SELECT datname FROM pg_database "
    "WHERE datallowconn AND NOT datistemplate ORDER BY datname"
)
MONGODB_LIST_SCRIPT = (
    "db.adminCommand({listDatabases: 1}).databases"
    ".forEach(function (d) { print(d.name); })"
)


class TargetKind(enum.Enum):
    DATABASE = 'database'
    COMBINED = 'combined'
    GLOBALS = 'globals'


@dataclass(frozen=True)
class DatabaseTarget:
    """One dump target. Each target produces exactly one artifact."""

    kind: TargetKind
    name: Optional[str] = None

    @classmethod
    def database(cls, name: str) -> 'DatabaseTarget':
        return cls(TargetKind.DATABASE, name)

    @classmethod
    def combined(cls) -> 'DatabaseTarget':
        return cls(TargetKind.COMBINED)

    @classmethod
    def globals(cls) -> 'DatabaseTarget':
        return cls(TargetKind.GLOBALS)

    @property
    def label(self) -> str:
        if self.kind is TargetKind.DATABASE:
            return self.name
        if self.kind is TargetKind.COMBINED:
            return 'all databases'
        return 'global objects'

    @property
    def stem(self) -> str:
        """File name without extension."""
        if self.kind is TargetKind.DATABASE:
            return self.name
        if self.kind is TargetKind.COMBINED:
            return 'dump'
        return '_globals'

    def filename(self, extension: str) -> str:
        return f"{self.stem}.{extension}"


@dataclass(frozen=True)
class RemoteCommand:
    """A remote command, kept structured until it reaches the transport."""

    engine: Optional[Engine]
    verb: str
    program: str
    args: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()

    def render(self) -> str:
        """Render to a single shell-quoted command line."""
        parts = [f"{key}={shlex.quote(value)}" for key, value in self.env]
        parts.append(shlex.quote(self.program))
        parts.extend(shlex.quote(arg) for arg in self.args)
        return ' '.join(parts)

    def __str__(self) -> str:
        return self.render()


class DumpCommandBuilder:
    """
    Builds the remote dump and listing commands for the configured engine.

    Args:
        config: Run configuration
        credentials_name: Remote file name of the uploaded credential bundle,
            or None when no bundle exists
    """

    def __init__(self, config: BackupConfig, credentials_name: Optional[str] = None):
        self.config = config
        self.engine = config.engine
        self.profile = config.profile
        self.options = config.options
        self.credentials_name = credentials_name

    def dump(self, target: DatabaseTarget) -> RemoteCommand:
        """Command that writes the dump for ``target`` to stdout."""
        if self.engine is Engine.MYSQL:
            return self._mysql_dump(target)
        if self.engine is Engine.POSTGRESQL:
            return self._postgres_dump(target)
        if self.engine is Engine.MONGODB:
            return self._mongodb_dump(target)
        raise ValueError(f"Unsupported engine: {self.engine}")

    def list_databases(self) -> RemoteCommand:
        """Command that prints one database name per line."""
        if self.engine is Engine.MYSQL:
            args = self._mysql_auth_args() + ['-h', self.profile.db_host, '-N', '-B', '-e', 'SHOW DATABASES']
            return RemoteCommand(self.engine, 'list', 'mysql', tuple(args))

        if self.engine is Engine.POSTGRESQL:
            args = self._postgres_conn_args() + ['-At', '-d', 'postgres', '-c', POSTGRES_LIST_QUERY]
            return RemoteCommand(self.engine, 'list', 'psql', tuple(args), self._postgres_env())

        if self.engine is Engine.MONGODB:
            args = ['--quiet', '--host', self.profile.db_host, '--eval', MONGODB_LIST_SCRIPT]
            return RemoteCommand(self.engine, 'list', 'mongosh', tuple(args))

        raise ValueError(f"Unsupported engine: {self.engine}")

    def system_schemas(self) -> frozenset:
        """Database names skipped when system schemas are ignored."""
        if self.engine is Engine.MYSQL:
            return MYSQL_SYSTEM_SCHEMAS
        if self.engine is Engine.MONGODB:
            return MONGODB_SYSTEM_DATABASES
        # Template databases are already excluded by the listing query
        return frozenset()

    def _mysql_auth_args(self) -> list:
        # --defaults-extra-file must come first on the mysql command line
        if self.credentials_name:
            return [f"--defaults-extra-file={self.credentials_name}"]
        if self.profile.db_user:
            return ['-u', self.profile.db_user]
        return []

    def _mysql_dump(self, target: DatabaseTarget) -> RemoteCommand:
        args = self._mysql_auth_args()
        args += ['--single-transaction', '--extended-insert']

        if self.options.max_packet_size:
            args.append(f"--max_allowed_packet={self.options.max_packet_size}")

        args += ['-h', self.profile.db_host]

        if target.kind is TargetKind.COMBINED:
            args.append('--all-databases')
        elif target.kind is TargetKind.DATABASE:
            args.append(target.name)
        else:
            raise ValueError(f"MySQL has no {target.kind.value} dump")

        return RemoteCommand(self.engine, 'dump', 'mysqldump', tuple(args))

    def _postgres_conn_args(self) -> list:
        args = ['-h', self.profile.db_host]
        if self.profile.db_user:
            args += ['-U', self.profile.db_user]
        return args

    def _postgres_env(self) -> Tuple[Tuple[str, str], ...]:
        if self.credentials_name:
            return (('PGPASSFILE', self.credentials_name),)
        return ()

    def _postgres_dump(self, target: DatabaseTarget) -> RemoteCommand:
        env = self._postgres_env()

        if target.kind is TargetKind.COMBINED:
            args = self._postgres_conn_args()
            return RemoteCommand(self.engine, 'dump', 'pg_dumpall', tuple(args), env)

        if target.kind is TargetKind.GLOBALS:
            args = ['--globals-only'] + self._postgres_conn_args()
            return RemoteCommand(self.engine, 'dump_globals', 'pg_dumpall', tuple(args), env)

        args = ['--blobs', '--encoding=UTF8']
        if self.config.uses_custom_format:
            args.append('--format=custom')
        args += self._postgres_conn_args()
        args.append(target.name)
        return RemoteCommand(self.engine, 'dump', 'pg_dump', tuple(args), env)

    def _mongodb_dump(self, target: DatabaseTarget) -> RemoteCommand:
        args = ['--archive', '--host', self.profile.db_host]

        if target.kind is TargetKind.DATABASE:
            args += ['--db', target.name]
        elif target.kind is not TargetKind.COMBINED:
            raise ValueError(f"MongoDB has no {target.kind.value} dump")

        return RemoteCommand(self.engine, 'dump', 'mongodump', tuple(args))


def remove_remote_file(name: str) -> RemoteCommand:
    """Command that deletes a file from the remote home directory."""
    return RemoteCommand(None, 'remove', 'rm', ('-f', name))
