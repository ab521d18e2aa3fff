"""
Dump orchestrator - drives the complete backup run.

Workflow:
1. Upload the credential file (if database credentials are configured)
2. Resolve targets (combined, single database, or list remote databases)
3. For each target: dump -> verify -> compress -> verify compressed
4. Remove the credential file (local and remote)
5. Enforce retention on the backup directory

A failing target is recorded and the run moves on to the next one. A
connection failure (exit code 255) aborts the whole run immediately and
skips the retention sweep.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from dbdump.config import BackupConfig, Engine
from .commands import DatabaseTarget, DumpCommandBuilder, TargetKind
from .credentials import CredentialBundle, CredentialError
from .transport import TransportClient, RemoteConnectionError, CommandError, CONNECTION_FAILURE
from .verification import DumpVerifier, VerificationError
from .compression import CompressionStage, CompressionError
from .retention import RetentionSweeper


logger = logging.getLogger(__name__)

# Exit code for verification/compression failures and pre-flight failures
FAILURE = 1


class TargetState(enum.Enum):
    PENDING = 'pending'
    DUMPED = 'dumped'
    VERIFIED = 'verified'
    COMPRESSED = 'compressed'
    COMPRESS_VERIFIED = 'compress_verified'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class DumpArtifact:
    """A dump file on local disk and what is known about it."""

    path: Path
    engine: Engine
    compressed: bool = False
    verified: bool = False
    compression_verified: bool = False


@dataclass
class TargetOutcome:
    """Result of processing a single target."""

    target: DatabaseTarget
    artifact: DumpArtifact
    state: TargetState = TargetState.PENDING
    exit_code: int = 0
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is TargetState.DONE

    def fail(self, exit_code: int, message: str):
        self.state = TargetState.FAILED
        self.exit_code = exit_code
        self.error_message = message


@dataclass
class RunOutcome:
    """Aggregate result of a backup run."""

    targets: List[TargetOutcome] = field(default_factory=list)
    aborted: bool = False
    preflight_error: Optional[str] = None
    retention: Optional[Dict[str, Any]] = None
    logs: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """0 on success, 255 on connection failure, else the last failing target's code."""
        if self.aborted:
            return CONNECTION_FAILURE
        if self.preflight_error:
            return FAILURE

        code = 0
        for outcome in self.targets:
            if outcome.exit_code:
                code = outcome.exit_code
        return code

    @property
    def failed(self) -> List[TargetOutcome]:
        return [t for t in self.targets if not t.succeeded]


class DumpOrchestrator:
    """
    Orchestrates the complete backup run for one configuration.
    """

    def __init__(self, config: BackupConfig, transport: Optional[TransportClient] = None):
        """
        Initialize dump orchestrator.

        Args:
            config: Run configuration
            transport: Transport to use (defaults to an SSH transport for config.profile)
        """
        self.config = config
        self.transport = transport or TransportClient(config.profile)
        self.verifier = DumpVerifier()
        self.sweeper = RetentionSweeper()
        self.compressor = None
        if config.options.compression is not None:
            self.compressor = CompressionStage(config.options.compression)

        self.builder = None
        self.backup_dir = None
        self.outcome = None

    def execute(self, now: Optional[datetime] = None) -> RunOutcome:
        """
        Execute the backup run.

        Args:
            now: Timestamp used for the backup directory name (defaults to now)

        Returns:
            RunOutcome with per-target results and the aggregate exit code
        """
        self.outcome = RunOutcome()
        self.backup_dir = self._backup_directory(now or datetime.now())

        self._log(
            f"Starting {self.config.engine.value} backup of "
            f"{self.config.profile.ssh_login}@{self.config.profile.ssh_host}"
        )

        try:
            with CredentialBundle(self.config, self.transport) as bundle:
                self.builder = DumpCommandBuilder(self.config, bundle.remote_name)
                self._execute_workflow()

        except RemoteConnectionError as e:
            # Fatal: no further targets, no retention sweep
            self.outcome.aborted = True
            self._log(f"Connection to {e.host} failed: {e.output}", level=logging.ERROR)
            return self.outcome

        except (CredentialError, CommandError) as e:
            self.outcome.preflight_error = str(e)
            self._log(f"Backup aborted before dumping: {e}", level=logging.ERROR)

        finally:
            self.transport.close()

        self._enforce_retention()

        failed = self.outcome.failed
        if failed or self.outcome.preflight_error:
            self._log(
                f"Backup finished with errors ({len(failed)} of {len(self.outcome.targets)} targets failed, "
                f"exit code {self.outcome.exit_code})",
                level=logging.ERROR
            )
        else:
            self._log(f"Backup completed successfully ({len(self.outcome.targets)} targets)")

        return self.outcome

    def _execute_workflow(self):
        """Resolve targets and process them one by one."""
        targets = self._resolve_targets()
        if not targets:
            self._log("No databases to back up", level=logging.WARNING)
            return

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.outcome.preflight_error = f"Cannot create backup directory {self.backup_dir}: {e}"
            self._log(self.outcome.preflight_error, level=logging.ERROR)
            return

        self._log(f"Backup directory: {self.backup_dir}")

        for target in targets:
            self.outcome.targets.append(self._process_target(target))

    def _resolve_targets(self) -> List[DatabaseTarget]:
        """
        Determine what to dump.

        Raises:
            RemoteConnectionError: If listing databases hits a connection failure
            CommandError: If listing databases fails
        """
        options = self.config.options

        if options.combined:
            return [DatabaseTarget.combined()]

        if options.database:
            names = [options.database]
        else:
            names = self._list_databases()

        targets = [DatabaseTarget.database(name) for name in names]

        if self.config.engine is Engine.POSTGRESQL and targets:
            # Roles and tablespaces live outside every single-database dump
            targets.insert(0, DatabaseTarget.globals())

        return targets

    def _list_databases(self) -> List[str]:
        command = self.builder.list_databases()
        self._log("Listing remote databases")
        result = self._run_remote(command)

        if not result.ok:
            raise CommandError(str(command), result.exit_code, result.output)

        names = [line.strip() for line in result.output.splitlines() if line.strip()]

        if self.config.options.ignore_system_schemas:
            skip = self.builder.system_schemas()
            names = [name for name in names if name not in skip]

        self._log(f"Found {len(names)} databases: {', '.join(names)}")
        return names

    def _process_target(self, target: DatabaseTarget) -> TargetOutcome:
        """
        Run one target through dump, verification and compression.

        Raises:
            RemoteConnectionError: On connection failure (aborts the run)
        """
        artifact = DumpArtifact(
            path=self.backup_dir / target.filename(self.config.extension),
            engine=self.config.engine
        )
        outcome = TargetOutcome(target=target, artifact=artifact)

        # PENDING -> DUMPED
        self._log(f"Dumping {target.label} to {artifact.path.name}")
        command = self.builder.dump(target)
        result = self._run_remote(command, artifact.path)

        if not result.ok:
            error = CommandError(str(command), result.exit_code, result.output)
            outcome.fail(result.exit_code, str(error))
            self._log(f"Dump of {target.label} failed: {error}", level=logging.ERROR)
            return outcome

        outcome.state = TargetState.DUMPED

        # DUMPED -> VERIFIED
        try:
            self.verifier.check(
                artifact.path,
                self.config.engine,
                is_combined=target.kind is not TargetKind.DATABASE,
                is_compressed=self.config.options.compression is not None
            )
        except VerificationError as e:
            # The artifact stays on disk for inspection
            outcome.fail(FAILURE, str(e))
            self._log(f"Verification of {target.label} failed: {e}", level=logging.ERROR)
            return outcome

        artifact.verified = True
        outcome.state = TargetState.VERIFIED

        # VERIFIED -> COMPRESSED -> COMPRESS_VERIFIED
        if self._should_compress(target):
            self._log(f"Compressing {artifact.path.name} ({self.compressor.algorithm.value})")
            try:
                self.compressor.apply(artifact)
            except CompressionError as e:
                outcome.fail(FAILURE, str(e))
                self._log(
                    f"Compression of {target.label} failed, keeping uncompressed dump: {e}",
                    level=logging.ERROR
                )
                return outcome
            outcome.state = TargetState.COMPRESS_VERIFIED

        outcome.state = TargetState.DONE
        self._log(f"Backup of {target.label} completed: {artifact.path.name}")
        return outcome

    def _should_compress(self, target: DatabaseTarget) -> bool:
        if self.compressor is None:
            return False
        # pg_dump's custom format is already compressed
        if self.config.uses_custom_format and target.kind is TargetKind.DATABASE:
            return False
        return True

    def _run_remote(self, command, output_file: Optional[Path] = None):
        """
        Run a remote command, turning connection failures into an exception.

        Raises:
            RemoteConnectionError: If the transport reports exit code 255
        """
        result = self.transport.run(command, output_file)
        if result.connection_failed:
            raise RemoteConnectionError(self.transport.host, result.output)
        return result

    def _enforce_retention(self):
        """Run the retention sweep. Failures are logged, never fatal."""
        retention = self.config.retention
        # The dated directory written by this run is never swept
        current = retention.base_dir / self.backup_dir.relative_to(retention.base_dir).parts[0]
        self.outcome.retention = self.sweeper.sweep(retention.base_dir, retention.days, keep=[current])
        for error in self.outcome.retention['errors']:
            self._log(f"Retention: {error}", level=logging.WARNING)

    def _backup_directory(self, now: datetime) -> Path:
        """{base}/{YYYY-MM-DD}[/{HH:MM}]"""
        directory = self.config.retention.base_dir / now.strftime('%Y-%m-%d')
        if self.config.retention.time_subdir:
            directory = directory / now.strftime('%H:%M')
        return directory

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.outcome.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(config: BackupConfig) -> RunOutcome:
    """
    Execute a backup run for a configuration.

    Args:
        config: Run configuration

    Returns:
        RunOutcome with per-target results and the aggregate exit code
    """
    orchestrator = DumpOrchestrator(config)
    return orchestrator.execute()
