"""
Dump completeness checks.

Every dump tool ends a complete stream with a known trailer. A dump that was
cut short (network drop, killed process, full disk) lacks it, so checking the
trailer is what separates a usable backup from a silently truncated one.

- mysqldump:   last line is "-- Dump completed[ on <timestamp>]"
- pg_dump:     third-from-last line is "-- PostgreSQL database dump complete"
- pg_dumpall:  third-from-last line is "-- PostgreSQL database cluster dump complete"
- mongodump --archive: stream ends with the terminator ff ff ff ff
"""

import os
import logging
from pathlib import Path
from typing import List, Union

from dbdump.config import Engine


logger = logging.getLogger(__name__)

MYSQL_MARKER = '-- Dump completed'
POSTGRES_DATABASE_MARKER = '-- PostgreSQL database dump complete'
POSTGRES_CLUSTER_MARKER = '-- PostgreSQL database cluster dump complete'
MONGODB_TERMINATOR = b'\xff\xff\xff\xff'

TAIL_BYTES = 64 * 1024


class VerificationError(Exception):
    """Raised when a dump artifact lacks its completion marker."""
    pass


def tail_lines(path: Union[str, Path], count: int) -> List[str]:
    """
    Return up to the last ``count`` lines of a text file.

    Lines are counted like ``tail -n``: a single trailing newline ends the
    last line rather than starting an empty one. Only the end of the file is
    read, so this is cheap for multi-gigabyte dumps.
    """
    size = os.path.getsize(path)
    with open(path, 'rb') as f:
        f.seek(max(0, size - TAIL_BYTES))
        data = f.read()

    if not data:
        return []

    if data.endswith(b'\n'):
        data = data[:-1]

    lines = data.split(b'\n')
    # The first line may be partial when the read started mid-file
    if size > TAIL_BYTES and len(lines) > count:
        lines = lines[1:]

    return [line.decode('utf-8', errors='replace').rstrip('\r') for line in lines[-count:]]


def tail_bytes(path: Union[str, Path], count: int) -> bytes:
    """Return the last ``count`` bytes of a file (fewer if the file is shorter)."""
    size = os.path.getsize(path)
    with open(path, 'rb') as f:
        f.seek(max(0, size - count))
        return f.read()


class DumpVerifier:
    """Checks that a dump artifact ends with its engine's completion marker."""

    def verify(
        self,
        artifact_path: Union[str, Path],
        engine: Engine,
        is_combined: bool = False,
        is_compressed: bool = False,
    ) -> bool:
        """
        Check a dump artifact.

        Args:
            artifact_path: Path to the dump file
            engine: Engine that produced the dump
            is_combined: True for cluster-wide dumps (all databases or globals)
            is_compressed: True when compression was requested for the run

        Returns:
            True if the completion marker is present
        """
        try:
            self.check(artifact_path, engine, is_combined, is_compressed)
            return True
        except VerificationError as e:
            logger.debug(str(e))
            return False

    def check(
        self,
        artifact_path: Union[str, Path],
        engine: Engine,
        is_combined: bool = False,
        is_compressed: bool = False,
    ):
        """
        Same as verify() but raises with a diagnostic instead of returning False.

        Raises:
            VerificationError: If the artifact is missing or incomplete
        """
        path = Path(artifact_path)
        if not path.is_file():
            raise VerificationError(f"Dump file not found: {path}")

        try:
            self._check_trailer(path, engine, is_combined, is_compressed)
        except OSError as e:
            raise VerificationError(f"Failed to read {path.name}: {e}")

    def _check_trailer(self, path: Path, engine: Engine, is_combined: bool, is_compressed: bool):
        if engine is Engine.MYSQL:
            self._check_line(path, 1, MYSQL_MARKER, prefix=True)

        elif engine is Engine.POSTGRESQL:
            if is_combined:
                self._check_line(path, 3, POSTGRES_CLUSTER_MARKER)
            elif is_compressed:
                # Custom-format archive, integrity is covered by pg_dump's exit code
                logger.debug(f"Skipping text verification of custom-format archive {path.name}")
            else:
                self._check_line(path, 3, POSTGRES_DATABASE_MARKER)

        elif engine is Engine.MONGODB:
            trailer = tail_bytes(path, len(MONGODB_TERMINATOR))
            if trailer != MONGODB_TERMINATOR:
                raise VerificationError(
                    f"{path.name} does not end with the archive terminator "
                    f"(last bytes: {trailer.hex() or 'none'})"
                )

        else:
            raise ValueError(f"Unsupported engine: {engine}")

    def _check_line(self, path: Path, position: int, marker: str, prefix: bool = False):
        """Compare the ``position``-th line from the end against ``marker``."""
        lines = tail_lines(path, position)
        if len(lines) < position:
            raise VerificationError(f"{path.name} is too short to contain '{marker}'")

        line = lines[-position]
        matched = line.startswith(marker) if prefix else line == marker
        if not matched:
            raise VerificationError(
                f"{path.name} is incomplete: expected '{marker}', found '{line[:200]}'"
            )
