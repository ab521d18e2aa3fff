"""
Local compression of verified dump artifacts.

Supports:
- bz2: bzip2 compression
- xz: LZMA (xz container) compression

The compressed file is written next to the original and tested by
decompressing it completely. Only then is the original removed; on any
failure the original dump stays exactly as it was.
"""

import os
import bz2
import lzma
import shutil
import logging
from pathlib import Path
from typing import Optional, Union

from dbdump.config import Compression


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class CompressionError(Exception):
    """Raised when compression or its integrity test fails."""
    pass


_OPENERS = {
    Compression.BZIP2: bz2.open,
    Compression.XZ: lambda path, mode: lzma.open(path, mode, format=lzma.FORMAT_XZ),
}

_DECODE_ERRORS = (OSError, EOFError, lzma.LZMAError)


def compressed_path(path: Union[str, Path], algorithm: Compression) -> Path:
    """Path of the compressed counterpart of ``path``."""
    path = Path(path)
    return path.with_name(f"{path.name}.{algorithm.value}")


class CompressionStage:
    """
    Compresses artifacts with one algorithm for the whole run.

    Args:
        algorithm: Compression algorithm to apply
    """

    def __init__(self, algorithm: Compression):
        if algorithm not in _OPENERS:
            raise ValueError(
                f"Invalid compression algorithm: {algorithm}. "
                f"Valid options: {[a.value for a in _OPENERS]}"
            )
        self.algorithm = algorithm

    def compress(self, artifact_path: Union[str, Path]) -> bool:
        """
        Write the compressed copy of ``artifact_path``.

        Returns:
            True on success. On failure the partial output is removed and
            the original is left untouched.
        """
        try:
            self._compress(Path(artifact_path))
            return True
        except CompressionError as e:
            logger.error(str(e))
            return False

    def verify_compressed(self, compressed_file: Union[str, Path], expected_size: Optional[int] = None) -> bool:
        """
        Integrity self-test of a compressed file.

        Args:
            compressed_file: Path of the compressed file (e.g. ``app.sql.xz``)
            expected_size: Decompressed size to expect, if known

        Returns:
            True if the compressed stream decodes completely
        """
        try:
            self._test(Path(compressed_file), expected_size)
            return True
        except CompressionError as e:
            logger.error(str(e))
            return False

    def apply(self, artifact) -> Path:
        """
        Compress, test, then replace a verified artifact with its compressed form.

        Args:
            artifact: DumpArtifact with ``verified`` set

        Returns:
            Path of the compressed file

        Raises:
            CompressionError: If compression or the integrity test fails
        """
        if not artifact.verified:
            raise CompressionError(f"Refusing to compress unverified dump: {artifact.path}")

        source = Path(artifact.path)
        original_size = os.path.getsize(source)

        target = self._compress(source)
        artifact.compressed = True

        try:
            self._test(target, original_size)
        except CompressionError:
            _remove_quietly(target)
            artifact.compressed = False
            raise

        artifact.compression_verified = True
        try:
            source.unlink()
        except OSError as e:
            logger.warning(f"Compressed copy verified but failed to remove {source}: {e}")

        artifact.path = target
        return target

    def _compress(self, source: Path) -> Path:
        target = compressed_path(source, self.algorithm)
        opener = _OPENERS[self.algorithm]

        try:
            with open(source, 'rb') as src, opener(target, 'wb') as dst:
                shutil.copyfileobj(src, dst, CHUNK_SIZE)
        except Exception as e:
            # Clean up partial output on failure
            _remove_quietly(target)
            raise CompressionError(f"Failed to compress {source.name} with {self.algorithm.value}: {e}")

        logger.debug(f"Compressed {source.name} -> {target.name}")
        return target

    def _test(self, target: Path, expected_size: Optional[int] = None):
        opener = _OPENERS[self.algorithm]
        size = 0

        try:
            with opener(target, 'rb') as f:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
        except _DECODE_ERRORS as e:
            raise CompressionError(f"Integrity test of {target.name} failed: {e}")

        if expected_size is not None and size != expected_size:
            raise CompressionError(
                f"Integrity test of {target.name} failed: "
                f"decompressed {size} bytes, expected {expected_size}"
            )


def _remove_quietly(path: Path):
    try:
        if path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Failed to remove partial file {path}: {e}")
