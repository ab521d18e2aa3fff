"""
Backup module for dbdump.

This module handles the core backup functionality including:
- SSH transport (remote command execution, credential upload)
- Per-engine dump command construction
- Dump completeness verification
- Compression with integrity check
- Orchestration of the per-database dump lifecycle
- Retention policy enforcement
"""

from .executor import DumpOrchestrator, run_backup
from .transport import TransportClient
from .commands import DumpCommandBuilder, DatabaseTarget
from .verification import DumpVerifier
from .compression import CompressionStage
from .retention import RetentionSweeper

__all__ = [
    'DumpOrchestrator',
    'run_backup',
    'TransportClient',
    'DumpCommandBuilder',
    'DatabaseTarget',
    'DumpVerifier',
    'CompressionStage',
    'RetentionSweeper'
]
