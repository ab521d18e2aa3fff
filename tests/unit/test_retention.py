"""
Unit tests for retention policy enforcement (dbdump/backup/retention.py).

Tests RetentionSweeper for cleaning up old backup directories.
"""

import os
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from dbdump.backup.retention import RetentionSweeper


NOW = datetime(2024, 1, 15, 12, 0, 0)


def _make_backup(base, name, age, is_dir=True):
    """Create a backup entry whose mtime is ``age`` before NOW."""
    path = base / name
    if is_dir:
        path.mkdir()
        (path / 'app.sql').write_text('-- Dump completed\n')
    else:
        path.write_text('stray file')
    timestamp = (NOW - age).timestamp()
    os.utime(path, (timestamp, timestamp))
    return path


class TestRetentionSweeper:
    """Test RetentionSweeper basic functionality."""

    @freeze_time(NOW)
    def test_deletes_only_old_directories(self, backup_dir):
        """Test that only directories older than the threshold are deleted."""
        ages = [3, 5, 10, 15, 20]  # days ago
        paths = {
            days: _make_backup(backup_dir, f'backup-{days}', timedelta(days=days))
            for days in ages
        }

        summary = RetentionSweeper().sweep(backup_dir, 7)

        assert len(summary['deleted']) == 3
        assert summary['errors'] == []
        for days, path in paths.items():
            assert path.exists() == (days < 7)

    @freeze_time(NOW)
    def test_files_untouched(self, backup_dir):
        """Test non-directory entries are never deleted."""
        stray = _make_backup(backup_dir, 'notes.txt', timedelta(days=100), is_dir=False)

        summary = RetentionSweeper().sweep(backup_dir, 7)

        assert stray.exists()
        assert summary['deleted'] == []

    @freeze_time(NOW)
    def test_symlinks_untouched(self, backup_dir, tmp_path):
        target = _make_backup(tmp_path, 'elsewhere', timedelta(days=100))
        link = backup_dir / 'linked'
        link.symlink_to(target, target_is_directory=True)

        RetentionSweeper().sweep(backup_dir, 7)

        assert link.is_symlink()
        assert target.exists()

    @freeze_time(NOW)
    def test_exactly_at_threshold_is_kept(self, backup_dir):
        """Test the comparison is strictly older-than."""
        at_threshold = _make_backup(backup_dir, '2024-01-08', timedelta(days=7))
        just_older = _make_backup(backup_dir, '2024-01-07', timedelta(days=7, seconds=1))

        RetentionSweeper().sweep(backup_dir, 7)

        assert at_threshold.exists()
        assert not just_older.exists()

    @freeze_time(NOW)
    def test_zero_days(self, backup_dir):
        """Test retention of 0 days removes everything older than now."""
        old = _make_backup(backup_dir, '2024-01-15', timedelta(hours=1))
        current = _make_backup(backup_dir, 'current', timedelta(0))

        RetentionSweeper().sweep(backup_dir, 0)

        assert not old.exists()
        assert current.exists()

    @freeze_time(NOW)
    def test_nested_directories_not_inspected(self, backup_dir):
        """Test only immediate subdirectories are candidates."""
        parent = _make_backup(backup_dir, '2024-01-14', timedelta(days=1))
        nested = parent / '02:00'
        nested.mkdir()
        timestamp = (NOW - timedelta(days=100)).timestamp()
        os.utime(nested, (timestamp, timestamp))
        # Restore the parent mtime after creating the child
        parent_timestamp = (NOW - timedelta(days=1)).timestamp()
        os.utime(parent, (parent_timestamp, parent_timestamp))

        RetentionSweeper().sweep(backup_dir, 7)

        assert nested.exists()

    @freeze_time(NOW)
    def test_kept_directories_survive(self, backup_dir):
        """Test directories passed as keep are skipped regardless of age."""
        current = _make_backup(backup_dir, '2024-01-15', timedelta(hours=1))
        old = _make_backup(backup_dir, '2024-01-01', timedelta(days=14))

        summary = RetentionSweeper().sweep(backup_dir, 0, keep=[current])

        assert current.exists()
        assert not old.exists()
        assert summary['deleted'] == [str(old)]


class TestRetentionErrors:
    """Test that retention failures are reported, never raised."""

    def test_missing_base_directory(self, tmp_path):
        summary = RetentionSweeper().sweep(tmp_path / 'missing', 7)

        assert summary['deleted'] == []
        assert len(summary['errors']) == 1
        assert 'Failed to list' in summary['errors'][0]

    @freeze_time(NOW)
    @patch('dbdump.backup.retention.shutil.rmtree')
    def test_delete_failure_reported(self, mock_rmtree, backup_dir):
        mock_rmtree.side_effect = PermissionError('Permission denied')
        _make_backup(backup_dir, '2023-12-01', timedelta(days=45))
        _make_backup(backup_dir, '2023-12-02', timedelta(days=44))

        summary = RetentionSweeper().sweep(backup_dir, 7)

        assert summary['deleted'] == []
        assert len(summary['errors']) == 2
        assert 'Permission denied' in summary['errors'][0]
        # Every candidate was attempted despite the first failure
        assert mock_rmtree.call_count == 2
