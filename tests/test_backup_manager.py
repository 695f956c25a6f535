"""Tests for backup creation, listing, retention, restore and deletion."""

import time
from datetime import datetime
from pathlib import Path

import pytest

from app_config import Application
from backup_manager import (
    ApplicationNotFound,
    ArtifactNotFound,
    BackupManager,
    EmptyArtifact,
    FilesystemFailure,
    NoDatabaseConfigured,
    ProcessExecutionFailure,
)
from conftest import FakeExecutor, age_file, make_app


def deny_unlink(monkeypatch, filename):
    """Make Path.unlink fail with EACCES for one file name."""
    original = Path.unlink

    def unlink(self, *args, **kwargs):
        if self.name == filename:
            raise PermissionError(13, 'Permission denied', str(self))
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Path, 'unlink', unlink)


class TestCreateBackup:

    def test_creates_artifact(self, manager, executor, tmp_path):
        result = manager.create_backup('shop')

        assert result['success'] is True
        assert result['application'] == 'shop'
        assert result['size'] > 0
        artifact = tmp_path / 'backups' / 'shop' / result['filename']
        assert artifact.is_file()
        assert artifact.name.startswith('backup-') and artifact.name.endswith('.sql.gz')

        argv, destination = executor.dumps[0]
        assert argv[:3] == ['docker', 'exec', 'shop-db']
        assert destination.name.endswith('.part')
        assert not destination.exists()

    def test_unknown_application(self, manager):
        with pytest.raises(ApplicationNotFound):
            manager.create_backup('nope')

    def test_no_database_writes_nothing(self, manager, tmp_path):
        with pytest.raises(NoDatabaseConfigured):
            manager.create_backup('proxy')
        assert not (tmp_path / 'backups').exists()

    def test_empty_artifact_fails_despite_zero_exit(self, tmp_path, applications):
        manager = BackupManager(applications, backup_dir=tmp_path, executor=FakeExecutor(payload=b''))

        with pytest.raises(EmptyArtifact):
            manager.create_backup('shop')

        assert list((tmp_path / 'shop').iterdir()) == []
        assert manager.list_backups('shop') == []
        assert manager.metrics.get('shop')['total_failures'] == 1

    def test_nonzero_exit_fails(self, tmp_path, applications):
        executor = FakeExecutor(returncode=1, stderr='pg_dump: error: connection refused')
        manager = BackupManager(applications, backup_dir=tmp_path, executor=executor)

        with pytest.raises(ProcessExecutionFailure, match='connection refused'):
            manager.create_backup('shop')
        assert manager.list_backups('shop') == []

    def test_benign_stderr_does_not_fail(self, tmp_path, applications):
        executor = FakeExecutor(stderr='mysqldump: [Warning] Using a password on the command line interface can be insecure.')
        manager = BackupManager(applications, backup_dir=tmp_path, executor=executor)

        result = manager.create_backup('blog')
        assert result['success'] is True

    def test_records_metrics(self, manager):
        manager.create_backup('shop')
        m = manager.metrics.get('shop')
        assert m['last_success'] == 1
        assert m['total_backups'] == 1
        assert m['last_size_bytes'] > 0

    def test_runs_retention_cleanup(self, manager, tmp_path):
        app_dir = tmp_path / 'backups' / 'blog'
        app_dir.mkdir(parents=True)
        old = app_dir / 'backup-old.sql.gz'
        old.write_bytes(b'x')
        age_file(old, 10)

        manager.create_backup('blog')

        assert not old.exists()
        assert len(manager.list_backups('blog')) == 1


class TestCreateAllBackups:

    def test_failure_is_isolated(self, tmp_path):
        applications = [
            make_app('alpha', 'postgresql'),
            make_app('beta', 'oracle'),
            Application(name='static', containers=['nginx']),
        ]
        manager = BackupManager(applications, backup_dir=tmp_path, executor=FakeExecutor())

        results = manager.create_all_backups()

        assert [r['application'] for r in results] == ['alpha', 'beta']
        assert results[0]['success'] is True
        assert results[1]['success'] is False
        assert 'Unsupported database type' in results[1]['error']
        assert (tmp_path / 'alpha' / results[0]['filename']).is_file()

    def test_no_databases(self, tmp_path):
        manager = BackupManager([Application(name='static')], backup_dir=tmp_path, executor=FakeExecutor())
        assert manager.create_all_backups() == []


class TestListBackups:

    def test_missing_root_is_empty(self, tmp_path, applications):
        manager = BackupManager(applications, backup_dir=tmp_path / 'missing', executor=FakeExecutor())
        assert manager.list_backups() == []
        assert manager.list_backups('shop') == []

    def test_sorted_newest_first_across_applications(self, tmp_path, applications):
        manager = BackupManager(applications, backup_dir=tmp_path, executor=FakeExecutor())
        for app, name, days in [('shop', 'a.sql.gz', 3), ('blog', 'b.sql.gz', 1), ('shop', 'c.sql.gz', 2)]:
            path = tmp_path / app / name
            path.parent.mkdir(exist_ok=True)
            path.write_bytes(b'data')
            age_file(path, days)

        backups = manager.list_backups()

        assert [b.filename for b in backups] == ['b.sql.gz', 'c.sql.gz', 'a.sql.gz']
        assert backups[0].application == 'blog'
        assert backups[0].size == 4
        assert [b.filename for b in manager.list_backups('shop')] == ['c.sql.gz', 'a.sql.gz']

    def test_skips_partial_files(self, tmp_path, applications):
        manager = BackupManager(applications, backup_dir=tmp_path, executor=FakeExecutor())
        (tmp_path / 'shop').mkdir()
        (tmp_path / 'shop' / 'backup-1.sql.gz.part').write_bytes(b'x')
        assert manager.list_backups('shop') == []


class TestRetention:

    def test_deletes_only_expired(self, manager, tmp_path):
        app_dir = tmp_path / 'backups' / 'shop'
        app_dir.mkdir(parents=True)
        now = time.time()
        for name, days in [('one.sql.gz', 1), ('eight.sql.gz', 8), ('thirty.sql.gz', 30)]:
            (app_dir / name).write_bytes(b'x')
            age_file(app_dir / name, days, now)

        deleted = manager.cleanup_old_backups('shop', 7, now=datetime.fromtimestamp(now))

        assert deleted == 2
        assert sorted(p.name for p in app_dir.iterdir()) == ['one.sql.gz']

        assert manager.cleanup_old_backups('shop', 7, now=datetime.fromtimestamp(now)) == 0

    def test_zero_retention_keeps_everything(self, manager, tmp_path):
        app_dir = tmp_path / 'backups' / 'shop'
        app_dir.mkdir(parents=True)
        (app_dir / 'ancient.sql.gz').write_bytes(b'x')
        age_file(app_dir / 'ancient.sql.gz', 365)

        assert manager.cleanup_old_backups('shop', 0) == 0
        assert (app_dir / 'ancient.sql.gz').exists()

    def test_prunes_abandoned_partials(self, manager, tmp_path):
        app_dir = tmp_path / 'backups' / 'shop'
        app_dir.mkdir(parents=True)
        stale = app_dir / 'backup-old.sql.gz.part'
        fresh = app_dir / 'backup-new.sql.gz.part'
        stale.write_bytes(b'x')
        fresh.write_bytes(b'x')
        age_file(stale, 365)

        assert manager.cleanup_old_backups('shop', 7) == 1
        assert not stale.exists()
        assert fresh.exists()

    def test_first_failed_deletion_raises(self, manager, tmp_path, monkeypatch):
        app_dir = tmp_path / 'backups' / 'shop'
        app_dir.mkdir(parents=True)
        (app_dir / 'ancient.sql.gz').write_bytes(b'x')
        age_file(app_dir / 'ancient.sql.gz', 365)
        deny_unlink(monkeypatch, 'ancient.sql.gz')

        with pytest.raises(FilesystemFailure):
            manager.cleanup_old_backups('shop', 7)
        assert (app_dir / 'ancient.sql.gz').exists()

    def test_create_backup_surfaces_retention_failure(self, manager, tmp_path, monkeypatch):
        app_dir = tmp_path / 'backups' / 'shop'
        app_dir.mkdir(parents=True)
        (app_dir / 'ancient.sql.gz').write_bytes(b'x')
        age_file(app_dir / 'ancient.sql.gz', 365)
        deny_unlink(monkeypatch, 'ancient.sql.gz')

        with pytest.raises(FilesystemFailure):
            manager.create_backup('shop')

        # the new backup itself was kept
        assert len(manager.list_backups('shop')) == 2


class TestDeleteAndRestore:

    def test_delete(self, manager):
        result = manager.create_backup('shop')
        assert manager.delete_backup('shop', result['filename']) is True
        assert manager.list_backups('shop') == []

    def test_delete_permission_denied(self, manager, monkeypatch):
        filename = manager.create_backup('shop')['filename']
        deny_unlink(monkeypatch, filename)

        with pytest.raises(FilesystemFailure):
            manager.delete_backup('shop', filename)

    def test_delete_missing(self, manager):
        with pytest.raises(ArtifactNotFound):
            manager.delete_backup('shop', 'backup-missing.sql.gz')

    @pytest.mark.parametrize('filename', ['../shop/x.sql.gz', '..', '.hidden', 'a/b'])
    def test_rejects_path_traversal(self, manager, filename):
        with pytest.raises(ArtifactNotFound):
            manager.delete_backup('shop', filename)
        with pytest.raises(ArtifactNotFound):
            manager.restore_backup('shop', filename)

    def test_restore(self, manager, executor):
        created = manager.create_backup('shop')

        result = manager.restore_backup('shop', created['filename'])

        assert result == {
            'success': True,
            'application': 'shop',
            'backup': created['filename'],
            'timestamp': result['timestamp'],
        }
        argv, source = executor.restores[0]
        assert argv[:4] == ['docker', 'exec', '-i', 'shop-db']
        assert 'psql' in argv
        assert source.name == created['filename']

    def test_restore_missing_file(self, manager, executor):
        with pytest.raises(ArtifactNotFound):
            manager.restore_backup('shop', 'backup-missing.sql.gz')
        assert executor.restores == []

    def test_restore_unknown_application(self, manager):
        with pytest.raises(ApplicationNotFound):
            manager.restore_backup('nope', 'backup.sql.gz')

    def test_restore_failure(self, tmp_path, applications):
        executor = FakeExecutor()
        manager = BackupManager(applications, backup_dir=tmp_path, executor=executor)
        created = manager.create_backup('shop')
        executor.returncode = 1
        executor.stderr = 'psql: FATAL: role does not exist'

        with pytest.raises(ProcessExecutionFailure, match='role does not exist'):
            manager.restore_backup('shop', created['filename'])


class TestBackupStatus:

    def test_overview(self, manager):
        manager.create_backup('shop')

        status = {s['application']: s for s in manager.backup_status()}

        assert status['shop']['totalBackups'] == 1
        assert status['shop']['latestBackup'] is not None
        assert status['blog']['retentionDays'] == 3
        assert status['proxy']['hasDatabase'] is False
        assert status['proxy']['latestBackup'] is None

    def test_single_application(self, manager):
        manager.create_backup('shop')
        status = manager.backup_status('shop')
        assert status['retentionDays'] == 7
        assert len(status['allBackups']) == 1

    def test_single_unknown(self, manager):
        with pytest.raises(ApplicationNotFound):
            manager.backup_status('nope')
