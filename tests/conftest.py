import os
import time
from pathlib import Path

import pytest

from app_config import Application, DatabaseConfig
from backup_manager import BackupManager, ProcessResult


class FakeExecutor:
    """Stands in for ProcessExecutor: writes `payload` instead of running docker."""

    def __init__(self, payload=b'dump-bytes', returncode=0, stderr=''):
        self.payload = payload
        self.returncode = returncode
        self.stderr = stderr
        self.dumps = []
        self.restores = []

    def dump_to_file(self, argv, destination):
        self.dumps.append((list(argv), Path(destination)))
        if self.payload:
            Path(destination).write_bytes(self.payload)
        return ProcessResult(returncode=self.returncode, stderr=self.stderr)

    def restore_from_file(self, argv, source):
        self.restores.append((list(argv), Path(source)))
        return ProcessResult(returncode=self.returncode, stderr=self.stderr)


def make_app(name, db_type='postgresql', containers=None, **db_kwargs):
    database = DatabaseConfig(
        type=db_type,
        container=db_kwargs.pop('container', f'{name}-db'),
        database=db_kwargs.pop('database', name),
        username=db_kwargs.pop('username', 'admin'),
        password=db_kwargs.pop('password', 'secret'),
        **db_kwargs,
    )
    return Application(name=name, containers=containers or [f'{name}-web'], database=database)


def age_file(path, days, now=None):
    """Set a file's modification time to `days` days in the past."""
    ts = (now or time.time()) - days * 86400
    os.utime(path, (ts, ts))


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def applications():
    return [
        make_app('shop', 'postgresql'),
        make_app('blog', 'mysql', retention_days=3),
        Application(name='proxy', containers=['traefik']),
    ]


@pytest.fixture
def manager(tmp_path, applications, executor):
    return BackupManager(applications, backup_dir=tmp_path / 'backups', executor=executor)
