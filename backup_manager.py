#!/usr/bin/env python3
"""
Application Backup Manager
Backs up the database of every configured application on a cron schedule,
prunes old backups and exposes metrics, backup operations and container
monitoring over HTTP.

Backups are taken inside the database container:
  postgresql  docker exec <container> pg_dump -U <user> <db>      -> backup-<ts>.sql.gz
  mysql       docker exec <container> mysqldump -u <user> -p<pw> <db> -> backup-<ts>.sql.gz
  mongodb     docker exec <container> mongodump --db <db> --archive -> backup-<ts>.archive.gz

and stored under BACKUP_DIR/<application>/.
"""

import os
import sys
import time
import json
import gzip
import shlex
import shutil
import signal
import logging
import tempfile
import threading
import subprocess
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, List, Any
from dataclasses import dataclass
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import unquote
from croniter import croniter
from docker.errors import DockerException

from app_config import (
    Application,
    DatabaseConfig,
    BACKUP_DIR,
    BACKUP_TIMEOUT,
    CHECK_INTERVAL,
    DEFAULT_BACKUP_SCHEDULE,
    DEFAULT_RETENTION_DAYS,
    LOG_LEVEL,
    METRICS_PORT,
    find_application,
    load_applications,
)
from docker_monitor import DockerMonitor
from network_monitor import NetworkMonitor

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Backup file suffix per database type
BACKUP_SUFFIXES = {
    'postgresql': 'sql.gz',
    'mysql': 'sql.gz',
    'mongodb': 'archive.gz',
}

PARTIAL_SUFFIX = '.part'

# stderr lines containing these are expected noise, e.g. mysqldump's
# "Using a password on the command line interface can be insecure."
BENIGN_STDERR_MARKERS = ('Warning',)

MAX_BACKUP_WORKERS = 4


# =============================================================================
# ERRORS
# =============================================================================

class BackupError(Exception):
    """Base class for backup failures."""


class ApplicationNotFound(BackupError):
    pass


class NoDatabaseConfigured(BackupError):
    pass


class UnsupportedEngineKind(BackupError):
    pass


class EmptyArtifact(BackupError):
    pass


class ArtifactNotFound(BackupError):
    pass


class InvalidCadenceExpression(BackupError):
    pass


class ProcessExecutionFailure(BackupError):
    pass


class ProcessTimeout(ProcessExecutionFailure):
    pass


class FilesystemFailure(BackupError):
    pass


# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

class BackupMetrics:
    """Thread-safe storage for backup metrics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._start_time = time.time()
        self._applications_configured = 0

    def set_applications_count(self, count: int):
        """Set the number of applications with a database to back up."""
        self._applications_configured = count

    def _entry(self, application: str, db_type: str = 'unknown', database: str = '') -> Dict[str, Any]:
        if application not in self._metrics:
            self._metrics[application] = {
                'application': application,
                'db_type': db_type,
                'database': database,
                'last_success': -1,  # -1 = never run yet
                'last_timestamp': 0,
                'last_duration_seconds': 0,
                'last_size_bytes': 0,
                'next_scheduled': 0,
                'total_backups': 0,
                'total_failures': 0,
            }
        return self._metrics[application]

    def record_backup(self, application: str, db_type: str, database: str,
                      success: bool, duration_seconds: float, size_bytes: int):
        """Record metrics for a backup operation."""
        with self._lock:
            m = self._entry(application, db_type, database)
            m.update({
                'db_type': db_type,
                'database': database,
                'last_success': 1 if success else 0,
                'last_timestamp': time.time(),
                'last_duration_seconds': duration_seconds,
                'last_size_bytes': size_bytes,
                'total_backups': m['total_backups'] + 1,
                'total_failures': m['total_failures'] + (0 if success else 1),
            })

    def update_schedule(self, application: str, next_run: Optional[datetime]):
        """Update the next scheduled run time."""
        with self._lock:
            self._entry(application)['next_scheduled'] = next_run.timestamp() if next_run else 0

    def init_application(self, application: str, db_type: str, database: str, next_run: Optional[datetime]):
        """Initialize metrics for an application (before first backup)."""
        with self._lock:
            m = self._entry(application, db_type, database)
            m['db_type'] = db_type
            m['database'] = database
            m['next_scheduled'] = next_run.timestamp() if next_run else 0

    def get(self, application: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            m = self._metrics.get(application)
            return dict(m) if m else None

    # name, type, help, sample(entry, now); a None sample is omitted
    APPLICATION_FAMILIES = (
        ('db_backup_last_success', 'gauge',
         'Result of the last backup (1=success, 0=failure, -1=never run)',
         lambda m, now: m['last_success']),
        ('db_backup_last_timestamp_seconds', 'gauge',
         'Unix time of the last backup attempt',
         lambda m, now: f"{m['last_timestamp']:.0f}"),
        ('db_backup_last_duration_seconds', 'gauge',
         'Wall-clock duration of the last backup',
         lambda m, now: f"{m['last_duration_seconds']:.2f}"),
        ('db_backup_last_size_bytes', 'gauge',
         'Compressed size of the last backup artifact',
         lambda m, now: m['last_size_bytes']),
        ('db_backup_next_scheduled_timestamp_seconds', 'gauge',
         'Unix time of the next scheduled backup',
         lambda m, now: f"{m['next_scheduled']:.0f}"),
        ('db_backup_seconds_until_next', 'gauge',
         'Seconds remaining until the next scheduled backup',
         lambda m, now: f"{max(0, m['next_scheduled'] - now):.0f}" if m['next_scheduled'] > 0 else None),
        ('db_backup_seconds_since_last', 'gauge',
         'Seconds elapsed since the last backup attempt',
         lambda m, now: f"{now - m['last_timestamp']:.0f}" if m['last_timestamp'] > 0 else None),
        ('db_backup_total', 'counter',
         'Backup attempts per application',
         lambda m, now: m['total_backups']),
        ('db_backup_failures_total', 'counter',
         'Failed backup attempts per application',
         lambda m, now: m['total_failures']),
    )

    @staticmethod
    def _labels(m: Dict[str, Any]) -> str:
        pairs = []
        for key in ('application', 'db_type', 'database'):
            value = str(m[key]).replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')
            pairs.append(f'{key}="{value}"')
        return ','.join(pairs)

    def get_prometheus_metrics(self) -> str:
        """Render every metric family in the Prometheus text format."""
        now = time.time()
        process_families = (
            ('db_backup_manager_up', 'gauge', 'Backup manager liveness (always 1 while serving)', 1),
            ('db_backup_manager_uptime_seconds', 'counter', 'Seconds since the backup manager started',
             f'{now - self._start_time:.2f}'),
            ('db_backup_applications_configured', 'gauge', 'Applications with a database to back up',
             self._applications_configured),
        )

        lines = []
        for name, kind, help_text, value in process_families:
            lines += [f'# HELP {name} {help_text}', f'# TYPE {name} {kind}', f'{name} {value}']

        with self._lock:
            entries = [(self._labels(m), dict(m)) for m in self._metrics.values()]

        for name, kind, help_text, sample in self.APPLICATION_FAMILIES:
            lines += [f'# HELP {name} {help_text}', f'# TYPE {name} {kind}']
            for labels, m in entries:
                value = sample(m, now)
                if value is not None:
                    lines.append(f'{name}{{{labels}}} {value}')

        return '\n'.join(lines) + '\n'

    def get_status_json(self) -> dict:
        """Metrics snapshot for the JSON status endpoint."""
        def iso(ts):
            return datetime.fromtimestamp(ts).isoformat() if ts > 0 else None

        with self._lock:
            entries = [dict(m) for m in self._metrics.values()]

        backups = []
        for m in entries:
            backups.append({
                'application': m['application'],
                'db_type': m['db_type'],
                'database': m['database'],
                'last_success': None if m['last_success'] < 0 else m['last_success'] == 1,
                'last_backup': iso(m['last_timestamp']),
                'next_backup': iso(m['next_scheduled']),
                'last_duration_seconds': m['last_duration_seconds'],
                'last_size_bytes': m['last_size_bytes'],
                'total_backups': m['total_backups'],
                'total_failures': m['total_failures'],
            })

        return {
            'uptime_seconds': round(time.time() - self._start_time, 2),
            'applications_configured': self._applications_configured,
            'backups': backups,
        }


# =============================================================================
# DATABASE COMMANDS
# =============================================================================

@dataclass
class DatabaseCommand:
    """A dump or restore run inside a database container.

    Dumps stream stdout through gzip into `path`; restores stream the
    decompressed contents of `path` into stdin.
    """
    argv: List[str]
    path: Path
    direction: str  # 'dump' or 'restore'
    tool: str

    def render(self) -> str:
        """Equivalent shell pipeline (includes credentials, do not log)."""
        command = shlex.join(self.argv)
        target = shlex.quote(str(self.path))
        if self.direction == 'dump':
            return f"{command} | gzip > {target}"
        return f"gunzip < {target} | {command}"


def backup_filename(db_type: str, timestamp: datetime) -> str:
    suffix = BACKUP_SUFFIXES.get(db_type)
    if suffix is None:
        raise UnsupportedEngineKind(f"Unsupported database type: {db_type}")
    return f"backup-{timestamp.strftime('%Y%m%d_%H%M%S_%f')}.{suffix}"


def build_backup_command(db: DatabaseConfig, destination: Path) -> DatabaseCommand:
    """Build the dump command for the database's engine."""
    if db.type == 'postgresql':
        args = ['pg_dump', '-U', db.username or 'postgres', db.database]
    elif db.type == 'mysql':
        args = ['mysqldump', '-u', db.username or 'root']
        if db.password:
            args.append(f'-p{db.password}')
        args.append(db.database)
    elif db.type == 'mongodb':
        args = ['mongodump', '--db', db.database, '--archive']
    else:
        raise UnsupportedEngineKind(f"Unsupported database type: {db.type}")

    return DatabaseCommand(
        argv=['docker', 'exec', db.container] + args,
        path=Path(destination),
        direction='dump',
        tool=args[0],
    )


def build_restore_command(db: DatabaseConfig, source: Path) -> DatabaseCommand:
    """Build the restore command, the inverse of build_backup_command."""
    if db.type == 'postgresql':
        args = ['psql', '-U', db.username or 'postgres', db.database]
    elif db.type == 'mysql':
        args = ['mysql', '-u', db.username or 'root']
        if db.password:
            args.append(f'-p{db.password}')
        args.append(db.database)
    elif db.type == 'mongodb':
        args = ['mongorestore', '--archive', '--db', db.database]
    else:
        raise UnsupportedEngineKind(f"Unsupported database type: {db.type}")

    return DatabaseCommand(
        argv=['docker', 'exec', '-i', db.container] + args,
        path=Path(source),
        direction='restore',
        tool=args[0],
    )


# =============================================================================
# PROCESS EXECUTOR
# =============================================================================

@dataclass
class ProcessResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''
    bytes_written: Optional[int] = None


class ProcessExecutor:
    """Runs dump/restore processes with gzip streaming and a hard timeout.

    A process still running after `timeout` seconds is killed and
    ProcessTimeout is raised. There is no retry.
    """

    def __init__(self, timeout: Optional[float] = BACKUP_TIMEOUT):
        self.timeout = timeout

    def dump_to_file(self, argv: List[str], destination: Path) -> ProcessResult:
        """Run `argv` and gzip its stdout into `destination`."""
        written = 0

        with tempfile.TemporaryFile() as err:
            proc = self._start(argv, stdout=subprocess.PIPE, stderr=err)

            def pump():
                nonlocal written
                with gzip.open(destination, 'wb', compresslevel=6) as f_out:
                    for chunk in iter(lambda: proc.stdout.read(shutil.COPY_BUFSIZE), b''):
                        f_out.write(chunk)
                        written += len(chunk)

            returncode = self._supervise(argv, proc, pump)
            proc.stdout.close()
            err.seek(0)
            stderr = err.read().decode(errors='replace')

        return ProcessResult(returncode=returncode, stderr=stderr, bytes_written=written)

    def restore_from_file(self, argv: List[str], source: Path) -> ProcessResult:
        """Run `argv` feeding it the decompressed contents of `source`."""
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            proc = self._start(argv, stdin=subprocess.PIPE, stdout=out, stderr=err)

            def pump():
                try:
                    with gzip.open(source, 'rb') as f_in:
                        shutil.copyfileobj(f_in, proc.stdin)
                except BrokenPipeError:
                    # Process exited before reading all input; its exit status says why
                    logger.debug(f"{argv[0]} closed its input early")
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        logger.debug(f"{argv[0]} input already closed")

            returncode = self._supervise(argv, proc, pump)
            out.seek(0)
            err.seek(0)
            stdout = out.read().decode(errors='replace')
            stderr = err.read().decode(errors='replace')

        return ProcessResult(returncode=returncode, stdout=stdout, stderr=stderr)

    def _start(self, argv: List[str], **kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen(argv, **kwargs)
        except OSError as e:
            raise ProcessExecutionFailure(f"Cannot start {argv[0]}: {e}") from e

    def _supervise(self, argv: List[str], proc: subprocess.Popen, pump) -> int:
        timed_out = threading.Event()
        timer = None

        if self.timeout:
            def kill():
                if proc.poll() is not None:
                    return
                timed_out.set()
                proc.kill()

            timer = threading.Timer(self.timeout, kill)
            timer.daemon = True
            timer.start()

        try:
            pump()
        except OSError as e:
            proc.kill()
            proc.wait()
            if not timed_out.is_set():
                raise FilesystemFailure(f"I/O error while running {argv[0]}: {e}") from e
        finally:
            if timer:
                timer.cancel()

        returncode = proc.wait()
        if timed_out.is_set():
            raise ProcessTimeout(f"{argv[0]} timed out after {self.timeout}s and was killed")
        return returncode


# =============================================================================
# BACKUP MANAGER
# =============================================================================

@dataclass
class BackupInfo:
    """A stored backup artifact."""
    application: str
    filename: str
    path: Path
    size: int
    created: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'application': self.application,
            'filename': self.filename,
            'path': str(self.path),
            'size': self.size,
            'created': self.created.isoformat(),
        }


def is_plain_name(name: str) -> bool:
    """True for a bare file/directory name that cannot escape its parent."""
    return bool(name) and name == Path(name).name and not name.startswith('.')


class BackupManager:
    """Creates, lists, restores and prunes application database backups."""

    def __init__(self, applications: List[Application], backup_dir: Path = BACKUP_DIR,
                 executor: Optional[ProcessExecutor] = None,
                 metrics: Optional[BackupMetrics] = None,
                 default_retention_days: int = DEFAULT_RETENTION_DAYS,
                 max_workers: int = MAX_BACKUP_WORKERS):
        self.applications = applications
        self.backup_dir = Path(backup_dir)
        self.executor = executor or ProcessExecutor()
        self.metrics = metrics or BackupMetrics()
        self.default_retention_days = default_retention_days
        self.max_workers = max_workers
        self.metrics.set_applications_count(sum(1 for a in applications if a.has_database))

    def get_application(self, app_name: str) -> Application:
        app = find_application(self.applications, app_name)
        if app is None:
            raise ApplicationNotFound(f"Application {app_name} not found in configuration")
        return app

    def _get_database(self, app_name: str) -> DatabaseConfig:
        app = self.get_application(app_name)
        if app.database is None:
            raise NoDatabaseConfigured(f"No database configured for application {app_name}")
        return app.database

    def retention_days_for(self, app: Application) -> int:
        if app.database and app.database.retention_days is not None:
            return app.database.retention_days
        return self.default_retention_days

    def create_backup(self, app_name: str) -> Dict[str, Any]:
        """Back up one application's database and prune its old backups."""
        db = self._get_database(app_name)

        backup_file = self.backup_dir / app_name / backup_filename(db.type, datetime.now())
        command = build_backup_command(db, backup_file)

        logger.info(f"Starting backup for application: {app_name}")
        start_time = time.time()

        try:
            size = self._write_artifact(app_name, command)
        except BackupError:
            self.metrics.record_backup(app_name, db.type, db.database, False, time.time() - start_time, 0)
            raise

        duration = time.time() - start_time
        self.metrics.record_backup(app_name, db.type, db.database, True, duration, size)
        logger.info(f"Backup completed for {app_name}: {backup_file} ({size} bytes, {duration:.2f}s)")

        self.cleanup_old_backups(app_name, self.retention_days_for(self.get_application(app_name)))

        return {
            'success': True,
            'application': app_name,
            'file': str(backup_file),
            'filename': backup_file.name,
            'size': size,
            'timestamp': datetime.now().isoformat(),
        }

    def _write_artifact(self, app_name: str, command: DatabaseCommand) -> int:
        """Dump into a .part file, verify it and move it into place."""
        backup_file = command.path
        partial = backup_file.with_name(backup_file.name + PARTIAL_SUFFIX)

        try:
            backup_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemFailure(f"Cannot create backup directory {backup_file.parent}: {e}") from e

        try:
            logger.info(f"Executing {command.tool} for {app_name}")
            result = self.executor.dump_to_file(command.argv, partial)
            self._log_stderr(app_name, result.stderr)

            if result.returncode != 0:
                raise ProcessExecutionFailure(
                    f"{command.tool} exited with status {result.returncode} for {app_name}: {result.stderr.strip()}"
                )

            size = partial.stat().st_size if partial.exists() else 0
            if size == 0 or result.bytes_written == 0:
                raise EmptyArtifact(f"Backup file for {app_name} is empty")

            os.replace(partial, backup_file)
            return size
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise FilesystemFailure(f"Error writing backup {backup_file}: {e}") from e
        except BackupError:
            partial.unlink(missing_ok=True)
            raise

    def _log_stderr(self, app_name: str, stderr: str):
        for line in stderr.splitlines():
            line = line.strip()
            if not line:
                continue
            if any(marker in line for marker in BENIGN_STDERR_MARKERS):
                logger.debug(f"{app_name}: {line}")
            else:
                logger.warning(f"Backup stderr for {app_name}: {line}")

    def create_all_backups(self) -> List[Dict[str, Any]]:
        """Back up every application with a database, concurrently.

        One result per application in roster order; a failure never stops
        the others.
        """
        apps = [app for app in self.applications if app.has_database]
        if not apps:
            return []

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(apps))) as pool:
            futures = [pool.submit(self.create_backup, app.name) for app in apps]

        results = []
        for app, future in zip(apps, futures):
            try:
                results.append(future.result())
            except Exception as e:
                logger.error(f"Error creating backup for {app.name}: {e}")
                results.append({
                    'success': False,
                    'application': app.name,
                    'error': str(e),
                })

        return results

    def list_backups(self, app_name: Optional[str] = None) -> List[BackupInfo]:
        """List backups, newest first. Missing directories give an empty list."""
        if app_name is not None:
            if not is_plain_name(app_name):
                return []
            directories = [self.backup_dir / app_name]
        elif self.backup_dir.is_dir():
            directories = [d for d in self.backup_dir.iterdir() if d.is_dir()]
        else:
            return []

        backups = []
        for directory in directories:
            backups.extend(self._scan_directory(directory))

        return sorted(backups, key=lambda b: b.created, reverse=True)

    def _scan_directory(self, directory: Path) -> List[BackupInfo]:
        if not directory.is_dir():
            return []

        backups = []
        for path in directory.iterdir():
            if path.name.endswith(PARTIAL_SUFFIX):
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                # removed by a concurrent cleanup
                continue
            if not path.is_file():
                continue
            backups.append(BackupInfo(
                application=directory.name,
                filename=path.name,
                path=path,
                size=stat.st_size,
                created=datetime.fromtimestamp(stat.st_mtime),
            ))
        return backups

    def cleanup_old_backups(self, app_name: str, retention_days: int,
                            now: Optional[datetime] = None) -> int:
        """Delete backups created before now - retention_days.

        Abandoned .part files older than the cutoff are removed as well.
        Returns the number deleted. The first failed deletion raises
        FilesystemFailure. A retention of 0 or less keeps everything.
        """
        if retention_days <= 0:
            return 0

        cutoff = (now or datetime.now()) - timedelta(days=retention_days)
        deleted = 0

        for backup in self.list_backups(app_name):
            if backup.created < cutoff:
                try:
                    backup.path.unlink()
                except OSError as e:
                    logger.error(f"Error cleaning up old backups for {app_name}: {e}")
                    raise FilesystemFailure(f"Failed to delete old backup {backup.path}: {e}") from e
                logger.info(f"Deleted old backup: {backup.filename}")
                deleted += 1

        for partial in self._stale_partials(app_name, cutoff):
            try:
                partial.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise FilesystemFailure(f"Failed to delete partial backup {partial}: {e}") from e
            logger.info(f"Deleted abandoned partial backup: {partial.name}")
            deleted += 1

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old backup(s) for {app_name}")

        return deleted

    def _stale_partials(self, app_name: str, cutoff: datetime) -> List[Path]:
        """Leftover .part files of interrupted dumps older than `cutoff`."""
        directory = self.backup_dir / app_name
        if not is_plain_name(app_name) or not directory.is_dir():
            return []

        stale = []
        for path in directory.glob(f'*{PARTIAL_SUFFIX}'):
            try:
                if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
                    stale.append(path)
            except FileNotFoundError:
                continue
        return stale

    def _artifact_path(self, app_name: str, filename: str) -> Path:
        if not is_plain_name(app_name) or not is_plain_name(filename):
            raise ArtifactNotFound(f"Backup not found: {app_name}/{filename}")
        return self.backup_dir / app_name / filename

    def delete_backup(self, app_name: str, filename: str) -> bool:
        backup_path = self._artifact_path(app_name, filename)
        try:
            backup_path.unlink()
        except FileNotFoundError as e:
            raise ArtifactNotFound(f"Backup not found: {app_name}/{filename}") from e
        except OSError as e:
            raise FilesystemFailure(f"Error deleting backup {backup_path}: {e}") from e

        logger.info(f"Deleted backup: {backup_path}")
        return True

    def restore_backup(self, app_name: str, filename: str) -> Dict[str, Any]:
        """Restore a backup into the application's database.

        Destructive: the current database contents are overwritten and no
        backup is taken beforehand.
        """
        db = self._get_database(app_name)
        backup_path = self._artifact_path(app_name, filename)
        if not backup_path.is_file():
            raise ArtifactNotFound(f"Backup not found: {app_name}/{filename}")

        command = build_restore_command(db, backup_path)

        logger.info(f"Starting restore for {app_name} from {filename}")
        result = self.executor.restore_from_file(command.argv, backup_path)
        self._log_stderr(app_name, result.stderr)

        if result.returncode != 0:
            raise ProcessExecutionFailure(
                f"{command.tool} exited with status {result.returncode} for {app_name}: {result.stderr.strip()}"
            )

        logger.info(f"Restore completed for {app_name} from {filename}")
        return {
            'success': True,
            'application': app_name,
            'backup': filename,
            'timestamp': datetime.now().isoformat(),
        }

    def _app_status(self, app: Application, backups: List[BackupInfo]) -> Dict[str, Any]:
        latest = backups[0] if backups else None
        return {
            'application': app.name,
            'hasDatabase': app.has_database,
            'backupSchedule': app.database.backup_schedule if app.database else None,
            'retentionDays': self.retention_days_for(app) if app.database else None,
            'totalBackups': len(backups),
            'latestBackup': {
                'filename': latest.filename,
                'size': latest.size,
                'created': latest.created.isoformat(),
            } if latest else None,
        }

    def backup_status(self, app_name: Optional[str] = None) -> Any:
        """Backup overview for every application, or one application in detail."""
        if app_name is not None:
            app = self.get_application(app_name)
            backups = self.list_backups(app_name)
            status = self._app_status(app, backups)
            status['allBackups'] = [b.to_dict() for b in backups]
            status['metrics'] = self.metrics.get(app_name)
            return status

        backups = self.list_backups()
        return [
            self._app_status(app, [b for b in backups if b.application == app.name])
            for app in self.applications
        ]


# =============================================================================
# SCHEDULER
# =============================================================================

def validate_schedule(schedule: str) -> str:
    if not schedule or not croniter.is_valid(schedule):
        raise InvalidCadenceExpression(f"Invalid cron schedule: {schedule!r}")
    return schedule


@dataclass
class ScheduledJob:
    """Recurring backup of one application."""
    application: str
    schedule: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_success: Optional[bool] = None
    running: bool = False
    type: str = 'backup'

    def advance(self, base: datetime):
        """Calculate the next run time after `base`."""
        self.next_run = croniter(self.schedule, base).get_next(datetime)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'application': self.application,
            'type': self.type,
            'schedule': self.schedule,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_success': self.last_success,
            'running': self.running,
        }


class BackupScheduler:
    """Runs each application's backup on its own cron schedule.

    A polling thread checks for due jobs every `check_interval` seconds and
    starts each on its own worker thread. A job whose previous run is still
    in progress is skipped for that fire.
    """

    def __init__(self, manager: BackupManager, applications: Optional[List[Application]] = None,
                 default_schedule: str = DEFAULT_BACKUP_SCHEDULE,
                 check_interval: float = CHECK_INTERVAL):
        self.manager = manager
        self.applications = applications if applications is not None else manager.applications
        self.default_schedule = default_schedule
        self.check_interval = check_interval
        self.jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._workers: List[threading.Thread] = []

    def init(self, now: Optional[datetime] = None) -> int:
        """Schedule a backup job for every application with a database."""
        logger.info("Initializing scheduled tasks...")

        for app in self.applications:
            if app.has_database:
                self.schedule_backup(app, now)

        logger.info(f"Initialized {len(self.jobs)} scheduled task(s)")
        return len(self.jobs)

    def schedule_backup(self, app: Application, now: Optional[datetime] = None) -> Optional[ScheduledJob]:
        """Schedule one application. Invalid cron leaves it unscheduled."""
        if app.database is None:
            raise NoDatabaseConfigured(f"No database configured for application {app.name}")

        schedule = app.database.backup_schedule or self.default_schedule
        try:
            validate_schedule(schedule)
        except InvalidCadenceExpression:
            logger.error(f"Invalid cron schedule for {app.name}: {schedule}")
            return None

        job = ScheduledJob(application=app.name, schedule=schedule)
        job.advance(now or datetime.now())

        with self._lock:
            self.jobs[app.name] = job

        self.manager.metrics.init_application(app.name, app.database.type, app.database.database, job.next_run)
        logger.info(f"Scheduled backup for {app.name} with cron: {schedule} (next run: {job.next_run})")
        return job

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Start every due job. Returns the applications started."""
        now = now or datetime.now()
        started = []

        with self._lock:
            for job in self.jobs.values():
                if job.next_run is None or now < job.next_run:
                    continue
                job.advance(now)
                self.manager.metrics.update_schedule(job.application, job.next_run)
                if job.running:
                    logger.warning(f"Skipping scheduled backup for {job.application}: previous run still in progress")
                    continue
                job.running = True
                started.append(job)

            self._workers = [w for w in self._workers if w.is_alive()]

        for job in started:
            worker = threading.Thread(
                target=self._run_job,
                args=(job,),
                name=f"backup-{job.application}",
                daemon=True,
            )
            with self._lock:
                self._workers.append(worker)
            worker.start()

        return [job.application for job in started]

    def _run_job(self, job: ScheduledJob):
        logger.info(f"Running scheduled backup for {job.application}")
        success = False
        try:
            result = self.manager.create_backup(job.application)
            success = True
            logger.info(f"Scheduled backup completed for {job.application}: {result['file']} ({result['size']} bytes)")
        except Exception as e:
            logger.error(f"Scheduled backup failed for {job.application}: {e}")
        finally:
            with self._lock:
                job.running = False
                job.last_run = datetime.now()
                job.last_success = success

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until running backup workers have finished.

        Returns False if some worker is still running after `timeout` seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(None if deadline is None else max(0, deadline - time.monotonic()))
        return not any(w.is_alive() for w in workers)

    def start(self) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name='backup-scheduler', daemon=True)
        self._thread.start()
        return self._thread

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
            self._stop_event.wait(self.check_interval)

    def stop_all(self, timeout: Optional[float] = BACKUP_TIMEOUT):
        """Stop the scheduler, wait up to `timeout` for running backups and drop every job."""
        logger.info("Stopping all scheduled tasks...")
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        if not self.wait(timeout):
            logger.warning("Backups still running after stop; partial files will be pruned by retention")
        with self._lock:
            self.jobs.clear()

    def get_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self.jobs.values()]


# =============================================================================
# HTTP API
# =============================================================================

ERROR_STATUS = (
    (ApplicationNotFound, 404),
    (ArtifactNotFound, 404),
    (NoDatabaseConfigured, 400),
    (UnsupportedEngineKind, 400),
    (InvalidCadenceExpression, 400),
)


def error_status(error: Exception) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 500


class ApiHandler(BaseHTTPRequestHandler):
    """HTTP handler for metrics, backup operations and container monitoring."""

    def do_GET(self):
        self._dispatch('GET')

    def do_POST(self):
        self._dispatch('POST')

    def do_DELETE(self):
        self._dispatch('DELETE')

    def _dispatch(self, method: str):
        parts = [unquote(p) for p in self.path.split('?', 1)[0].strip('/').split('/') if p]
        try:
            self._route(method, parts)
        except BackupError as e:
            self._send_json(error_status(e), {'success': False, 'error': str(e)})
        except Exception as e:
            logger.error(f"Error handling {method} {self.path}: {e}")
            self._send_json(500, {'success': False, 'error': str(e)})

    def _route(self, method: str, parts: List[str]):
        server = self.server
        manager: BackupManager = server.manager
        scheduler: BackupScheduler = server.scheduler

        if method == 'GET':
            if not parts:
                self._send_json(200, {
                    'name': 'app-backup-manager',
                    'endpoints': {
                        '/metrics': 'Prometheus metrics',
                        '/status': 'JSON status overview',
                        '/health': 'Health check',
                        '/ready': 'Readiness check',
                        '/backups[/<app>]': 'List backups',
                        '/backups/status[/<app>]': 'Backup status',
                        '/jobs': 'Scheduled jobs',
                        '/applications[/<app>]': 'Applications and their containers',
                        '/containers': 'Docker containers',
                        '/docker/health': 'Docker daemon health',
                        '/network': 'Host network statistics',
                    },
                })
            elif parts == ['metrics']:
                self._send_text(200, manager.metrics.get_prometheus_metrics(),
                                'text/plain; version=0.0.4; charset=utf-8')
            elif parts == ['status']:
                self._send_json(200, manager.metrics.get_status_json())
            elif parts in (['health'], ['healthz']):
                self._send_json(200, {'status': 'healthy'})
            elif parts in (['ready'], ['readyz']):
                self._send_json(200, {'status': 'ready'})
            elif parts == ['jobs']:
                self._ok(scheduler.get_jobs())
            elif parts[0] == 'backups' and len(parts) <= 3:
                self._get_backups(manager, scheduler, parts[1:])
            elif parts[0] in ('applications', 'containers', 'docker', 'network'):
                self._get_monitoring(parts)
            else:
                self._not_found()

        elif method == 'POST' and parts and parts[0] == 'backups':
            if len(parts) == 1:
                results = manager.create_all_backups()
                succeeded = sum(1 for r in results if r['success'])
                self._ok(results, message=f"Backup completed: {succeeded} succeeded, {len(results) - succeeded} failed")
            elif len(parts) == 2:
                self._ok(manager.create_backup(parts[1]), message=f"Backup created successfully for {parts[1]}")
            elif len(parts) == 4 and parts[3] == 'restore':
                self._ok(manager.restore_backup(parts[1], parts[2]),
                         message=f"Database restored successfully for {parts[1]}")
            else:
                self._not_found()

        elif method == 'DELETE' and len(parts) == 3 and parts[0] == 'backups':
            manager.delete_backup(parts[1], parts[2])
            self._ok(None, message=f"Backup deleted successfully: {parts[2]}")

        else:
            self._not_found()

    def _get_backups(self, manager: BackupManager, scheduler: BackupScheduler, rest: List[str]):
        if not rest:
            self._ok([b.to_dict() for b in manager.list_backups()])
        elif rest == ['status']:
            self._ok({'applications': manager.backup_status(), 'scheduledJobs': scheduler.get_jobs()})
        elif len(rest) == 2 and rest[0] == 'status':
            self._ok(manager.backup_status(rest[1]))
        elif len(rest) == 1:
            self._ok([b.to_dict() for b in manager.list_backups(rest[0])])
        else:
            self._not_found()

    def _get_monitoring(self, parts: List[str]):
        docker_monitor: Optional[DockerMonitor] = self.server.docker_monitor
        network_monitor: Optional[NetworkMonitor] = self.server.network_monitor

        if parts == ['applications']:
            self._ok([app.to_dict() for app in self.server.manager.applications])
        elif parts == ['network'] and network_monitor:
            self._ok(network_monitor.get_network_stats())
        elif parts == ['network', 'total'] and network_monitor:
            self._ok(network_monitor.get_total_traffic())
        elif docker_monitor is None:
            self._send_json(503, {'success': False, 'error': 'Docker monitoring is not available'})
        elif parts == ['containers']:
            self._ok([c.to_dict() for c in docker_monitor.get_containers()])
        elif parts == ['docker', 'health']:
            self._ok(docker_monitor.check_docker_health())
        elif len(parts) == 2 and parts[0] == 'applications':
            summary = docker_monitor.get_application_summary(parts[1])
            if summary is None:
                self._send_json(404, {'success': False, 'error': f"Application {parts[1]} not found"})
            else:
                self._ok(summary)
        elif len(parts) == 3 and parts[0] == 'applications' and parts[2] == 'containers':
            self._ok([c.to_dict() for c in docker_monitor.get_containers_by_application(parts[1])])
        else:
            self._not_found()

    def _ok(self, data: Any, message: Optional[str] = None):
        payload = {'success': True}
        if message:
            payload['message'] = message
        if data is not None:
            payload['data'] = data
        self._send_json(200, payload)

    def _not_found(self):
        self._send_json(404, {'success': False, 'error': 'Endpoint not found'})

    def _send_json(self, status: int, payload: Any):
        self._send_text(status, json.dumps(payload, indent=2, default=str), 'application/json')

    def _send_text(self, status: int, content: str, content_type: str):
        body = content.encode()
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


def create_api_server(manager: BackupManager, scheduler: BackupScheduler,
                      docker_monitor: Optional[DockerMonitor] = None,
                      network_monitor: Optional[NetworkMonitor] = None,
                      host: str = '0.0.0.0', port: int = METRICS_PORT) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), ApiHandler)
    server.manager = manager
    server.scheduler = scheduler
    server.docker_monitor = docker_monitor
    server.network_monitor = network_monitor
    return server


def start_api_server(manager: BackupManager, scheduler: BackupScheduler,
                     docker_monitor: Optional[DockerMonitor] = None,
                     network_monitor: Optional[NetworkMonitor] = None,
                     port: int = METRICS_PORT) -> ThreadingHTTPServer:
    """Start the HTTP server in a background thread."""
    server = create_api_server(manager, scheduler, docker_monitor, network_monitor, port=port)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"API server started on port {port}")
    logger.info(f"  Prometheus: http://0.0.0.0:{port}/metrics")
    logger.info(f"  Status:     http://0.0.0.0:{port}/status")
    logger.info(f"  Backups:    http://0.0.0.0:{port}/backups")
    return server


# =============================================================================
# MAIN
# =============================================================================

def run_forever(manager: BackupManager, scheduler: BackupScheduler,
                docker_monitor: DockerMonitor, network_monitor: NetworkMonitor):
    """Run the scheduler and API server until SIGTERM/SIGINT."""
    logger.info("=" * 60)
    logger.info("Application Backup Manager Starting")
    logger.info("=" * 60)
    logger.info(f"Backup directory: {manager.backup_dir}")
    logger.info(f"Applications: {len(manager.applications)}")
    logger.info(f"Check interval: {scheduler.check_interval} seconds")
    logger.info(f"Default schedule: {scheduler.default_schedule}")
    logger.info(f"Default retention: {manager.default_retention_days} days")
    logger.info(f"Metrics port: {METRICS_PORT}")
    logger.info("=" * 60)

    server = start_api_server(manager, scheduler, docker_monitor, network_monitor)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    scheduler.init()
    scheduler.start()

    try:
        while not stop.is_set():
            stop.wait(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        scheduler.stop_all()
        server.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Application Backup Manager')
    parser.add_argument('--config', metavar='PATH', help='Applications JSON file')
    parser.add_argument('--run-now', metavar='APP', help='Run backup now for application')
    parser.add_argument('--run-all', action='store_true', help='Run backups now for all applications')
    parser.add_argument('--list', nargs='?', const='', metavar='APP', help='List backups (optionally for one application)')
    parser.add_argument('--apps', action='store_true', help='List configured applications and schedules')
    parser.add_argument('--restore', nargs=2, metavar=('APP', 'FILE'), help='Restore a backup')
    parser.add_argument('--delete', nargs=2, metavar=('APP', 'FILE'), help='Delete a backup')
    parser.add_argument('--containers', action='store_true', help='Show Docker containers by application')
    parser.add_argument('--daemon', action='store_true', help='Run as daemon (default)')

    args = parser.parse_args(argv)

    def output(data):
        print(json.dumps(data, indent=2, default=str))

    try:
        applications = load_applications(Path(args.config) if args.config else None)
        manager = BackupManager(applications)
        scheduler = BackupScheduler(manager)

        if args.run_now:
            output(manager.create_backup(args.run_now))
        elif args.run_all:
            results = manager.create_all_backups()
            output(results)
            return 0 if all(r['success'] for r in results) else 1
        elif args.list is not None:
            output([b.to_dict() for b in manager.list_backups(args.list or None)])
        elif args.apps:
            scheduler.init()
            output({'applications': manager.backup_status(), 'scheduledJobs': scheduler.get_jobs()})
        elif args.restore:
            output(manager.restore_backup(*args.restore))
        elif args.delete:
            manager.delete_backup(*args.delete)
        elif args.containers:
            output([c.to_dict() for c in DockerMonitor(applications).get_containers()])
        else:
            run_forever(manager, scheduler, DockerMonitor(applications), NetworkMonitor())
    except BackupError as e:
        logger.error(str(e))
        return 1
    except DockerException as e:
        logger.error(f"Docker is not available: {e}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
