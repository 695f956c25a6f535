"""
Server Monitor configuration.

Process-wide settings come from environment variables. The application
roster is read once at startup from a JSON file:

  {
    "applications": [
      {
        "name": "shop",
        "description": "Web shop",
        "containers": ["shop-web", "shop-worker"],
        "database": {
          "type": "postgresql",            # postgresql|mysql|mongodb
          "container": "shop-db",
          "database": "shop",
          "username": "shop",
          "password": "secret",
          "backupSchedule": "0 2 * * *",   # optional, cron
          "retentionDays": 7               # optional
        }
      }
    ]
  }

Applications without a "database" block are monitored only.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Constants
BACKUP_DIR = Path(os.getenv('BACKUP_DIR', './backups'))
DEFAULT_BACKUP_SCHEDULE = os.getenv('DEFAULT_BACKUP_SCHEDULE', '0 2 * * *')
DEFAULT_RETENTION_DAYS = int(os.getenv('DEFAULT_RETENTION_DAYS', '7'))
CHECK_INTERVAL = int(os.getenv('CHECK_INTERVAL', '60'))  # seconds
METRICS_PORT = int(os.getenv('METRICS_PORT', '9090'))
BACKUP_TIMEOUT = int(os.getenv('BACKUP_TIMEOUT', '3600'))  # seconds
DOCKER_CACHE_TTL = float(os.getenv('DOCKER_CACHE_TTL', '10'))  # seconds
APPLICATIONS_FILE = Path(os.getenv('APPLICATIONS_FILE', 'config/applications.json'))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

SUPPORTED_ENGINES = ('postgresql', 'mysql', 'mongodb')


@dataclass
class DatabaseConfig:
    """Database owned by an application."""
    type: str
    container: str
    database: str
    username: Optional[str] = None
    password: Optional[str] = None
    backup_schedule: Optional[str] = None
    retention_days: Optional[int] = None

    def __post_init__(self):
        self.type = (self.type or '').lower()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatabaseConfig':
        retention = data.get('retentionDays')
        return cls(
            type=data.get('type', ''),
            container=data.get('container', ''),
            database=data.get('database', ''),
            username=data.get('username'),
            password=data.get('password'),
            backup_schedule=data.get('backupSchedule'),
            retention_days=int(retention) if retention is not None else None,
        )


@dataclass
class Application:
    """An application running on the host, identified by its name."""
    name: str
    containers: List[str] = field(default_factory=list)
    description: str = ''
    database: Optional[DatabaseConfig] = None

    @property
    def has_database(self) -> bool:
        return self.database is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Application':
        if not data.get('name'):
            raise ValueError(f"Application entry without a name: {data}")
        database = data.get('database')
        return cls(
            name=data['name'],
            containers=list(data.get('containers') or []),
            description=data.get('description', ''),
            database=DatabaseConfig.from_dict(database) if database else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'containers': self.containers,
            'hasDatabase': self.has_database,
            'databaseType': self.database.type if self.database else None,
        }


def parse_applications(data: Dict[str, Any]) -> List[Application]:
    """Build the roster from the decoded JSON document."""
    applications = [Application.from_dict(item) for item in data.get('applications') or []]

    seen = set()
    for app in applications:
        if app.name in seen:
            raise ValueError(f"Duplicate application name in roster: {app.name}")
        seen.add(app.name)

    return applications


def load_applications(path: Optional[Path] = None) -> List[Application]:
    """Load the application roster. A missing file yields an empty roster."""
    path = Path(path) if path is not None else APPLICATIONS_FILE

    if not path.exists():
        logger.warning(f"No applications file found at {path}, no applications configured")
        return []

    with open(path) as f:
        applications = parse_applications(json.load(f))

    logger.info(f"Loaded {len(applications)} application(s) from {path}")
    return applications


def find_application(applications: List[Application], name: str) -> Optional[Application]:
    for app in applications:
        if app.name == name:
            return app
    return None
