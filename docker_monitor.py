"""
Docker container monitoring.

Lists every container on the host, attributes each one to an application
from the roster and turns the cumulative counters of a `docker stats`
snapshot into CPU/memory percentages and network rates.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, List, Any, Tuple
from dataclasses import dataclass, field

import docker
from docker.errors import DockerException

from app_config import Application, DOCKER_CACHE_TTL, find_application

logger = logging.getLogger(__name__)

UNKNOWN_APPLICATION = 'unknown'
MAX_STATS_WORKERS = 8


# =============================================================================
# ATTRIBUTION
# =============================================================================

def resolve_application(container_name: str, applications: List[Application]) -> str:
    """Return the name of the application owning a container, or 'unknown'.

    Exact matches against declared fragments or database containers win
    first. Otherwise the first application in declaration order whose
    fragment is a substring of the name (or vice versa), or whose database
    container is a substring of the name, is chosen.
    """
    name = (container_name or '').lstrip('/')
    if not name:
        return UNKNOWN_APPLICATION

    for app in applications:
        if name in app.containers:
            return app.name
        if app.database and app.database.container == name:
            return app.name

    for app in applications:
        for fragment in app.containers:
            if fragment and (fragment in name or name in fragment):
                return app.name
        if app.database and app.database.container and app.database.container in name:
            return app.name

    return UNKNOWN_APPLICATION


# =============================================================================
# STATS PIPELINE
# =============================================================================

def cpu_percent(current_cpu: float, previous_cpu: float,
                current_system: float, previous_system: float, online_cpus: int) -> float:
    """CPU usage of a container relative to one core (may exceed 100)."""
    cpu_delta = current_cpu - previous_cpu
    system_delta = current_system - previous_system
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    return (cpu_delta / system_delta) * online_cpus * 100.0


def calculate_cpu_percent(stats: Dict[str, Any]) -> float:
    """CPU percentage from a raw `docker stats` document."""
    cpu_stats = stats.get('cpu_stats') or {}
    precpu_stats = stats.get('precpu_stats') or {}
    cpu_usage = cpu_stats.get('cpu_usage') or {}
    precpu_usage = precpu_stats.get('cpu_usage') or {}

    online_cpus = (
        cpu_stats.get('online_cpus')
        or len(cpu_usage.get('percpu_usage') or [])
        or 1
    )

    return cpu_percent(
        cpu_usage.get('total_usage', 0),
        precpu_usage.get('total_usage', 0),
        cpu_stats.get('system_cpu_usage', 0),
        precpu_stats.get('system_cpu_usage', 0),
        online_cpus,
    )


def calculate_memory_percent(usage: int, limit: int) -> float:
    if limit > 0:
        return usage / limit * 100.0
    return 0.0


class RateTracker:
    """Previous-sample cache used to derive byte rates from cumulative counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._previous: Dict[str, Tuple[int, int, float]] = {}

    def rate(self, key: str, rx_bytes: int, tx_bytes: int,
             now: Optional[float] = None) -> Tuple[float, float]:
        """Return (rx bytes/s, tx bytes/s) since the previous sample of `key`.

        The first sample of a key returns zero rates and seeds the cache.
        """
        now = time.time() if now is None else now

        with self._lock:
            previous = self._previous.get(key)
            self._previous[key] = (rx_bytes, tx_bytes, now)

        if previous is None:
            return 0.0, 0.0

        prev_rx, prev_tx, prev_time = previous
        elapsed = now - prev_time
        if elapsed <= 0:
            return 0.0, 0.0

        # Counter resets (container restart) would give negative rates
        rx_speed = max(0, rx_bytes - prev_rx) / elapsed
        tx_speed = max(0, tx_bytes - prev_tx) / elapsed
        return rx_speed, tx_speed

    def forget(self, key: str):
        with self._lock:
            self._previous.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._previous)


@dataclass
class ContainerStats:
    """Point-in-time view of one container."""
    id: str
    name: str
    image: str
    state: str
    status: Optional[str] = None
    created: Optional[str] = None
    application: str = UNKNOWN_APPLICATION
    health: Optional[str] = None
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    network_rx_speed: float = 0.0
    network_tx_speed: float = 0.0
    ports: List[Dict[str, Any]] = field(default_factory=list)
    mounts: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == 'running'

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'image': self.image,
            'state': self.state,
            'status': self.status,
            'health': self.health,
            'created': self.created,
            'application': self.application,
            'ports': self.ports,
            'mounts': self.mounts,
        }
        if self.error:
            data['error'] = self.error
            return data

        data['stats'] = {
            'cpuPercent': f"{self.cpu_percent:.2f}",
            'memoryUsage': self.memory_usage,
            'memoryLimit': self.memory_limit,
            'memoryPercent': f"{self.memory_percent:.2f}",
            'networkRx': self.network_rx,
            'networkTx': self.network_tx,
            'networkRxSpeed': round(self.network_rx_speed),
            'networkTxSpeed': round(self.network_tx_speed),
        }
        return data


def parse_ports(attrs: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten NetworkSettings.Ports into private/public/type entries."""
    ports = []
    bindings_by_port = (attrs.get('NetworkSettings') or {}).get('Ports') or {}

    for port_spec, bindings in bindings_by_port.items():
        private, _, proto = port_spec.partition('/')
        if not bindings:
            ports.append({'private': int(private), 'public': None, 'type': proto or 'tcp'})
            continue
        for binding in bindings:
            host_port = binding.get('HostPort')
            ports.append({
                'private': int(private),
                'public': int(host_port) if host_port else None,
                'type': proto or 'tcp',
            })

    return ports


def parse_mounts(attrs: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            'type': m.get('Type'),
            'source': m.get('Source'),
            'destination': m.get('Destination'),
        }
        for m in attrs.get('Mounts') or []
    ]


def describe_status(attrs: Dict[str, Any]) -> Optional[str]:
    """Human-readable status, e.g. "Up since ..." or "Exited (1)".

    Sparse listings carry Docker's own summary in `Status`; full inspect
    data only has the `State` block, so the summary is rebuilt from it.
    """
    if attrs.get('Status'):
        return attrs['Status']

    state = attrs.get('State') or {}
    status = state.get('Status')
    if status == 'running':
        return f"Up since {state['StartedAt']}" if state.get('StartedAt') else 'Up'
    if status == 'exited':
        return f"Exited ({state.get('ExitCode', 0)})"
    return status.capitalize() if status else None


# =============================================================================
# DOCKER MONITOR
# =============================================================================

class DockerMonitor:
    """Collects container snapshots from the Docker daemon."""

    def __init__(self, applications: List[Application], client=None,
                 rate_tracker: Optional[RateTracker] = None,
                 cache_ttl: float = DOCKER_CACHE_TTL):
        self.applications = applications
        self._client = client
        self.rate_tracker = rate_tracker or RateTracker()
        self.cache_ttl = cache_ttl
        self._cache_lock = threading.Lock()
        self._cached_containers: Optional[List[ContainerStats]] = None
        self._last_update: Optional[float] = None

    @property
    def client(self):
        """Docker client (lazy initialization)"""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def get_containers(self) -> List[ContainerStats]:
        """Snapshot every container (all states) with its resource usage."""
        containers = self.client.containers.list(all=True)

        if containers:
            workers = min(MAX_STATS_WORKERS, len(containers))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                details = list(pool.map(self._describe, containers))
        else:
            details = []

        self._forget_removed({c.id for c in containers})

        with self._cache_lock:
            self._cached_containers = details
            self._last_update = time.time()

        logger.debug(f"Collected stats for {len(details)} container(s)")
        return details

    def _forget_removed(self, live_ids):
        """Drop rate samples of containers that no longer exist."""
        for key in self.rate_tracker.keys():
            if key.split('/', 1)[0] not in live_ids:
                self.rate_tracker.forget(key)

    def get_cached_containers(self, max_age: Optional[float] = None) -> Optional[List[ContainerStats]]:
        """Return the last snapshot if it is younger than `max_age` seconds."""
        max_age = self.cache_ttl if max_age is None else max_age
        with self._cache_lock:
            if self._last_update is not None and time.time() - self._last_update < max_age:
                return self._cached_containers
        return None

    def _current_containers(self) -> List[ContainerStats]:
        cached = self.get_cached_containers()
        if cached is not None:
            return cached
        return self.get_containers()

    def get_containers_by_application(self, app_name: str) -> List[ContainerStats]:
        return [c for c in self._current_containers() if c.application == app_name]

    def get_container_by_name(self, name: str) -> Optional[ContainerStats]:
        containers = self._current_containers()
        for container in containers:
            if container.name == name:
                return container
        for container in containers:
            if name in container.name:
                return container
        return None

    def get_application_summary(self, app_name: str) -> Optional[Dict[str, Any]]:
        """Aggregated resource usage of one application, None if unknown."""
        app = find_application(self.applications, app_name)
        if app is None:
            return None

        containers = self.get_containers_by_application(app_name)
        total_cpu = sum(c.cpu_percent for c in containers)
        total_memory = sum(c.memory_usage for c in containers)

        return {
            'name': app.name,
            'description': app.description,
            'containers': [c.to_dict() for c in containers],
            'summary': {
                'totalContainers': len(containers),
                'runningContainers': sum(1 for c in containers if c.is_running),
                'totalCpuPercent': f"{total_cpu:.2f}",
                'totalMemoryUsage': total_memory,
            },
        }

    def check_docker_health(self) -> Dict[str, Any]:
        try:
            info = self.client.info()
        except DockerException as e:
            logger.error(f"Error checking Docker health: {e}")
            return {'healthy': False, 'error': str(e)}

        return {
            'healthy': True,
            'containers': info.get('Containers'),
            'containersRunning': info.get('ContainersRunning'),
            'containersPaused': info.get('ContainersPaused'),
            'containersStopped': info.get('ContainersStopped'),
            'images': info.get('Images'),
            'serverVersion': info.get('ServerVersion'),
            'operatingSystem': info.get('OperatingSystem'),
            'architecture': info.get('Architecture'),
        }

    def _describe(self, container) -> ContainerStats:
        attrs = container.attrs or {}
        name = (container.name or attrs.get('Name', '')).lstrip('/')
        state = attrs.get('State') or {}

        result = ContainerStats(
            id=container.id[:12],
            name=name,
            image=(attrs.get('Config') or {}).get('Image', ''),
            state=state.get('Status') or container.status,
            status=describe_status(attrs),
            created=attrs.get('Created'),
            application=resolve_application(name, self.applications),
            health=(state.get('Health') or {}).get('Status'),
            ports=parse_ports(attrs),
            mounts=parse_mounts(attrs),
        )

        try:
            stats = container.stats(stream=False)
            self._apply_stats(result, container.id, stats)
        except Exception as e:
            logger.warning(f"Error getting stats for container {name}: {e}")
            result.error = 'Could not fetch detailed stats'

        return result

    def _apply_stats(self, result: ContainerStats, container_id: str, stats: Dict[str, Any]):
        result.cpu_percent = calculate_cpu_percent(stats)

        memory_stats = stats.get('memory_stats') or {}
        result.memory_usage = memory_stats.get('usage') or 0
        result.memory_limit = memory_stats.get('limit') or 0
        result.memory_percent = calculate_memory_percent(result.memory_usage, result.memory_limit)

        now = time.time()
        for iface, counters in (stats.get('networks') or {}).items():
            rx_bytes = counters.get('rx_bytes', 0)
            tx_bytes = counters.get('tx_bytes', 0)
            rx_speed, tx_speed = self.rate_tracker.rate(f"{container_id}/{iface}", rx_bytes, tx_bytes, now)
            result.network_rx += rx_bytes
            result.network_tx += tx_bytes
            result.network_rx_speed += rx_speed
            result.network_tx_speed += tx_speed
