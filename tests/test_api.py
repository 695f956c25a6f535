"""Tests for the HTTP status and backup API."""

import json
import threading
from unittest.mock import MagicMock
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import pytest
from docker.errors import DockerException

from backup_manager import BackupScheduler, create_api_server, main
from docker_monitor import DockerMonitor


@pytest.fixture
def serve(manager):
    servers = []

    def start(docker_monitor=None, network_monitor=None):
        scheduler = BackupScheduler(manager, default_schedule='0 2 * * *')
        server = create_api_server(manager, scheduler, docker_monitor, network_monitor,
                                   host='127.0.0.1', port=0)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f'http://127.0.0.1:{server.server_address[1]}'

    yield start

    for server in servers:
        server.shutdown()
        server.server_close()


def request(url, method='GET'):
    try:
        with urlopen(Request(url, method=method), timeout=5) as response:
            return response.status, response.read().decode(), response.headers['Content-Type']
    except HTTPError as e:
        return e.code, e.read().decode(), e.headers['Content-Type']


def request_json(url, method='GET'):
    status, body, _ = request(url, method)
    return status, json.loads(body)


def test_health_and_index(serve):
    base = serve()

    assert request_json(f'{base}/health') == (200, {'status': 'healthy'})
    assert request_json(f'{base}/readyz') == (200, {'status': 'ready'})
    status, index = request_json(f'{base}/')
    assert status == 200
    assert '/metrics' in index['endpoints']


def test_metrics_exposition(serve, manager):
    manager.create_backup('shop')
    base = serve()

    status, body, content_type = request(f'{base}/metrics')

    assert status == 200
    assert content_type.startswith('text/plain')
    assert 'db_backup_last_success{application="shop",db_type="postgresql",database="shop"} 1' in body
    assert 'db_backup_applications_configured 2' in body


def test_create_list_and_delete(serve, manager):
    base = serve()

    status, created = request_json(f'{base}/backups/shop', 'POST')
    assert status == 200
    assert created['success'] is True
    filename = created['data']['filename']

    status, listing = request_json(f'{base}/backups/shop')
    assert [b['filename'] for b in listing['data']] == [filename]

    status, deleted = request_json(f'{base}/backups/shop/{filename}', 'DELETE')
    assert status == 200
    assert manager.list_backups('shop') == []

    status, missing = request_json(f'{base}/backups/shop/{filename}', 'DELETE')
    assert status == 404
    assert missing['success'] is False


def test_create_all_reports_counts(serve):
    base = serve()

    status, payload = request_json(f'{base}/backups', 'POST')

    assert status == 200
    assert [r['application'] for r in payload['data']] == ['shop', 'blog']
    assert payload['message'] == 'Backup completed: 2 succeeded, 0 failed'


@pytest.mark.parametrize('path,expected', [
    ('/backups/nope', 404),
    ('/backups/proxy', 400),
])
def test_create_error_status(serve, path, expected):
    status, payload = request_json(serve() + path, 'POST')
    assert status == expected
    assert payload['success'] is False


def test_restore(serve, manager, executor):
    filename = manager.create_backup('blog')['filename']
    base = serve()

    status, payload = request_json(f'{base}/backups/blog/{filename}/restore', 'POST')

    assert status == 200
    assert payload['data']['backup'] == filename
    assert len(executor.restores) == 1


def test_backup_status(serve):
    status, payload = request_json(serve() + '/backups/status/shop')
    assert status == 200
    assert payload['data']['application'] == 'shop'


def test_unknown_endpoint(serve):
    status, payload = request_json(serve() + '/nothing/here')
    assert status == 404
    assert payload == {'success': False, 'error': 'Endpoint not found'}


def test_applications_without_docker(serve):
    base = serve()

    status, payload = request_json(f'{base}/applications')
    assert status == 200
    assert [a['name'] for a in payload['data']] == ['shop', 'blog', 'proxy']

    status, payload = request_json(f'{base}/containers')
    assert status == 503


def test_application_summary_unknown(serve, applications):
    client = MagicMock()
    client.containers.list.return_value = []
    base = serve(docker_monitor=DockerMonitor(applications, client=client))

    status, _ = request_json(f'{base}/applications/nope')
    assert status == 404

    status, payload = request_json(f'{base}/applications/shop')
    assert status == 200
    assert payload['data']['summary']['totalContainers'] == 0


class TestCli:

    @pytest.fixture
    def config(self, tmp_path):
        path = tmp_path / 'applications.json'
        path.write_text(json.dumps({'applications': [{'name': 'proxy', 'containers': ['traefik']}]}))
        return path

    def test_list_empty(self, config, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        assert main(['--config', str(config), '--list']) == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_backup_error_exit_status(self, config):
        assert main(['--config', str(config), '--run-now', 'proxy']) == 1

    def test_invalid_roster_exit_status(self, tmp_path):
        path = tmp_path / 'applications.json'
        path.write_text(json.dumps({'applications': [{'name': 'a'}, {'name': 'a'}]}))
        assert main(['--config', str(path), '--list']) == 1

    def test_docker_unavailable_exit_status(self, config, monkeypatch):
        def unavailable(self):
            raise DockerException('Error while fetching server API version')

        monkeypatch.setattr(DockerMonitor, 'get_containers', unavailable)
        assert main(['--config', str(config), '--containers']) == 1
