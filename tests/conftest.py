"""
Shared pytest fixtures for backvault tests.

This module provides fixtures for:
- Flask app with in-memory SQLite
- Database setup for the backup status table
- Encryption keys
- Mock fixtures for external services (S3 via moto, container export)
- Archive files for verification tests
"""

import os
import gzip
import shutil
import tempfile

import pytest
import boto3
from moto import mock_aws

from backvault import create_app, db as _db
from backvault.backup.storage import LocalSpacesClient


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests. The scheduler
    is never started.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing', start_scheduler_process=False)

    app.config.update({
        'TESTING': True,
        'NODE_ID': 'node-1',
        'BACKUP_DIR': os.path.join(temp_dir, 'backups'),
        'VERIFY_TEMP_DIR': os.path.join(temp_dir, 'verify'),
        'LOCAL_SPACES_DIR': os.path.join(temp_dir, 'spaces'),
    })

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def encryption_key():
    """Random 32-byte archive key."""
    return os.urandom(32)


@pytest.fixture
def local_store(tmp_path):
    """Object store backed by a temporary directory."""
    return LocalSpacesClient(str(tmp_path / 'spaces'))


@pytest.fixture
def mock_s3():
    """
    Mock S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def make_archive(tmp_path):
    """
    Factory writing a gzip archive of incompressible data.

    Random payloads keep the compressed size above the verifier's minimum.
    """
    def _make(name='archive.tar.gz', payload_size=4096):
        path = tmp_path / name
        with gzip.open(path, 'wb') as f:
            f.write(os.urandom(payload_size))
        return path

    return _make


class FakeExporter:
    """
    In-memory stand-in for the container runtime.

    Writes a small gzip archive for each export; containers listed in
    `failing` raise instead.
    """

    def __init__(self, containers, failing=None, payload_size=2048):
        self.containers = list(containers)
        self.failing = set(failing or [])
        self.payload_size = payload_size
        self.exported = []

    def list_tenant_containers(self):
        return list(self.containers)

    def export(self, name, backup_dir):
        if name in self.failing:
            raise RuntimeError(f"export failed for {name}")

        os.makedirs(backup_dir, exist_ok=True)
        out_path = os.path.join(backup_dir, f"{name}.tar.gz")
        with gzip.open(out_path, 'wb') as f:
            f.write(os.urandom(self.payload_size))

        self.exported.append(name)
        return out_path


@pytest.fixture
def fake_exporter_class():
    return FakeExporter
