"""
Unit tests for backup verification (backvault/backup/verifier.py).

Tests sampling, per-archive checks and failure isolation using a local
directory store and mocked stores.
"""

import os
import gzip
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from boto3.exceptions import RetriesExceededError

from backvault.backup.encryption import ArchiveEncryptor
from backvault.backup.storage import SpacesClient, StorageError
from backvault.backup.types import SpacesObject
from backvault.backup.verifier import (
    BackupVerifier,
    ArchiveInvalidError,
    check_gzip_archive,
)


PREFIX = 'nightly/node-1/'
VERIFIED_AT = datetime(2026, 2, 15, 6, 0, tzinfo=timezone.utc)


def put(store, key, data):
    path = store.base_path / key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def gzip_bytes(size=4096):
    return gzip.compress(os.urandom(size))


@pytest.fixture
def verifier_factory(tmp_path):
    def _make(store, **kwargs):
        return BackupVerifier(
            store,
            temp_dir=str(tmp_path / 'verify'),
            clock=lambda: VERIFIED_AT,
            **kwargs
        )
    return _make


class TestCheckGzipArchive:
    """Test the structural archive checks."""

    def test_valid_archive(self, make_archive):
        check_gzip_archive(str(make_archive()))

    def test_too_small(self, tmp_path):
        path = tmp_path / "tiny.tar.gz"
        path.write_bytes(gzip.compress(b"x"))

        with pytest.raises(ArchiveInvalidError, match=r"Archive too small \(\d+ bytes\), likely corrupt"):
            check_gzip_archive(str(path))

    def test_bad_magic(self, tmp_path):
        path = tmp_path / "plain.tar.gz"
        path.write_bytes(b"PK" + os.urandom(1000))

        with pytest.raises(ArchiveInvalidError, match="Invalid gzip header: 0x504b"):
            check_gzip_archive(str(path))

    def test_truncated_stream(self, tmp_path):
        """Test a valid header with a cut-off body fails decompression."""
        data = gzip_bytes(8192)
        path = tmp_path / "truncated.tar.gz"
        path.write_bytes(data[:len(data) // 2])

        with pytest.raises(EOFError):
            check_gzip_archive(str(path))

    def test_custom_min_size(self, tmp_path):
        path = tmp_path / "small.tar.gz"
        path.write_bytes(gzip.compress(b"x"))

        check_gzip_archive(str(path), min_size=10)


class TestBackupVerifier:
    """Test BackupVerifier.verify."""

    def test_all_valid(self, local_store, verifier_factory):
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', gzip_bytes())
        put(local_store, 'nightly/node-1/b/b_20260213.tar.gz', gzip_bytes())

        report = verifier_factory(local_store).verify(PREFIX)

        assert report.total_checked == 2
        assert report.passed == 2
        assert report.failed == 0
        assert report.verified_at == VERIFIED_AT
        assert all(r.valid and r.error is None for r in report.results)
        assert all(r.size_mb is not None for r in report.results)

    def test_limit_downloads_only_sample(self, verifier_factory):
        """Test limit=5 over 20 objects downloads exactly 5."""
        store = MagicMock()
        store.list.return_value = [
            SpacesObject(path=f'nightly/node-1/a/a_202602{day:02d}.tar.gz', size=1024,
                         date=f'2026-02-{day:02d}T00:00:00Z')
            for day in range(1, 21)
        ]

        def fake_download(remote_path, local_path):
            with open(local_path, 'wb') as f:
                f.write(gzip_bytes())

        store.download.side_effect = fake_download

        report = verifier_factory(store).verify(PREFIX, limit=5)

        assert store.download.call_count == 5
        assert report.total_checked == 5
        # Newest first
        assert [r.path for r in report.results] == [
            f'nightly/node-1/a/a_202602{day:02d}.tar.gz' for day in (20, 19, 18, 17, 16)
        ]

    def test_corrupt_object_isolated(self, local_store, verifier_factory):
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', gzip_bytes())
        put(local_store, 'nightly/node-1/b/b_20260213.tar.gz', b'\x00' * 2048)
        put(local_store, 'nightly/node-1/c/c_20260213.tar.gz', gzip_bytes())

        report = verifier_factory(local_store).verify(PREFIX)

        assert report.total_checked == 3
        assert report.passed == 2
        assert report.failed == 1
        bad = [r for r in report.results if not r.valid]
        assert bad[0].path == 'nightly/node-1/b/b_20260213.tar.gz'
        assert 'Invalid gzip header' in bad[0].error

    def test_truncated_object_fails(self, local_store, verifier_factory):
        data = gzip_bytes(16384)
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', data[:len(data) // 2])

        report = verifier_factory(local_store).verify(PREFIX)

        assert report.failed == 1
        assert report.results[0].error

    def test_too_small_object_fails(self, local_store, verifier_factory):
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', gzip.compress(b'tiny'))

        report = verifier_factory(local_store).verify(PREFIX)

        assert report.failed == 1
        assert 'too small' in report.results[0].error

    def test_download_failure_isolated(self, verifier_factory):
        store = MagicMock()
        store.list.return_value = [
            SpacesObject(path='nightly/node-1/a/a_20260213.tar.gz', size=1, date='2026-02-13T00:00:00Z'),
            SpacesObject(path='nightly/node-1/b/b_20260213.tar.gz', size=1, date='2026-02-13T00:00:00Z'),
        ]

        def fake_download(remote_path, local_path):
            if '/a/' in remote_path:
                raise StorageError("Download failed for a (NoSuchKey)")
            with open(local_path, 'wb') as f:
                f.write(gzip_bytes())

        store.download.side_effect = fake_download

        report = verifier_factory(store).verify(PREFIX)

        assert report.total_checked == 2
        assert report.passed == 1
        assert report.results[0].error == "Download failed for a (NoSuchKey)"
        assert report.results[0].size_mb is None

    def test_transfer_retries_exhausted_isolated(self, mock_s3, verifier_factory):
        """Test a boto3 transfer error on one object leaves the others verified."""
        bucket = mock_s3.Bucket('test-bucket')
        for name in ('a', 'b', 'c'):
            bucket.put_object(Key=f'nightly/node-1/{name}/{name}_20260213.tar.gz', Body=gzip_bytes())

        store = SpacesClient('test_key', 'test_secret', 'test-bucket', region='us-east-1')
        real_download = store.s3_client.download_file

        def flaky_download(bucket_name, key, filename, *args, **kwargs):
            if '/b/' in key:
                raise RetriesExceededError(ConnectionResetError(), msg='Max Retries Exceeded')
            return real_download(bucket_name, key, filename, *args, **kwargs)

        with patch.object(store.s3_client, 'download_file', side_effect=flaky_download):
            report = verifier_factory(store).verify(PREFIX)

        assert report.total_checked == 3
        assert report.passed == 2
        failed = [r for r in report.results if not r.valid]
        assert failed[0].path == 'nightly/node-1/b/b_20260213.tar.gz'
        assert 'Max Retries Exceeded' in failed[0].error

    def test_unexpected_error_isolated(self, verifier_factory):
        store = MagicMock()
        store.list.return_value = [
            SpacesObject(path='nightly/node-1/a/a_20260213.tar.gz', size=1, date='2026-02-13T00:00:00Z'),
            SpacesObject(path='nightly/node-1/b/b_20260212.tar.gz', size=1, date='2026-02-12T00:00:00Z'),
        ]

        def fake_download(remote_path, local_path):
            if '/a/' in remote_path:
                raise RuntimeError("connection pool is closed")
            with open(local_path, 'wb') as f:
                f.write(gzip_bytes())

        store.download.side_effect = fake_download

        report = verifier_factory(store).verify(PREFIX)

        assert report.total_checked == 2
        assert report.passed == 1
        assert report.results[0].valid is False
        assert report.results[0].error == "connection pool is closed"

    def test_listing_failure_returns_empty_report(self, verifier_factory):
        store = MagicMock()
        store.list.side_effect = StorageError("List failed")

        report = verifier_factory(store).verify(PREFIX)

        assert report.total_checked == 0
        assert report.passed == 0
        assert report.failed == 0
        assert report.verified_at == VERIFIED_AT
        store.download.assert_not_called()

    def test_empty_prefix(self, local_store, verifier_factory):
        report = verifier_factory(local_store).verify(PREFIX)

        assert report.total_checked == 0

    def test_scratch_files_removed(self, local_store, verifier_factory, tmp_path):
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', gzip_bytes())
        put(local_store, 'nightly/node-1/b/b_20260213.tar.gz', b'garbage' * 200)

        verifier_factory(local_store).verify(PREFIX)

        assert os.listdir(tmp_path / 'verify') == []

    def test_encrypted_archive_verified(self, local_store, verifier_factory, encryption_key, make_archive, tmp_path):
        encryptor = ArchiveEncryptor()
        archive = make_archive()
        enc_path = tmp_path / "a.tar.gz.enc"
        encryptor.encrypt_file(str(archive), str(enc_path), encryption_key)
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz.enc', enc_path.read_bytes())

        verifier = verifier_factory(local_store, encryptor=encryptor, encryption_key=encryption_key)
        report = verifier.verify(PREFIX)

        assert report.passed == 1
        assert os.listdir(tmp_path / 'verify') == []

    def test_encrypted_archive_without_key_fails(self, local_store, verifier_factory, encryption_key, make_archive, tmp_path):
        encryptor = ArchiveEncryptor()
        archive = make_archive()
        enc_path = tmp_path / "a.tar.gz.enc"
        encryptor.encrypt_file(str(archive), str(enc_path), encryption_key)
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz.enc', enc_path.read_bytes())

        report = verifier_factory(local_store).verify(PREFIX)

        assert report.failed == 1
        assert report.results[0].error == "Encrypted archive but no key configured"

    def test_encrypted_archive_wrong_key_fails(self, local_store, verifier_factory, encryption_key, make_archive, tmp_path):
        encryptor = ArchiveEncryptor()
        archive = make_archive()
        enc_path = tmp_path / "a.tar.gz.enc"
        encryptor.encrypt_file(str(archive), str(enc_path), encryption_key)
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz.enc', enc_path.read_bytes())

        verifier = verifier_factory(local_store, encryptor=encryptor, encryption_key=os.urandom(32))
        report = verifier.verify(PREFIX)

        assert report.failed == 1
        assert 'Authentication failed' in report.results[0].error

    def test_report_to_dict(self, local_store, verifier_factory):
        put(local_store, 'nightly/node-1/a/a_20260213.tar.gz', gzip_bytes())

        data = verifier_factory(local_store).verify(PREFIX).to_dict()

        assert data['totalChecked'] == 1
        assert data['passed'] == 1
        assert data['failed'] == 0
        assert data['verifiedAt'] == '2026-02-15T06:00:00.000Z'
        assert data['results'][0]['path'] == 'nightly/node-1/a/a_20260213.tar.gz'
        assert data['results'][0]['valid'] is True
