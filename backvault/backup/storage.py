"""
Object store clients for backup archives.

Supports:
- SpacesClient: S3-compatible object store (DigitalOcean Spaces, AWS S3, ...)
- LocalSpacesClient: Same interface over a local directory tree

Remote layout:
    nightly/{node_id}/{container}/{container}_{YYYYMMDD}.tar.gz[.enc]
"""

import os
import re
import shutil
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, List, Iterable
import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import ClientError, BotoCoreError

from .types import SpacesObject, format_iso_datetime


logger = logging.getLogger(__name__)

NIGHTLY_ROOT = 'nightly'

# delete_objects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

_BACKUP_DATE_RE = re.compile(r'_(\d{4})(\d{2})(\d{2})\.tar\.gz(?:\.enc)?$')
_LISTING_LINE_RE = re.compile(
    r'^\s*(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})\s+(\d+)\s+(\S+)\s*$'
)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def format_backup_date(dt: datetime) -> str:
    """Format a datetime as YYYYMMDD in UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y%m%d')


def node_prefix(node_id: str) -> str:
    return f"{NIGHTLY_ROOT}/{node_id}/"


def container_prefix(node_id: str, container: str) -> str:
    return f"{NIGHTLY_ROOT}/{node_id}/{container}/"


def nightly_remote_path(node_id: str, container: str, date: str) -> str:
    """Remote key of a plaintext nightly archive (encrypted uploads append '.enc')."""
    return f"{container_prefix(node_id, container)}{container}_{date}.tar.gz"


def backup_date_from_key(key: str) -> Optional[str]:
    """
    Extract the logical backup date from an archive key.

    Returns:
        ISO-8601 midnight UTC timestamp, or None if the key carries no date
    """
    match = _BACKUP_DATE_RE.search(key)
    if not match:
        return None
    year, month, day = match.groups()
    return f"{year}-{month}-{day}T00:00:00Z"


def parse_listing_line(line: str, uri_prefix: Optional[str] = None) -> Optional[SpacesObject]:
    """
    Parse one line of a line-oriented store listing.

    Example:
        2026-02-13 03:00    104857600   s3://bucket/nightly/node-1/tenant_abc/tenant_abc_20260213.tar.gz

    Args:
        line: Listing line
        uri_prefix: Store URI prefix to strip from the path. When omitted,
            a 'scheme://bucket/' prefix is stripped if present.

    Returns:
        SpacesObject, or None for lines that do not describe an object
    """
    match = _LISTING_LINE_RE.match(line)
    if not match:
        return None

    day, clock, size, uri = match.groups()

    if uri_prefix and uri.startswith(uri_prefix):
        path = uri[len(uri_prefix):]
    elif '://' in uri:
        # Drop scheme and bucket
        rest = uri.split('://', 1)[1]
        path = rest.split('/', 1)[1] if '/' in rest else ''
    else:
        path = uri

    path = path.lstrip('/')
    if not path or path.endswith('/'):
        return None

    return SpacesObject(path=path, size=int(size), date=f"{day}T{clock}:00Z")


def parse_listing(text: str, uri_prefix: Optional[str] = None) -> List[SpacesObject]:
    """Parse a full listing, silently skipping lines that are not objects."""
    objects = []
    for line in text.splitlines():
        obj = parse_listing_line(line, uri_prefix)
        if obj is not None:
            objects.append(obj)
    return objects


class SpacesClient:
    """
    Handler for an S3-compatible object store.

    All paths are object keys relative to the bucket.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize the object store client.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region name
            endpoint_url: Custom endpoint (e.g. https://nyc3.digitaloceanspaces.com)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (ClientError, BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize object store client: {e}")

    def list(self, prefix: str) -> List[SpacesObject]:
        """
        List objects under a prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    if key.endswith('/'):
                        continue
                    date = backup_date_from_key(key) or format_iso_datetime(obj['LastModified'])
                    objects.append(SpacesObject(path=key, size=obj['Size'], date=date))

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"List failed for {prefix} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"List failed for {prefix}: {e}")

    def upload(self, local_path: str, remote_path: str, cancellation_check: Optional[callable] = None):
        """
        Upload a local file to remote_path.

        Args:
            local_path: Path to local file
            remote_path: Destination object key
            cancellation_check: Optional function called between multipart chunks

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, remote_path, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, remote_path)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"Upload failed for {remote_path} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Upload failed for {remote_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, remote_path: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=remote_path,
                Body=f
            )

    def _multipart_upload(self, local_path: str, remote_path: str, cancellation_check: Optional[callable] = None):
        """
        Upload a large file in 10MB parts, aborting the upload on any error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=remote_path
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=remote_path,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=remote_path,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=remote_path,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id} for {remote_path}: {abort_error}")
            raise

    def download(self, remote_path: str, local_path: str):
        """
        Download an object to a local file.

        Raises:
            StorageError: If download fails
        """
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket_name, remote_path, local_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"Download failed for {remote_path} ({error_code}): {e}")
        except (BotoCoreError, Boto3Error) as e:
            raise StorageError(f"Download failed for {remote_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to write {local_path}: {e}")

    def remove(self, remote_path: str):
        """
        Delete a single object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=remote_path
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"Delete failed for {remote_path} ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Delete failed for {remote_path}: {e}")

    def remove_many(self, remote_paths: Iterable[str]):
        """
        Delete objects in batches of up to 1000 keys.

        Raises:
            StorageError: If any batch fails or any key is reported as not deleted
        """
        paths = list(remote_paths)

        try:
            for start in range(0, len(paths), DELETE_BATCH_SIZE):
                batch = paths[start:start + DELETE_BATCH_SIZE]
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={
                        'Objects': [{'Key': key} for key in batch],
                        'Quiet': True
                    }
                )

                errors = response.get('Errors', [])
                if errors:
                    details = ', '.join(
                        f"{err.get('Key')} ({err.get('Code', 'Unknown')})" for err in errors
                    )
                    raise StorageError(f"Failed to delete {len(errors)} object(s): {details}")

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"Batch delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Batch delete failed: {e}")

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"Connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to object store: {e}")


class LocalSpacesClient:
    """
    Object store backed by a local directory.

    Object keys map to paths under base_path. Used in development and tests.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local store directory: {e}")

    def _full_path(self, remote_path: str) -> Path:
        full_path = (self.base_path / remote_path).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise StorageError(f"Path escapes store root: {remote_path}")
        return full_path

    def list(self, prefix: str) -> List[SpacesObject]:
        try:
            objects = []

            for file_path in sorted(self.base_path.rglob('*')):
                if not file_path.is_file():
                    continue

                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                date = backup_date_from_key(key) or format_iso_datetime(
                    datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                )
                objects.append(SpacesObject(path=key, size=stat.st_size, date=date))

            return objects

        except OSError as e:
            raise StorageError(f"Failed to list local store under {prefix}: {e}")

    def upload(self, local_path: str, remote_path: str, cancellation_check: Optional[callable] = None):
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        if cancellation_check:
            cancellation_check()

        dest_path = self._full_path(remote_path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store {remote_path}: {e}")

    def download(self, remote_path: str, local_path: str):
        source_path = self._full_path(remote_path)

        if not source_path.is_file():
            raise StorageError(f"Object not found: {remote_path}")

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, local_path)
        except OSError as e:
            raise StorageError(f"Failed to download {remote_path}: {e}")

    def remove(self, remote_path: str):
        full_path = self._full_path(remote_path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {remote_path}: {e}")

    def remove_many(self, remote_paths: Iterable[str]):
        for remote_path in remote_paths:
            self.remove(remote_path)

    def test_connection(self) -> bool:
        if not self.base_path.is_dir():
            raise StorageError(f"Local store directory missing: {self.base_path}")
        return True


def create_spaces_client(config):
    """
    Factory function to create the configured object store client.

    Args:
        config: Mapping with SPACES_* and LOCAL_SPACES_DIR keys (e.g. app.config)

    Returns:
        SpacesClient when SPACES_BUCKET is set, LocalSpacesClient otherwise
    """
    bucket = config.get('SPACES_BUCKET')

    if bucket:
        return SpacesClient(
            access_key=config.get('SPACES_ACCESS_KEY'),
            secret_key=config.get('SPACES_SECRET_KEY'),
            bucket_name=bucket,
            region=config.get('SPACES_REGION') or 'us-east-1',
            endpoint_url=config.get('SPACES_ENDPOINT')
        )

    return LocalSpacesClient(config['LOCAL_SPACES_DIR'])
