"""
Backup integrity verification.

Samples archives from the object store, downloads each one and proves it
is restorable: large enough, a gzip stream, and decompressible end to end.
A truncated archive with a valid header fails. Encrypted archives are
decrypted first when a key is available.

Every object is checked independently; listing, download and decompression
failures are folded into the report rather than raised.
"""

import os
import gzip
import zlib
import logging
from datetime import datetime, timezone
from typing import Optional, Callable, List

from .types import VerificationResult, VerificationReport
from .storage import StorageError
from .encryption import EncryptionError
from .retention import sort_newest_first


logger = logging.getLogger(__name__)

GZIP_MAGIC = b'\x1f\x8b'
MIN_VALID_SIZE_BYTES = 512
DECOMPRESS_CHUNK_SIZE = 1024 * 1024  # 1MB
BYTES_PER_MB = 1024 * 1024


class ArchiveInvalidError(Exception):
    """Raised when a downloaded archive fails a structural check."""
    pass


class BackupVerifier:
    """
    Verifies a sample of remote backups under a prefix.
    """

    def __init__(self, store, temp_dir: str = '/tmp/backup-verify', encryptor=None,
                 encryption_key: Optional[bytes] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            store: Object store client (SpacesClient interface)
            temp_dir: Scratch directory, exclusive to the verifier
            encryptor: ArchiveEncryptor for '.enc' archives
            encryption_key: Key for '.enc' archives
            clock: Returns the current UTC time (injectable for tests)
        """
        self.store = store
        self.temp_dir = temp_dir
        self.encryptor = encryptor
        self.encryption_key = encryption_key
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, prefix: str, limit: Optional[int] = None) -> VerificationReport:
        """
        Verify up to `limit` of the most recent backups under prefix.

        Args:
            prefix: Object store prefix, e.g. "nightly/node-1/"
            limit: Maximum number of objects to download (None = all)

        Returns:
            VerificationReport; an all-zero report if listing fails
        """
        verified_at = self.clock()

        try:
            os.makedirs(self.temp_dir, exist_ok=True)
            objects = self.store.list(prefix)
        except (StorageError, OSError) as e:
            logger.error(f"BackupVerifier: failed to list prefix {prefix}: {e}")
            return VerificationReport(verified_at=verified_at)

        sample = sort_newest_first(objects)
        if limit is not None:
            sample = sample[:limit]

        results: List[VerificationResult] = [self._verify_one(obj.path) for obj in sample]
        report = VerificationReport(verified_at=verified_at, results=results)

        if report.failed:
            logger.warning(
                f"BackupVerifier: {report.failed}/{report.total_checked} backups failed "
                f"verification under {prefix}: "
                f"{', '.join(r.path for r in results if not r.valid)}"
            )
        else:
            logger.info(f"BackupVerifier: all {report.passed} sampled backups verified OK under {prefix}")

        return report

    def _verify_one(self, remote_path: str) -> VerificationResult:
        local_path = os.path.join(self.temp_dir, remote_path.replace('/', '_'))
        decrypted_path = None
        size_mb = None

        try:
            self.store.download(remote_path, local_path)
            size_mb = round(os.path.getsize(local_path) / BYTES_PER_MB, 2)

            archive_path = local_path
            if remote_path.endswith('.enc'):
                decrypted_path = local_path[:-len('.enc')]
                self._decrypt(local_path, decrypted_path)
                archive_path = decrypted_path

            check_gzip_archive(archive_path)

            logger.debug(f"BackupVerifier: {remote_path} OK ({size_mb}MB)")
            return VerificationResult(path=remote_path, valid=True, size_mb=size_mb)

        except (StorageError, EncryptionError, ArchiveInvalidError, OSError, EOFError, zlib.error) as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"BackupVerifier: {remote_path} failed: {message}")
            return VerificationResult(path=remote_path, valid=False, size_mb=size_mb, error=message)

        except Exception as e:
            # One object's failure never stops the rest of the sample
            message = str(e) or e.__class__.__name__
            logger.exception(f"BackupVerifier: unexpected error verifying {remote_path}: {message}")
            return VerificationResult(path=remote_path, valid=False, size_mb=size_mb, error=message)

        finally:
            _remove_scratch(local_path)
            if decrypted_path:
                _remove_scratch(decrypted_path)

    def _decrypt(self, encrypted_path: str, output_path: str):
        if self.encryptor is None or not self.encryption_key:
            raise ArchiveInvalidError("Encrypted archive but no key configured")
        self.encryptor.decrypt_file(encrypted_path, output_path, self.encryption_key)


def check_gzip_archive(path: str, min_size: int = MIN_VALID_SIZE_BYTES):
    """
    Check that a file is a complete gzip stream.

    Raises:
        ArchiveInvalidError: If the file is too small or lacks the gzip header
        OSError, EOFError, zlib.error: If decompression fails or the stream is truncated
    """
    size = os.path.getsize(path)
    if size < min_size:
        raise ArchiveInvalidError(f"Archive too small ({size} bytes), likely corrupt")

    with open(path, 'rb') as f:
        header = f.read(2)
    if header != GZIP_MAGIC:
        raise ArchiveInvalidError(f"Invalid gzip header: 0x{header.hex()}")

    with gzip.open(path, 'rb') as stream:
        while stream.read(DECOMPRESS_CHUNK_SIZE):
            pass


def _remove_scratch(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"BackupVerifier: failed to remove scratch file {path}: {e}")
