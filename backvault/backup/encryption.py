"""
Client-side encryption for backup archives.

AES-256-GCM, streamed in chunks so archives larger than memory can be
processed. On-disk layout:

    [ 12-byte IV ][ 16-byte auth tag ][ ciphertext ... ]

The tag is only known once the whole file has been encrypted, so a
placeholder is written first and overwritten after finalization.
Decryption writes to a temporary file and only moves it into place after
the tag verifies, so a wrong key or tampered archive never leaves
plaintext behind.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


IV_LENGTH = 12
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32
HEADER_LENGTH = IV_LENGTH + AUTH_TAG_LENGTH

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB


class EncryptionError(Exception):
    """Raised when an archive cannot be encrypted."""
    pass


class DecryptionError(EncryptionError):
    """Raised when an archive cannot be decrypted."""
    pass


class ArchiveTooShortError(DecryptionError):
    """Encrypted file is shorter than IV + auth tag."""
    pass


class ArchiveAuthenticationError(DecryptionError):
    """Auth tag did not verify: wrong key or tampered ciphertext."""
    pass


class ArchiveEncryptor:
    """Encrypts and decrypts archive files with a raw 32-byte key."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def encrypt_file(self, input_path: str, output_path: str, key: bytes):
        """
        Encrypt input_path into output_path.

        A fresh random IV is generated on every call.

        Raises:
            EncryptionError: If the key is invalid or the file cannot be processed
        """
        _check_key(key)

        iv = os.urandom(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()

        try:
            with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
                dst.write(iv)
                dst.write(b'\x00' * AUTH_TAG_LENGTH)

                while True:
                    chunk = src.read(self.chunk_size)
                    if not chunk:
                        break
                    dst.write(encryptor.update(chunk))

                dst.write(encryptor.finalize())

                dst.seek(IV_LENGTH)
                dst.write(encryptor.tag)
        except OSError as e:
            _remove_quietly(output_path)
            raise EncryptionError(f"Failed to encrypt {input_path}: {e}")

    def decrypt_file(self, input_path: str, output_path: str, key: bytes):
        """
        Decrypt input_path into output_path.

        Raises:
            ArchiveTooShortError: If the file is smaller than IV + auth tag
            ArchiveAuthenticationError: If the tag does not verify
            DecryptionError: If the file cannot be read or written
        """
        _check_key(key)

        try:
            size = os.path.getsize(input_path)
        except OSError as e:
            raise DecryptionError(f"Failed to read {input_path}: {e}")

        if size < HEADER_LENGTH:
            raise ArchiveTooShortError("Encrypted file too short")

        partial_path = f"{output_path}.part"

        try:
            with open(input_path, 'rb') as src:
                iv = src.read(IV_LENGTH)
                tag = src.read(AUTH_TAG_LENGTH)
                decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()

                with open(partial_path, 'wb') as dst:
                    while True:
                        chunk = src.read(self.chunk_size)
                        if not chunk:
                            break
                        dst.write(decryptor.update(chunk))
                    dst.write(decryptor.finalize())

            os.replace(partial_path, output_path)

        except InvalidTag:
            _remove_quietly(partial_path)
            raise ArchiveAuthenticationError(
                "Authentication failed: wrong key or tampered archive"
            )
        except OSError as e:
            _remove_quietly(partial_path)
            raise DecryptionError(f"Failed to decrypt {input_path}: {e}")


def _check_key(key: bytes):
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise EncryptionError(f"Encryption key must be {KEY_LENGTH} raw bytes")


def _remove_quietly(path: str):
    # Only called while another error is already propagating
    try:
        os.remove(path)
    except OSError:
        pass
