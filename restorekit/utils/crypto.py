"""
File encryption for backup archives.

Uses AES-256-GCM with a key derived from the user's password via PBKDF2.
The file is split into chunks, each sealed on its own; the chunk index and
a last-chunk flag are bound into every tag so chunks cannot be reordered,
dropped or truncated unnoticed.

Layout:
    magic (4) | iterations (4) | chunk size (4) | salt (16) | nonce prefix (8)
    then per chunk: ciphertext + 16-byte tag
"""

import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from restorekit.errors import ArchiveError, AuthenticationError, ConfigurationError

MAGIC = b'RKE1'
ITERATIONS = 480000  # OWASP recommended iterations for 2023+
MAX_ITERATIONS = 10000000
CHUNK_SIZE = 1024 * 1024
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16

_HEADER_FORMAT = '>4sII'
HEADER_SIZE = struct.calcsize(_HEADER_FORMAT) + SALT_SIZE + NONCE_PREFIX_SIZE


def derive_key(password: str, salt: bytes, iterations: int = ITERATIONS) -> bytes:
    """Derive a 32-byte key from a password using PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode())


def _nonce(prefix: bytes, index: int) -> bytes:
    return prefix + struct.pack('>I', index)


def _aad(header: bytes, index: int, last: bool) -> bytes:
    return header + struct.pack('>I?', index, last)


def encrypt_file(source_path: str, dest_path: str, password: str,
                 iterations: int = ITERATIONS, chunk_size: int = CHUNK_SIZE):
    """
    Encrypt a file.

    Args:
        source_path: Plaintext file
        dest_path: Output file (overwritten)
        password: Encryption password
        iterations: PBKDF2 iterations (stored in the header)
        chunk_size: Plaintext bytes per sealed chunk

    Raises:
        ConfigurationError: If the password is empty
    """
    if not password:
        raise ConfigurationError("Encryption is enabled but no password was provided")

    salt = os.urandom(SALT_SIZE)
    nonce_prefix = os.urandom(NONCE_PREFIX_SIZE)
    header = struct.pack(_HEADER_FORMAT, MAGIC, iterations, chunk_size) + salt + nonce_prefix
    aesgcm = AESGCM(derive_key(password, salt, iterations))

    try:
        with open(source_path, 'rb') as fin, open(dest_path, 'wb') as fout:
            fout.write(header)

            index = 0
            chunk = fin.read(chunk_size)
            while True:
                next_chunk = fin.read(chunk_size)
                last = not next_chunk
                fout.write(aesgcm.encrypt(_nonce(nonce_prefix, index), chunk, _aad(header, index, last)))
                if last:
                    break
                chunk = next_chunk
                index += 1
    except Exception:
        if os.path.exists(dest_path):
            os.remove(dest_path)
        raise


def decrypt_file(source_path: str, dest_path: str, password: str):
    """
    Decrypt a file produced by encrypt_file.

    Nothing is left at dest_path when decryption fails.

    Raises:
        AuthenticationError: Wrong password or tampered/corrupted data
        ArchiveError: Not an encrypted backup or malformed header
    """
    if not password:
        raise AuthenticationError("No password provided for encrypted backup")

    try:
        with open(source_path, 'rb') as fin, open(dest_path, 'wb') as fout:
            header = fin.read(HEADER_SIZE)
            if len(header) < HEADER_SIZE:
                raise ArchiveError("File is too short to be an encrypted backup")

            magic, iterations, chunk_size = struct.unpack_from(_HEADER_FORMAT, header)
            if magic != MAGIC:
                raise ArchiveError("File is not an encrypted backup")
            if not 0 < iterations <= MAX_ITERATIONS or chunk_size <= 0:
                raise ArchiveError("Encrypted backup header is malformed")

            offset = struct.calcsize(_HEADER_FORMAT)
            salt = header[offset:offset + SALT_SIZE]
            nonce_prefix = header[offset + SALT_SIZE:]
            aesgcm = AESGCM(derive_key(password, salt, iterations))

            block_size = chunk_size + TAG_SIZE
            index = 0
            block = fin.read(block_size)
            while True:
                if len(block) < TAG_SIZE:
                    raise AuthenticationError("Invalid password or corrupted data")
                next_block = fin.read(block_size)
                last = not next_block
                try:
                    fout.write(aesgcm.decrypt(_nonce(nonce_prefix, index), block, _aad(header, index, last)))
                except InvalidTag as e:
                    raise AuthenticationError("Invalid password or corrupted data") from e
                if last:
                    break
                block = next_block
                index += 1
    except Exception:
        if os.path.exists(dest_path):
            os.remove(dest_path)
        raise
