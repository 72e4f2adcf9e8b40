"""
File encryption for backup archives.

Archives are encrypted with an AEAD cipher keyed from the passphrase via
PBKDF2. Data is processed in fixed-size chunks (STREAM construction), so
archives of any size are never held in memory.

File layout:

    magic (6) | version (1) | cipher id (1) | iterations (4) | salt (16)
    | nonce prefix (7) | key check (32) | chunk*

Each chunk is the AEAD ciphertext of up to CHUNK_SIZE plaintext bytes. The
nonce is the prefix, a 4-byte chunk counter and a final-chunk flag, so
reordered, truncated or extended streams fail authentication.
"""

import os
import hmac
import struct
import hashlib
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from offsite.errors import CryptoError


MAGIC = b'OFSENC'
VERSION = 1
ENCRYPTED_EXTENSION = 'enc'

CHUNK_SIZE = 64 * 1024
TAG_SIZE = 16
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 7
KEY_CHECK_SIZE = 32
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+

_HEADER_STRUCT = struct.Struct(f'>{len(MAGIC)}sBBI{SALT_SIZE}s{NONCE_PREFIX_SIZE}s')
HEADER_SIZE = _HEADER_STRUCT.size + KEY_CHECK_SIZE

# name -> (id stored in header, key length, AEAD class)
CIPHERS = {
    'AES256': (1, 32, AESGCM),
    'AES128': (2, 16, AESGCM),
    'CHACHA20': (3, 32, ChaCha20Poly1305),
}
_CIPHERS_BY_ID = {cipher_id: name for name, (cipher_id, _, _) in CIPHERS.items()}


def normalize_cipher(name: str) -> str:
    """
    Map a user supplied cipher identifier to its canonical name.

    'aes256', 'AES-256' and 'AES256' are all accepted.

    Raises:
        ValueError: If the cipher is not supported
    """
    canonical = (name or '').replace('-', '').replace('_', '').upper()
    if canonical == 'CHACHA20POLY1305':
        canonical = 'CHACHA20'
    if canonical not in CIPHERS:
        raise ValueError(
            f"Unsupported encryption cipher: {name}. "
            f"Valid options: {list(CIPHERS.keys())}"
        )
    return canonical


def _derive_keys(passphrase: str, salt: bytes, iterations: int, key_length: int):
    """Derive the cipher key and the key-check key from the passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=key_length + 32,
        salt=salt,
        iterations=iterations,
    )
    material = kdf.derive(passphrase.encode())
    return material[:key_length], material[key_length:]


def _nonce(prefix: bytes, counter: int, final: bool) -> bytes:
    return prefix + struct.pack('>IB', counter, 1 if final else 0)


class FileCipher:
    """Encrypts and decrypts backup files with a passphrase."""

    def __init__(self, passphrase: str, cipher: str = 'AES256', iterations: int = DEFAULT_ITERATIONS):
        """
        Args:
            passphrase: Encryption passphrase
            cipher: Cipher identifier used for encryption (see CIPHERS)
            iterations: PBKDF2 iterations for newly encrypted files
        """
        if not passphrase:
            raise CryptoError("Encryption passphrase is empty", reason='bad-passphrase')

        try:
            self.cipher = normalize_cipher(cipher)
        except ValueError as e:
            raise CryptoError(str(e), reason='bad-format')

        self._passphrase = passphrase
        self.iterations = iterations

    def encrypt(self, path: str, output_path: Optional[str] = None) -> str:
        """
        Encrypt a file.

        The source file is left in place.

        Args:
            path: File to encrypt
            output_path: Destination (default: path + '.enc')

        Returns:
            Path of the encrypted file

        Raises:
            CryptoError: If the file cannot be read or encrypted
        """
        output_path = output_path or f"{path}.{ENCRYPTED_EXTENSION}"

        cipher_id, key_length, aead_class = CIPHERS[self.cipher]
        salt = os.urandom(SALT_SIZE)
        prefix = os.urandom(NONCE_PREFIX_SIZE)
        key, check_key = _derive_keys(self._passphrase, salt, self.iterations, key_length)

        header = _HEADER_STRUCT.pack(MAGIC, VERSION, cipher_id, self.iterations, salt, prefix)
        header += hmac.new(check_key, header, hashlib.sha256).digest()
        aead = aead_class(key)

        try:
            with open(path, 'rb') as src, open(output_path, 'wb') as dst:
                dst.write(header)

                counter = 0
                chunk = src.read(CHUNK_SIZE)
                while True:
                    following = src.read(CHUNK_SIZE)
                    final = not following
                    dst.write(aead.encrypt(_nonce(prefix, counter, final), chunk, header))
                    if final:
                        break
                    chunk = following
                    counter += 1
        except OSError as e:
            _remove_quietly(output_path)
            raise CryptoError(f"Failed to encrypt {path}: {e}")

        return output_path

    def decrypt(self, path: str, output_path: Optional[str] = None) -> str:
        """
        Decrypt a file produced by encrypt().

        The cipher and KDF parameters are read from the file header.

        Args:
            path: Encrypted file
            output_path: Destination (default: path without '.enc')

        Returns:
            Path of the decrypted file

        Raises:
            CryptoError: reason 'bad-format' if the file is not an encrypted
                backup, 'bad-passphrase' if the passphrase is wrong, 'corrupt'
                if the encrypted stream fails authentication
        """
        if output_path is None:
            suffix = f".{ENCRYPTED_EXTENSION}"
            output_path = path[:-len(suffix)] if path.endswith(suffix) else f"{path}.dec"

        partial_path = f"{output_path}.part"

        try:
            with open(path, 'rb') as src:
                header, aead, prefix = self._open_header(src, path)

                with open(partial_path, 'wb') as dst:
                    counter = 0
                    chunk = src.read(CHUNK_SIZE + TAG_SIZE)
                    while True:
                        following = src.read(CHUNK_SIZE + TAG_SIZE)
                        final = not following
                        if len(chunk) < TAG_SIZE:
                            raise CryptoError(f"Encrypted stream is truncated: {path}", reason='corrupt')
                        try:
                            dst.write(aead.decrypt(_nonce(prefix, counter, final), chunk, header))
                        except InvalidTag:
                            raise CryptoError(
                                f"Encrypted stream is corrupt at chunk {counter}: {path}",
                                reason='corrupt'
                            )
                        if final:
                            break
                        chunk = following
                        counter += 1

            os.replace(partial_path, output_path)
            return output_path

        except CryptoError:
            _remove_quietly(partial_path)
            raise
        except OSError as e:
            _remove_quietly(partial_path)
            raise CryptoError(f"Failed to decrypt {path}: {e}")

    def _open_header(self, src, path: str):
        """Parse and authenticate the header, returning (header, aead, nonce prefix)."""
        header = src.read(HEADER_SIZE)
        if len(header) < HEADER_SIZE or not header.startswith(MAGIC):
            raise CryptoError(f"Not an encrypted backup file: {path}", reason='bad-format')

        _, version, cipher_id, iterations, salt, prefix = _HEADER_STRUCT.unpack(
            header[:_HEADER_STRUCT.size]
        )
        if version != VERSION:
            raise CryptoError(f"Unsupported encrypted file version {version}: {path}", reason='bad-format')
        if cipher_id not in _CIPHERS_BY_ID or iterations < 1:
            raise CryptoError(f"Unknown cipher in encrypted file header: {path}", reason='bad-format')

        _, key_length, aead_class = CIPHERS[_CIPHERS_BY_ID[cipher_id]]
        key, check_key = _derive_keys(self._passphrase, salt, iterations, key_length)

        expected = hmac.new(check_key, header[:_HEADER_STRUCT.size], hashlib.sha256).digest()
        if not hmac.compare_digest(expected, header[_HEADER_STRUCT.size:]):
            raise CryptoError(f"Wrong passphrase for {path}", reason='bad-passphrase')

        return header, aead_class(key), prefix


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
