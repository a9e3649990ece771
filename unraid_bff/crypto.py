"""
AES-256-GCM record codec and key resolution for the credential store.

Records are serialized as ``<nonce-hex>.<tag-hex>.<ciphertext-hex>``. The
256-bit key is the SHA-256 digest of a key source, which is resolved in
order from:

- the configured secret (``UNRAID_BFF_ENCRYPTION_KEY``) when it is strong,
- an existing key file in the data directory,
- a freshly generated key file, created with exclusive-create semantics so
  the first writer wins a race.

A fixed legacy key is kept as a decryption-only fallback so stores written
by older releases can be migrated.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_BYTES = 16
TAG_BYTES = 16
KEY_FILE_NAME = "encryption.key"
LEGACY_KEY_SOURCE = "unraid-pwa-insecure-dev-key"
WEAK_SECRET_PREFIX = "replace-with-"
MIN_SECRET_LENGTH = 16
KEY_FILE_READ_ATTEMPTS = 5
KEY_FILE_RETRY_SECONDS = 0.05

_warned_weak_secret = False


class CorruptRecordError(ValueError):
    """The serialized record is not three dot-separated hex fields."""


class DecryptionError(Exception):
    """None of the candidate keys could authenticate the record."""


class KeyFileError(Exception):
    """The key file exists but holds no key."""


def derive_key(source: str) -> bytes:
    return hashlib.sha256(source.encode("utf-8")).digest()


LEGACY_KEY = derive_key(LEGACY_KEY_SOURCE)


def is_weak_secret(value: Optional[str]) -> bool:
    raw = (value or "").strip()
    return len(raw) < MIN_SECRET_LENGTH or raw.startswith(WEAK_SECRET_PREFIX)


def encrypt(key: bytes, plaintext: str) -> str:
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{nonce.hex()}.{tag.hex()}.{ciphertext.hex()}"


def parse_record(record: str) -> tuple[bytes, bytes, bytes]:
    fields = record.strip().split(".")
    if len(fields) != 3:
        raise CorruptRecordError(
            f"Encrypted record must have 3 fields, found {len(fields)}"
        )
    try:
        nonce, tag, ciphertext = (bytes.fromhex(field) for field in fields)
    except ValueError as exc:
        raise CorruptRecordError("Encrypted record fields must be hex") from exc
    if len(nonce) < 8 or len(tag) != TAG_BYTES:
        raise CorruptRecordError("Encrypted record has an invalid nonce or tag")
    return nonce, tag, ciphertext


def decrypt(key: bytes, record: str) -> str:
    plaintext, _ = decrypt_with_fallback(record, [key])
    return plaintext


def decrypt_with_fallback(record: str, keys: Sequence[bytes]) -> tuple[str, int]:
    """
    Decrypt ``record`` with the first key that authenticates it.

    Returns:
        The plaintext and the index of the key that opened it.

    Raises:
        CorruptRecordError: If the record is malformed.
        DecryptionError: If no key authenticates the record.
    """
    nonce, tag, ciphertext = parse_record(record)
    for index, key in enumerate(keys):
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            continue
        try:
            return plaintext.decode("utf-8"), index
        except UnicodeDecodeError as exc:
            raise CorruptRecordError("Decrypted record is not UTF-8") from exc
    raise DecryptionError(
        "Unable to decrypt the credential store with the current or legacy key"
    )


class KeyResolver:
    """Resolves and caches the current store key."""

    def __init__(self, data_dir: str | Path, configured_secret: Optional[str] = None):
        self.data_dir = Path(data_dir)
        self.key_file = self.data_dir / KEY_FILE_NAME
        self.configured_secret = configured_secret
        self._key: Optional[bytes] = None
        self._strategies: list[Callable[[], Optional[str]]] = [
            self._from_configured_secret,
            self._from_key_file,
            self._create_key_file,
        ]

    def current_key(self) -> bytes:
        if self._key is None:
            for strategy in self._strategies:
                source = strategy()
                if source:
                    self._key = derive_key(source)
                    break
            else:
                raise KeyFileError(f"Unable to resolve an encryption key in {self.key_file}")
        return self._key

    def candidate_keys(self) -> list[bytes]:
        return [self.current_key(), LEGACY_KEY]

    def _from_configured_secret(self) -> Optional[str]:
        global _warned_weak_secret
        if not is_weak_secret(self.configured_secret):
            return self.configured_secret.strip()
        if not _warned_weak_secret:
            _warned_weak_secret = True
            logger.warning(
                "UNRAID_BFF_ENCRYPTION_KEY is missing or weak; using the local key file %s",
                self.key_file,
            )
        return None

    def _from_key_file(self) -> Optional[str]:
        try:
            return self.key_file.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def _create_key_file(self) -> Optional[str]:
        """
        Publish a new key with ``os.link`` so the file never appears empty.

        The link fails when the key file already exists; the existing key
        then wins.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        source = secrets.token_hex(32)
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".encryption-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(source)
            os.chmod(tmp_path, 0o600)
            os.link(tmp_path, self.key_file)
        except FileExistsError:
            return self._wait_for_key_file()
        finally:
            os.unlink(tmp_path)
        logger.info("Generated a new encryption key file at %s", self.key_file)
        return source

    def _wait_for_key_file(self) -> str:
        for attempt in range(KEY_FILE_READ_ATTEMPTS):
            source = self._from_key_file()
            if source:
                return source
            if attempt + 1 < KEY_FILE_READ_ATTEMPTS:
                time.sleep(KEY_FILE_RETRY_SECONDS)
        raise KeyFileError(f"{self.key_file} exists but holds no key")
