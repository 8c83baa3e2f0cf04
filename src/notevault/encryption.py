"""Password-based encryption of private note content.

A password never encrypts anything directly. A 32-byte key is derived from
the password and a random salt with PBKDF2, and note content is sealed with
AES-256-GCM under that key. Independently of the key, a verification digest
is derived from the same password and salt so that a password can be
checked without decrypting any note.

The salt, the digest and a version tag naming the derivation path are
stored together in the ``PasswordHash`` metadata entry (see
:class:`PasswordRecord`). Two derivation paths exist and both must keep
producing the same bytes forever, because older stores and backups were
written with them:

* ``KDF_LEGACY_8BIT`` feeds PBKDF2 the low byte of each UTF-16 code unit
  of the password. Older platforms did this silently.
* ``KDF_UTF8`` feeds PBKDF2 the UTF-8 encoding of the password, as
  PKCS #5 prescribes. New passwords always use this path.

Keys are short-lived. An :class:`EncryptionKey` keeps its material in a
mutable buffer that :meth:`EncryptionKey.forget` overwrites with zeros;
callers create a key for one operation and forget it in a ``finally``
block (or use the key as a context manager).
"""

import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from notevault.exceptions import ErrorCode, PasswordMismatch, SecurityError

logger = logging.getLogger(__name__)

# Metadata name under which the password record is stored
METADATA_PASSWORD_HASH = "PasswordHash"

KDF_LEGACY_8BIT = 1
KDF_UTF8 = 2
CURRENT_KDF_VERSION = KDF_UTF8
SUPPORTED_KDF_VERSIONS = (KDF_LEGACY_8BIT, KDF_UTF8)

# Pinned derivation parameters. Changing any of these makes existing
# stores and backups unreadable.
KDF_ITERATIONS = 2048
KEY_LENGTH = 32
SALT_LENGTH = 32
DIGEST_LENGTH = 32
NONCE_LENGTH = 12
_VERIFY_SALT_PREFIX = b"notevault-verify\x00"

PasswordInput = Union[str, bytes, bytearray]


def _password_bytes(password: PasswordInput, kdf_version: int) -> bytearray:
    """Encode a password the way the given derivation path expects."""
    if kdf_version not in SUPPORTED_KDF_VERSIONS:
        raise SecurityError(
            f"Unsupported key derivation version {kdf_version}",
            code=ErrorCode.INVALID_PASSWORD_RECORD,
        )
    if isinstance(password, (bytes, bytearray)):
        # Already encoded by the caller
        return bytearray(password)
    if kdf_version == KDF_LEGACY_8BIT:
        utf16 = password.encode("utf-16-be", errors="surrogatepass")
        return bytearray(utf16[1::2])
    return bytearray(password.encode("utf-8", errors="surrogatepass"))


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


def _pbkdf2(
    algorithm: hashes.HashAlgorithm,
    password: PasswordInput,
    salt: bytes,
    kdf_version: int,
) -> bytearray:
    secret = _password_bytes(password, kdf_version)
    try:
        kdf = PBKDF2HMAC(
            algorithm=algorithm,
            length=KEY_LENGTH,
            salt=bytes(salt),
            iterations=KDF_ITERATIONS,
        )
        return bytearray(kdf.derive(bytes(secret)))
    finally:
        _zero(secret)


class EncryptionKey:
    """A derived content key, valid until :meth:`forget` is called."""

    def __init__(self, material: bytearray, kdf_version: int = CURRENT_KDF_VERSION):
        if len(material) != KEY_LENGTH:
            raise SecurityError(
                f"Key must be {KEY_LENGTH} bytes", code=ErrorCode.ENCRYPTION_FAILED
            )
        self._material: Optional[bytearray] = material
        self.kdf_version = kdf_version

    def __enter__(self) -> "EncryptionKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.forget()

    def __repr__(self) -> str:
        state = "forgotten" if self.is_forgotten else "active"
        return f"<EncryptionKey(kdf_version={self.kdf_version}, {state})>"

    @property
    def is_forgotten(self) -> bool:
        return self._material is None

    def _cipher(self) -> AESGCM:
        if self._material is None:
            raise SecurityError(
                "The encryption key has been forgotten", code=ErrorCode.KEY_FORGOTTEN
            )
        return AESGCM(bytes(self._material))

    def encrypt_bytes(self, data: bytes) -> bytes:
        """Seal raw bytes. The output is ``nonce | ciphertext | tag``."""
        nonce = os.urandom(NONCE_LENGTH)
        return nonce + self._cipher().encrypt(nonce, bytes(data), None)

    def decrypt_bytes(self, blob: bytes) -> bytes:
        """Open bytes sealed by :meth:`encrypt_bytes`.

        Raises:
            SecurityError: If the data is truncated, corrupted, or was sealed
                under a different key.
        """
        cipher = self._cipher()
        if blob is None or len(blob) < NONCE_LENGTH + 16:
            raise SecurityError("Encrypted data is truncated")
        nonce, body = bytes(blob[:NONCE_LENGTH]), bytes(blob[NONCE_LENGTH:])
        try:
            return cipher.decrypt(nonce, body, None)
        except InvalidTag as e:
            raise SecurityError(
                "Unable to decrypt: wrong key or corrupted data"
            ) from e

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt a string (UTF-8)."""
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: bytes) -> str:
        """Decrypt to a string (UTF-8)."""
        data = self.decrypt_bytes(ciphertext)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecurityError("Decrypted data is not valid text") from e

    def forget(self) -> None:
        """Overwrite the key material with zeros and drop it."""
        if self._material is not None:
            _zero(self._material)
            self._material = None


def derive_key(
    password: PasswordInput,
    salt: bytes,
    kdf_version: int = CURRENT_KDF_VERSION,
) -> EncryptionKey:
    """Derive the content key for a password and salt.

    Deterministic: the same password, salt and version always produce the
    same key.
    """
    if not salt:
        raise SecurityError(
            "A salt is required to derive a key",
            code=ErrorCode.INVALID_PASSWORD_RECORD,
        )
    material = _pbkdf2(hashes.SHA1(), password, salt, kdf_version)
    return EncryptionKey(material, kdf_version)


def _verification_digest(
    password: PasswordInput, salt: bytes, kdf_version: int
) -> bytes:
    digest = _pbkdf2(hashes.SHA256(), password, _VERIFY_SALT_PREFIX + salt, kdf_version)
    try:
        return bytes(digest)
    finally:
        _zero(digest)


@dataclass(frozen=True)
class PasswordRecord:
    """Stored password verification data: ``version | salt | digest``."""

    version: int
    salt: bytes
    digest: bytes

    def to_bytes(self) -> bytes:
        return bytes([self.version]) + self.salt + self.digest

    @classmethod
    def from_bytes(cls, data: Optional[bytes]) -> "PasswordRecord":
        """Parse a stored record.

        Raises:
            SecurityError: If the bytes are not a record this version understands.
        """
        expected = 1 + SALT_LENGTH + DIGEST_LENGTH
        if not data or len(data) != expected:
            raise SecurityError(
                "Stored password hash is malformed",
                code=ErrorCode.INVALID_PASSWORD_RECORD,
            )
        version = data[0]
        if version not in SUPPORTED_KDF_VERSIONS:
            raise SecurityError(
                f"Stored password hash uses unknown version {version}",
                code=ErrorCode.INVALID_PASSWORD_RECORD,
            )
        return cls(
            version=version,
            salt=bytes(data[1 : 1 + SALT_LENGTH]),
            digest=bytes(data[1 + SALT_LENGTH :]),
        )


def compute_verification_hash(
    password: PasswordInput,
    kdf_version: int = CURRENT_KDF_VERSION,
    salt: Optional[bytes] = None,
) -> PasswordRecord:
    """Create a verification record for a password, with a fresh salt by default."""
    if salt is None:
        salt = os.urandom(SALT_LENGTH)
    elif len(salt) != SALT_LENGTH:
        raise SecurityError(
            f"Salt must be {SALT_LENGTH} bytes",
            code=ErrorCode.INVALID_PASSWORD_RECORD,
        )
    return PasswordRecord(
        version=kdf_version,
        salt=bytes(salt),
        digest=_verification_digest(password, bytes(salt), kdf_version),
    )


def verify_password(password: PasswordInput, record: PasswordRecord) -> bool:
    """Check a password against a stored record without deriving the content key."""
    candidate = _verification_digest(password, record.salt, record.version)
    return hmac.compare_digest(candidate, record.digest)


def unlock(password: PasswordInput, record: PasswordRecord) -> EncryptionKey:
    """Verify a password and derive its content key.

    Raises:
        PasswordMismatch: If the password does not match the record.
    """
    if not verify_password(password, record):
        raise PasswordMismatch()
    return derive_key(password, record.salt, record.version)


def new_password(
    password: PasswordInput,
) -> Tuple[PasswordRecord, EncryptionKey]:
    """Create a fresh record and matching key for a password being set."""
    record = compute_verification_hash(password)
    return record, derive_key(password, record.salt, record.version)
