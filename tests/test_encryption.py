"""Tests for password-based key derivation and note encryption."""
import pytest

from notevault.encryption import (
    CURRENT_KDF_VERSION,
    DIGEST_LENGTH,
    KDF_LEGACY_8BIT,
    KDF_UTF8,
    SALT_LENGTH,
    EncryptionKey,
    PasswordRecord,
    compute_verification_hash,
    derive_key,
    new_password,
    unlock,
    verify_password,
)
from notevault.exceptions import ErrorCode, PasswordMismatch, SecurityError

SALT = bytes(range(SALT_LENGTH))


class TestDeriveKey:
    """Tests for key derivation."""

    def test_same_inputs_give_same_key(self):
        """A key derived twice from the same password and salt opens the same data."""
        sealed = derive_key("correct horse", SALT).encrypt("hello")
        assert derive_key("correct horse", SALT).decrypt(sealed) == "hello"

    def test_different_salt_gives_different_key(self):
        """Changing the salt must change the key."""
        sealed = derive_key("correct horse", SALT).encrypt("hello")
        other_salt = bytes(reversed(SALT))
        with pytest.raises(SecurityError):
            derive_key("correct horse", other_salt).decrypt(sealed)

    def test_ascii_password_same_on_both_paths(self):
        """For ASCII passwords the legacy and UTF-8 paths agree."""
        sealed = derive_key("plain ascii", SALT, KDF_LEGACY_8BIT).encrypt("x")
        assert derive_key("plain ascii", SALT, KDF_UTF8).decrypt(sealed) == "x"

    def test_non_ascii_password_differs_between_paths(self):
        """Non-ASCII passwords derive different keys on the two paths."""
        sealed = derive_key("pässwörd", SALT, KDF_LEGACY_8BIT).encrypt("x")
        with pytest.raises(SecurityError):
            derive_key("pässwörd", SALT, KDF_UTF8).decrypt(sealed)

    def test_legacy_path_keeps_only_low_byte(self):
        """The legacy path only sees the low byte of each UTF-16 code unit."""
        # U+20AC and U+00AC share the low byte 0xAC
        sealed = derive_key("€", SALT, KDF_LEGACY_8BIT).encrypt("euro")
        assert derive_key("¬", SALT, KDF_LEGACY_8BIT).decrypt(sealed) == "euro"

    def test_bytes_password_used_verbatim(self):
        """Pre-encoded passwords skip the version-specific encoding."""
        sealed = derive_key(b"raw-secret", SALT, KDF_LEGACY_8BIT).encrypt("x")
        assert derive_key(bytearray(b"raw-secret"), SALT, KDF_UTF8).decrypt(sealed) == "x"

    def test_empty_salt_rejected(self):
        """A salt is mandatory."""
        with pytest.raises(SecurityError) as excinfo:
            derive_key("pw", b"")
        assert excinfo.value.code == ErrorCode.INVALID_PASSWORD_RECORD

    def test_unknown_version_rejected(self):
        """Only known derivation versions are accepted."""
        with pytest.raises(SecurityError):
            derive_key("pw", SALT, kdf_version=7)


class TestEncryptionKey:
    """Tests for sealing and opening content."""

    def test_round_trip_unicode(self):
        """Text with non-ASCII characters survives encryption."""
        with derive_key("pw", SALT) as key:
            text = "Grüße, 世界\nsecond line"
            assert key.decrypt(key.encrypt(text)) == text

    def test_ciphertext_is_randomised(self):
        """Encrypting the same text twice gives different ciphertext."""
        key = derive_key("pw", SALT)
        assert key.encrypt("same") != key.encrypt("same")

    def test_tampered_ciphertext_rejected(self):
        """Flipping a bit fails authentication."""
        key = derive_key("pw", SALT)
        sealed = bytearray(key.encrypt("content"))
        sealed[-1] ^= 0x01
        with pytest.raises(SecurityError):
            key.decrypt(bytes(sealed))

    def test_truncated_ciphertext_rejected(self):
        """Data shorter than nonce plus tag is rejected."""
        with pytest.raises(SecurityError):
            derive_key("pw", SALT).decrypt(b"short")

    def test_forget_disables_key(self):
        """A forgotten key can no longer be used."""
        key = derive_key("pw", SALT)
        key.forget()
        assert key.is_forgotten
        with pytest.raises(SecurityError) as excinfo:
            key.encrypt("x")
        assert excinfo.value.code == ErrorCode.KEY_FORGOTTEN

    def test_context_manager_forgets(self):
        """Leaving the with block forgets the key."""
        with derive_key("pw", SALT) as key:
            key.encrypt("x")
        assert key.is_forgotten
        assert "forgotten" in repr(key)

    def test_wrong_material_length_rejected(self):
        with pytest.raises(SecurityError):
            EncryptionKey(bytearray(10))


class TestPasswordRecord:
    """Tests for password verification records."""

    def test_record_bytes_layout(self):
        """Records serialise as version, salt and digest."""
        record = compute_verification_hash("pw", salt=SALT)
        data = record.to_bytes()
        assert len(data) == 1 + SALT_LENGTH + DIGEST_LENGTH
        assert data[0] == CURRENT_KDF_VERSION
        assert PasswordRecord.from_bytes(data) == record

    def test_fresh_salt_each_time(self):
        """Without an explicit salt every record gets a new one."""
        assert compute_verification_hash("pw").salt != compute_verification_hash("pw").salt

    def test_malformed_record_rejected(self):
        with pytest.raises(SecurityError) as excinfo:
            PasswordRecord.from_bytes(b"\x02abc")
        assert excinfo.value.code == ErrorCode.INVALID_PASSWORD_RECORD

    def test_unknown_version_byte_rejected(self):
        data = bytes([9]) + SALT + bytes(DIGEST_LENGTH)
        with pytest.raises(SecurityError):
            PasswordRecord.from_bytes(data)

    def test_wrong_salt_length_rejected(self):
        with pytest.raises(SecurityError):
            compute_verification_hash("pw", salt=b"too short")

    def test_verify_password(self):
        """Only the original password verifies."""
        record = compute_verification_hash("secret")
        assert verify_password("secret", record)
        assert not verify_password("Secret", record)

    def test_verification_digest_is_not_the_key(self):
        """The stored digest never equals the content key material."""
        record = compute_verification_hash("secret", salt=SALT)
        key = derive_key("secret", SALT)
        assert record.digest != bytes(key._material)

    def test_unlock_wrong_password(self):
        record = compute_verification_hash("secret")
        with pytest.raises(PasswordMismatch):
            unlock("guess", record)

    def test_unlock_returns_matching_key(self):
        """unlock derives the same key as derive_key for the record's salt."""
        record = compute_verification_hash("secret", kdf_version=KDF_LEGACY_8BIT)
        key = unlock("secret", record)
        assert key.kdf_version == KDF_LEGACY_8BIT
        sealed = derive_key("secret", record.salt, KDF_LEGACY_8BIT).encrypt("x")
        assert key.decrypt(sealed) == "x"

    def test_new_password_uses_current_version(self):
        """Newly set passwords always use the UTF-8 path."""
        record, key = new_password("fresh")
        assert record.version == CURRENT_KDF_VERSION
        assert verify_password("fresh", record)
        assert unlock("fresh", record).decrypt(key.encrypt("x")) == "x"
