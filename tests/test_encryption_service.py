"""
Unit tests for the password encryption envelope
"""

import pytest

from src.core.exceptions import AuthenticationError, EnvelopeFormatError
from src.services.encryption_service import EncryptedPayload, EncryptionService


@pytest.fixture
def service():
    return EncryptionService()


def test_encrypt_decrypt_roundtrip(service):
    payload = service.encrypt("a" * 64, "CorrectHorse1")

    assert service.decrypt(payload, "CorrectHorse1") == "a" * 64


def test_payload_field_sizes(service):
    payload = service.encrypt("secret", "CorrectHorse1")

    assert len(bytes.fromhex(payload.salt)) == 32
    assert len(bytes.fromhex(payload.iv)) == 16
    assert len(bytes.fromhex(payload.auth_tag)) == 16
    assert len(bytes.fromhex(payload.ciphertext)) == len("secret")


def test_fresh_salt_and_iv_per_call(service):
    first = service.encrypt("secret", "CorrectHorse1")
    second = service.encrypt("secret", "CorrectHorse1")

    assert first.salt != second.salt
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_wrong_password_rejected(service):
    payload = service.encrypt("secret", "CorrectHorse1")

    with pytest.raises(AuthenticationError, match="Invalid password or corrupted data"):
        service.decrypt(payload, "WrongHorse1")


def test_tampered_ciphertext_rejected(service):
    payload = service.encrypt("secret", "CorrectHorse1")
    flipped = format(int(payload.ciphertext[:2], 16) ^ 0x01, "02x") + payload.ciphertext[2:]
    tampered = EncryptedPayload(
        ciphertext=flipped, salt=payload.salt, iv=payload.iv, auth_tag=payload.auth_tag
    )

    with pytest.raises(AuthenticationError):
        service.decrypt(tampered, "CorrectHorse1")


def test_tampered_tag_rejected(service):
    payload = service.encrypt("secret", "CorrectHorse1")
    tampered = EncryptedPayload(
        ciphertext=payload.ciphertext, salt=payload.salt, iv=payload.iv, auth_tag="00" * 16
    )

    with pytest.raises(AuthenticationError):
        service.decrypt(tampered, "CorrectHorse1")


def test_malformed_hex_rejected(service):
    payload = EncryptedPayload(ciphertext="zz", salt="00" * 32, iv="00" * 16, auth_tag="00" * 16)

    with pytest.raises(AuthenticationError):
        service.decrypt(payload, "CorrectHorse1")


def test_pack_unpack(service):
    payload = service.encrypt("secret", "CorrectHorse1")
    packed = service.pack(payload)

    assert packed == f"{payload.salt}:{payload.iv}:{payload.auth_tag}:{payload.ciphertext}"
    assert service.unpack(packed) == payload
    assert service.decrypt(service.unpack(packed), "CorrectHorse1") == "secret"


@pytest.mark.parametrize("packed", ["", "a:b:c", "a:b:c:d:e", "no-delimiters"])
def test_unpack_rejects_wrong_segment_count(service, packed):
    with pytest.raises(EnvelopeFormatError, match="Invalid encrypted data format"):
        service.unpack(packed)


def test_format_error_is_authentication_error():
    assert issubclass(EnvelopeFormatError, AuthenticationError)


def test_hash_and_random_string():
    assert EncryptionService.hash("token") == EncryptionService.hash("token")
    assert len(EncryptionService.hash("token")) == 64
    assert len(EncryptionService.generate_random_string(16)) == 32
    assert EncryptionService.generate_random_string() != EncryptionService.generate_random_string()
