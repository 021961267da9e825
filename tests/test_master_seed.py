"""
Unit tests for master seed sealing, recovery and export
"""

import pytest

from src.core.enums import AuditAction
from src.core.exceptions import AuthenticationError, NotFoundError
from src.database.crud import get_audit_logs, get_user_by_id
from src.services.hd_derivation import entropy_to_mnemonic


@pytest.mark.asyncio
async def test_sealed_seed_opens_with_password(seed_registry, encryption):
    sealed = await seed_registry.create_sealed_seed("SealPass123")

    payload = encryption.unpack(sealed.master_seed_encrypted)
    assert payload.salt == sealed.encryption_salt

    seed_hex = encryption.decrypt(payload, "SealPass123")
    assert len(bytes.fromhex(seed_hex)) == 32


@pytest.mark.asyncio
async def test_sealed_seeds_are_unique(seed_registry):
    first = await seed_registry.create_sealed_seed("SealPass123")
    second = await seed_registry.create_sealed_seed("SealPass123")

    assert first.master_seed_encrypted != second.master_seed_encrypted


@pytest.mark.asyncio
async def test_recover_entropy(registered_user, seed_registry, db_session):
    user_id, password, _ = registered_user
    user = await get_user_by_id(db_session, user_id)

    entropy = await seed_registry.recover_entropy(user, password)
    assert len(entropy) == 32

    with pytest.raises(AuthenticationError):
        await seed_registry.recover_entropy(user, "WrongPass123")


@pytest.mark.asyncio
async def test_export_seed_phrase(registered_user, seed_registry, db_session):
    user_id, password, _ = registered_user
    user = await get_user_by_id(db_session, user_id)
    entropy = await seed_registry.recover_entropy(user, password)

    phrase = await seed_registry.export_seed_phrase(user_id, password)

    assert phrase == entropy_to_mnemonic(entropy)
    assert len(phrase.split()) == 24

    logs = await get_audit_logs(db_session, user_id=user_id, action=AuditAction.SEED_VIEWED.value)
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_export_rejects_wrong_password_before_decrypting(
    registered_user, seed_registry, db_session, monkeypatch
):
    user_id, _, _ = registered_user

    async def must_not_decrypt(*args, **kwargs):
        raise AssertionError("decryption attempted")

    monkeypatch.setattr(seed_registry, "recover_entropy", must_not_decrypt)

    with pytest.raises(AuthenticationError, match="Invalid password"):
        await seed_registry.export_seed_phrase(user_id, "WrongPass123")

    logs = await get_audit_logs(db_session, user_id=user_id, action=AuditAction.SEED_VIEWED.value)
    assert logs == []


@pytest.mark.asyncio
async def test_export_unknown_user(seed_registry):
    with pytest.raises(NotFoundError):
        await seed_registry.export_seed_phrase(999, "GhostPass123")
