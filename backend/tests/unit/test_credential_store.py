"""
Credential Store Unit Tests
"""

import pytest
from cryptography.fernet import Fernet
from faker import Faker

from models.migration_models import MigrationCredential
from services.migration.credential_store import CORE_PROFILE_TYPE, EXPORT_SCOPES, CredentialStore
from services.migration.errors import NotFoundError

pytestmark = pytest.mark.unit

fake = Faker()


class TestCredentialStore:
    """Test credential persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, credential_store):
        entity = f"https://{fake.domain_name()}"
        ref = await credential_store.create("export", entity + "/", "key-id", "s3cret")

        credential = await credential_store.get(ref)

        assert credential.id == ref
        assert credential.side == "export"
        assert credential.entity == entity
        assert credential.server_url == entity
        assert credential.mac_key_id == "key-id"
        assert credential.mac_key == "s3cret"
        assert credential.scopes == EXPORT_SCOPES

    @pytest.mark.asyncio
    async def test_mac_key_is_encrypted_at_rest(self, credential_store, session_factory):
        ref = await credential_store.create("import", "https://b.example.com", "key-id", "s3cret")

        async with session_factory() as session:
            record = await session.get(MigrationCredential, ref)

        assert record.mac_key != "s3cret"
        assert credential_store.decrypt_token(record.mac_key) == "s3cret"

    @pytest.mark.asyncio
    async def test_unknown_side_is_rejected(self, credential_store):
        with pytest.raises(ValueError):
            await credential_store.create("both", "https://b.example.com", "key-id", "s3cret")

    @pytest.mark.asyncio
    async def test_unknown_ref_raises_not_found(self, credential_store):
        with pytest.raises(NotFoundError):
            await credential_store.get("missing")

    @pytest.mark.asyncio
    async def test_wrong_encryption_key_raises_not_found(self, credential_store, session_factory):
        ref = await credential_store.create("export", "https://a.example.com", "key-id", "s3cret")
        other = CredentialStore(session_factory, Fernet.generate_key().decode())

        with pytest.raises(NotFoundError):
            await other.get(ref)

    @pytest.mark.asyncio
    async def test_refresh_token(self, credential_store):
        ref = await credential_store.create("export", "https://a.example.com", "old-id", "old-key")

        await credential_store.refresh_token(ref, "new-id", "new-key", mac_algorithm="hmac-sha-1")

        credential = await credential_store.get(ref)
        assert credential.mac_key_id == "new-id"
        assert credential.mac_key == "new-key"
        assert credential.mac_algorithm == "hmac-sha-1"

    @pytest.mark.asyncio
    async def test_refresh_unknown_ref(self, credential_store):
        with pytest.raises(NotFoundError):
            await credential_store.refresh_token("missing", "id", "key")


class TestAuthHash:
    """Test credentials built from an OmniAuth Tent auth hash."""

    @pytest.mark.asyncio
    async def test_create_from_auth_hash(self, credential_store):
        auth_hash = {
            "provider": "tent",
            "uid": "https://alice.example.com",
            "extra": {
                "credentials": {
                    "mac_key_id": "u:abc",
                    "mac_key": "deadbeef",
                    "mac_algorithm": "hmac-sha-256",
                    "token_type": "mac",
                },
                "raw_info": {
                    "profile": {
                        CORE_PROFILE_TYPE: {
                            "entity": "https://alice.example.com",
                            "servers": ["https://alice.example.com/tent"],
                        },
                    },
                    "app_authorization": {"scopes": ["read_posts", "read_profile"]},
                },
            },
        }

        ref = await credential_store.create_from_auth_hash("export", auth_hash)
        credential = await credential_store.get(ref)

        assert credential.entity == "https://alice.example.com"
        assert credential.server_url == "https://alice.example.com/tent"
        assert credential.mac_key_id == "u:abc"
        assert credential.mac_key == "deadbeef"
        assert credential.scopes == ["read_posts", "read_profile"]

    @pytest.mark.asyncio
    async def test_auth_hash_without_servers_uses_entity(self, credential_store):
        auth_hash = {
            "uid": "https://bob.example.com",
            "credentials": {"token": "u:xyz", "secret": "cafe"},
        }

        ref = await credential_store.create_from_auth_hash("import", auth_hash)
        credential = await credential_store.get(ref)

        assert credential.server_url == "https://bob.example.com"
        assert credential.mac_key_id == "u:xyz"

    @pytest.mark.asyncio
    async def test_auth_hash_without_mac_material_is_rejected(self, credential_store):
        with pytest.raises(ValueError):
            await credential_store.create_from_auth_hash("import", {"uid": "https://bob.example.com"})
