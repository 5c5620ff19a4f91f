"""
Credential store for delegated Tent access.
Persists the MAC credentials issued at authorization time, encrypted at rest.
"""

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.logging import get_logger
from models.migration_models import MigrationCredential
from .errors import NotFoundError

logger = get_logger("tent_migrate.credentials")

CORE_PROFILE_TYPE = "https://tent.io/types/info/core/v0.1.0"

EXPORT_SCOPES = [
    "read_posts", "write_posts", "read_profile", "read_followers", "read_followings",
    "read_groups", "read_permissions", "read_apps", "read_secrets",
]
IMPORT_SCOPES = [
    "read_posts", "import_posts", "write_posts", "read_profile", "write_profile",
    "read_followers", "write_followers", "read_followings", "write_followings",
    "read_groups", "write_groups", "read_permissions", "write_permissions",
    "read_apps", "write_apps", "read_secrets", "write_secrets",
]


@dataclass
class Credential:
    """Decrypted credential handed to the remote client"""
    id: str
    side: str
    entity: str
    server_url: str
    mac_key_id: str
    mac_key: str
    mac_algorithm: str = "hmac-sha-256"
    token_type: str = "mac"
    scopes: List[str] = field(default_factory=list)


class CredentialStore:
    """Create, read and refresh delegated credentials"""

    def __init__(self, session_factory: async_sessionmaker, encryption_key: Optional[str] = None):
        self._session_factory = session_factory
        if not encryption_key:
            # Tokens written with a generated key are unreadable after restart
            encryption_key = Fernet.generate_key().decode()
            logger.warning(
                "Using auto-generated encryption key - set ENCRYPTION_KEY in production!",
                action="credentials_ephemeral_key"
            )
        self.fernet = Fernet(encryption_key.encode())

    def encrypt_token(self, token: str) -> str:
        """Encrypt token for storage"""
        if not token:
            return ""
        return self.fernet.encrypt(token.encode()).decode()

    def decrypt_token(self, encrypted: str) -> str:
        """Decrypt stored token"""
        if not encrypted:
            return ""
        return self.fernet.decrypt(encrypted.encode()).decode()

    async def create(
        self,
        side: str,
        entity: str,
        mac_key_id: str,
        mac_key: str,
        server_url: Optional[str] = None,
        mac_algorithm: str = "hmac-sha-256",
        token_type: str = "mac",
        scopes: Optional[List[str]] = None,
    ) -> str:
        """Store a new credential and return its opaque reference"""
        if side not in ("export", "import"):
            raise ValueError(f"Unknown credential side: {side}")

        ref = secrets.token_hex(16)
        record = MigrationCredential(
            id=ref,
            side=side,
            entity=entity.rstrip("/"),
            server_url=(server_url or entity).rstrip("/"),
            mac_key_id=mac_key_id,
            mac_key=self.encrypt_token(mac_key),
            mac_algorithm=mac_algorithm,
            token_type=token_type,
            scopes=list(scopes if scopes is not None else (EXPORT_SCOPES if side == "export" else IMPORT_SCOPES)),
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()

        logger.info(f"Stored {side} credential for {entity}", action="credential_created", credential_id=ref)
        return ref

    async def create_from_auth_hash(self, side: str, auth_hash: Dict[str, Any]) -> str:
        """
        Store the credential carried by an OmniAuth Tent auth hash.

        The hash carries the entity as ``uid``, the app authorization MAC
        material under ``extra.credentials`` (or ``credentials``), and the
        entity's core profile with its API servers under ``extra.raw_info``.
        """
        entity = auth_hash.get("uid")
        if not entity:
            raise ValueError("Auth hash has no entity (uid)")

        extra = auth_hash.get("extra") or {}
        creds = extra.get("credentials") or auth_hash.get("credentials") or {}
        mac_key_id = creds.get("mac_key_id") or creds.get("token")
        mac_key = creds.get("mac_key") or creds.get("secret")
        if not mac_key_id or not mac_key:
            raise ValueError(f"Auth hash for {entity} carries no MAC credentials")

        profile = (extra.get("raw_info") or {}).get("profile") or {}
        servers = (profile.get(CORE_PROFILE_TYPE) or {}).get("servers") or []

        app_auth = (extra.get("raw_info") or {}).get("app_authorization") or {}

        return await self.create(
            side=side,
            entity=entity,
            server_url=servers[0] if servers else entity,
            mac_key_id=mac_key_id,
            mac_key=mac_key,
            mac_algorithm=creds.get("mac_algorithm", "hmac-sha-256"),
            token_type=creds.get("token_type", "mac"),
            scopes=app_auth.get("scopes"),
        )

    async def get(self, ref: str) -> Credential:
        """Load and decrypt a credential"""
        async with self._session_factory() as session:
            record = await session.get(MigrationCredential, ref)
        if record is None:
            raise NotFoundError(f"Credential {ref} not found")

        try:
            mac_key = self.decrypt_token(record.mac_key)
        except InvalidToken as e:
            raise NotFoundError(f"Credential {ref} cannot be decrypted with the configured key") from e

        return Credential(
            id=record.id,
            side=record.side,
            entity=record.entity,
            server_url=record.server_url,
            mac_key_id=record.mac_key_id,
            mac_key=mac_key,
            mac_algorithm=record.mac_algorithm or "hmac-sha-256",
            token_type=record.token_type or "mac",
            scopes=list(record.scopes or []),
        )

    async def refresh_token(
        self,
        ref: str,
        mac_key_id: str,
        mac_key: str,
        mac_algorithm: Optional[str] = None
    ) -> None:
        """Replace the MAC material of an existing credential"""
        async with self._session_factory() as session:
            record = (await session.execute(
                select(MigrationCredential).where(MigrationCredential.id == ref)
            )).scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"Credential {ref} not found")

            record.mac_key_id = mac_key_id
            record.mac_key = self.encrypt_token(mac_key)
            if mac_algorithm:
                record.mac_algorithm = mac_algorithm
            await session.commit()

        logger.info("Refreshed credential token", action="credential_refreshed", credential_id=ref)
