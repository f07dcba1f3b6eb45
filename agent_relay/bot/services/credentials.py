"""Resolution of encrypted provider credentials."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from agent_relay.bot.services.exceptions import CredentialDecryptionError
from agent_relay.bot.services.exceptions import ProviderNotFoundError
from agent_relay.bot.services.models import ProviderCredential
from agent_relay.shared.crypto import CredentialCipher
from agent_relay.shared.crypto import DecryptionError
from agent_relay.shared.database import session_scope
from agent_relay.storage.crud import NotFoundError
from agent_relay.storage.crud import ProviderOperations
from agent_relay.storage.models import Provider

logger = logging.getLogger(__name__)


def decrypt_provider(cipher: CredentialCipher, provider: Provider) -> ProviderCredential:
    """Decrypt a provider row into a usable credential.

    Raises:
        CredentialDecryptionError: If the stored key cannot be decrypted
    """
    try:
        api_key = cipher.decrypt(provider.encrypted_key, provider.iv, provider.auth_tag)
    except DecryptionError as e:
        logger.error(f"Decryption error for provider {provider.name}: {e}")
        raise CredentialDecryptionError(provider.name) from e
    return ProviderCredential(name=provider.name, endpoint_url=provider.url, api_key=api_key)


class ProviderResolver:
    """Looks up a guild's provider and decrypts its API key."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher
    ):
        self._session_maker = session_maker
        self._cipher = cipher
        self._provider_ops = ProviderOperations()

    async def resolve(
        self,
        guild_id: str,
        provider_name: str,
        agent_name: str = ""
    ) -> ProviderCredential:
        """Resolve a provider by name.

        Raises:
            ProviderNotFoundError: If the guild has no such provider
            CredentialDecryptionError: If the stored key cannot be decrypted
        """
        async with session_scope(self._session_maker) as session:
            try:
                provider = await self._provider_ops.get_provider(session, str(guild_id), provider_name)
            except NotFoundError as e:
                logger.error(f"Provider {provider_name} not found for agent {agent_name}")
                raise ProviderNotFoundError(provider_name, agent_name) from e
            return decrypt_provider(self._cipher, provider)
