"""Credential vault: picks and decrypts the key that pays for a provider call."""

from __future__ import annotations

from dataclasses import dataclass

from multichat.config import ProvidersConfig
from multichat.core.session import require_user
from multichat.core.types import KeyType, Provider
from multichat.errors import DecryptionFailed, NotConfigured
from multichat.log import get_logger
from multichat.security import crypto
from multichat.storage.settings_repo import SettingsRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedCredential:
    provider: Provider
    api_key: str
    key_type: KeyType

    def __repr__(self) -> str:
        return f"ResolvedCredential(provider={self.provider.value!r}, key_type={self.key_type.value!r})"


class CredentialVault:
    """Resolves platform or user credentials. Plaintext keys are never cached."""

    def __init__(self, settings_repo: SettingsRepository, providers: ProvidersConfig, encryption_key: str):
        self._settings = settings_repo
        self._providers = providers
        self._key = crypto.parse_key(encryption_key)

    async def resolve(self, user_id: str, provider: Provider) -> ResolvedCredential:
        user_id = require_user(user_id)
        label = provider.label
        settings = await self._settings.get(user_id)

        if settings is not None and settings.use_provided_keys:
            platform_key = self._providers.for_provider(provider).api_key
            if not platform_key:
                raise NotConfigured(
                    f"Platform credentials for {label} are not available.",
                    provider=provider.value,
                )
            return ResolvedCredential(provider, platform_key, KeyType.PROVIDED)

        blob = settings.encrypted_keys.get(provider) if settings else None
        if not blob:
            raise NotConfigured(
                f"{label} API key not configured. Please add it in Settings.",
                provider=provider.value,
            )

        try:
            api_key = crypto.decrypt(blob, self._key)
        except crypto.CryptoError as e:
            logger.error("credential_decrypt_failed", user_id=user_id, provider=provider.value, error=str(e))
            raise DecryptionFailed(
                f"Your stored {label} API key could not be read. Please re-enter it in Settings.",
                provider=provider.value,
            ) from e
        return ResolvedCredential(provider, api_key, KeyType.USER)

    async def store_credential(self, user_id: str, provider: Provider, plaintext: str) -> None:
        """Encrypt and persist a user-supplied key."""
        user_id = require_user(user_id)
        plaintext = plaintext.strip()
        if not plaintext:
            raise ValueError("API key cannot be empty")
        await self._settings.set_encrypted_key(user_id, provider, crypto.encrypt(plaintext, self._key))
        logger.info("credential_stored", user_id=user_id, provider=provider.value)

    async def clear_credential(self, user_id: str, provider: Provider) -> None:
        user_id = require_user(user_id)
        await self._settings.set_encrypted_key(user_id, provider, None)
        logger.info("credential_cleared", user_id=user_id, provider=provider.value)

    async def set_use_provided_keys(self, user_id: str, enabled: bool) -> None:
        user_id = require_user(user_id)
        await self._settings.set_use_provided_keys(user_id, enabled)
