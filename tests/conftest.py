"""Shared fixtures: a temporary SQLite database and wired components."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from multichat.ai.client import ProviderResult
from multichat.ai.registry import AdapterRegistry
from multichat.billing.ledger import UsageLedger
from multichat.config import BillingConfig, DispatchConfig, ProviderConfig, ProvidersConfig
from multichat.core.types import Provider
from multichat.security.vault import CredentialVault
from multichat.storage.database import Database
from multichat.storage.interaction_repo import InteractionRepository
from multichat.storage.settings_repo import SettingsRepository

TEST_KEY = "0123456789abcdef" * 4
OTHER_KEY = "fedcba9876543210" * 4
WEBHOOK_SECRET = "whsec_test_secret"

PLATFORM_KEYS = {
    Provider.OPENAI: "sk-platform-openai",
    Provider.ANTHROPIC: "sk-platform-anthropic",
    Provider.GEMINI: "platform-gemini",
}


def fake_adapter(provider: Provider, result: ProviderResult | None = None, error: Exception | None = None):
    """Adapter double whose ``call`` returns ``result`` or raises ``error``."""
    adapter = MagicMock()
    adapter.provider = provider
    adapter.call = AsyncMock(return_value=result, side_effect=error)
    return adapter


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        free_allowance=100,
        free_reset_days=30,
        webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key="sk_test_123",
        price_tokens={"price_100k": 100000, "price_small": 1000},
    )


@pytest.fixture
def providers_config() -> ProvidersConfig:
    return ProvidersConfig(
        openai=ProviderConfig(api_key=PLATFORM_KEYS[Provider.OPENAI]),
        anthropic=ProviderConfig(api_key=PLATFORM_KEYS[Provider.ANTHROPIC]),
        gemini=ProviderConfig(api_key=PLATFORM_KEYS[Provider.GEMINI]),
    )


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    return DispatchConfig(timeout=5, chars_per_token=4)


@pytest.fixture
def ledger(db, billing_config) -> UsageLedger:
    return UsageLedger(db, billing_config)


@pytest.fixture
def settings_repo(db) -> SettingsRepository:
    return SettingsRepository(db)


@pytest.fixture
def interaction_repo(db) -> InteractionRepository:
    return InteractionRepository(db)


@pytest.fixture
def vault(settings_repo, providers_config) -> CredentialVault:
    return CredentialVault(settings_repo, providers_config, TEST_KEY)


@pytest.fixture
def registry() -> AdapterRegistry:
    return AdapterRegistry()
