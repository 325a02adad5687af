"""Application orchestrator: wires storage, vault, adapters, ledger and services."""

from __future__ import annotations

from multichat.ai.dispatcher import DispatchCoordinator, DispatchOutcome, slots_from_settings
from multichat.ai.registry import AdapterRegistry
from multichat.ai.summary import SummaryService
from multichat.billing.ledger import UsageLedger
from multichat.billing.reconciler import PaymentReconciler
from multichat.config import AppConfig
from multichat.core.session import require_user
from multichat.errors import NotConfigured
from multichat.log import get_logger
from multichat.security.vault import CredentialVault
from multichat.services.allowance import AllowanceRefreshService
from multichat.storage.database import Database
from multichat.storage.interaction_repo import InteractionRepository
from multichat.storage.settings_repo import SettingsRepository

logger = get_logger(__name__)


class MultiChatApp:
    """Top-level application object. Components receive only their config section."""

    def __init__(self, config: AppConfig, adapters: AdapterRegistry | None = None):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.settings_repo = SettingsRepository(self.db)
        self.interaction_repo = InteractionRepository(self.db)
        self.vault = CredentialVault(self.settings_repo, config.providers, config.security.encryption_key)
        self.adapters = adapters or AdapterRegistry.from_config(config.providers)
        self.ledger = UsageLedger(self.db, config.billing)
        self.dispatcher = DispatchCoordinator(
            self.vault, self.adapters, self.ledger, self.interaction_repo, config.dispatch
        )
        self.summary = SummaryService(
            self.settings_repo,
            self.vault,
            self.adapters,
            self.ledger,
            self.interaction_repo,
            config.summary,
            timeout=config.dispatch.timeout,
            chars_per_token=config.dispatch.chars_per_token,
        )
        self.reconciler = PaymentReconciler(self.ledger, config.billing)
        self.allowance_refresh = AllowanceRefreshService(self.ledger, config.billing)

    async def start(self, background: bool = True) -> None:
        """Open the database and, unless disabled, start background services."""
        await self.db.initialize()
        if background:
            await self.allowance_refresh.start()
        logger.info("multichat_started", providers=[p.value for p in self.adapters.providers()])

    async def stop(self) -> None:
        try:
            await self.allowance_refresh.stop()
        except Exception as e:
            logger.error("service_stop_error", service=self.allowance_refresh.service_name, error=str(e))
        await self.db.close()
        logger.info("multichat_stopped")

    async def ask(self, user_id: str, prompt: str, interaction_id: str | None = None) -> DispatchOutcome:
        """Dispatch a prompt to the slots configured in the user's settings."""
        user_id = require_user(user_id)
        settings = await self.settings_repo.get(user_id)
        slots = slots_from_settings(settings) if settings else []
        if not slots:
            raise NotConfigured("No slot models configured. Select at least one model in Settings.")
        return await self.dispatcher.dispatch(user_id, prompt, slots, interaction_id=interaction_id)
