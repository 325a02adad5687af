"""Per-user credential and model-selection settings."""

from __future__ import annotations

import json
from datetime import datetime

from multichat.core.types import Provider
from multichat.log import get_logger
from multichat.storage.database import Database
from multichat.storage.models import UserSettings, utcnow

logger = get_logger(__name__)

_KEY_COLUMNS = {
    Provider.OPENAI: "openai_api_key_encrypted",
    Provider.ANTHROPIC: "anthropic_api_key_encrypted",
    Provider.GEMINI: "gemini_api_key_encrypted",
}


class SettingsRepository:
    """Reads and writes the user_settings row, always keyed by owner."""

    def __init__(self, db: Database):
        self._db = db

    async def get(self, user_id: str) -> UserSettings | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_settings(row)

    async def get_encrypted_key(self, user_id: str, provider: Provider) -> str | None:
        column = _KEY_COLUMNS[provider]
        cursor = await self._db.conn.execute(
            f"SELECT {column} FROM user_settings WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def save(self, settings: UserSettings) -> None:
        """Create or replace the settings row."""
        now = utcnow().isoformat()
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO user_settings
                   (user_id, openai_api_key_encrypted, anthropic_api_key_encrypted,
                    gemini_api_key_encrypted, use_provided_keys, slot_models_json,
                    summary_model, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       openai_api_key_encrypted = excluded.openai_api_key_encrypted,
                       anthropic_api_key_encrypted = excluded.anthropic_api_key_encrypted,
                       gemini_api_key_encrypted = excluded.gemini_api_key_encrypted,
                       use_provided_keys = excluded.use_provided_keys,
                       slot_models_json = excluded.slot_models_json,
                       summary_model = excluded.summary_model,
                       updated_at = excluded.updated_at""",
                (
                    settings.user_id,
                    settings.encrypted_keys.get(Provider.OPENAI),
                    settings.encrypted_keys.get(Provider.ANTHROPIC),
                    settings.encrypted_keys.get(Provider.GEMINI),
                    int(settings.use_provided_keys),
                    json.dumps({str(k): v for k, v in settings.slot_models.items()}),
                    settings.summary_model,
                    now,
                ),
            )
        logger.info("settings_saved", user_id=settings.user_id)

    async def set_encrypted_key(self, user_id: str, provider: Provider, blob: str | None) -> None:
        column = _KEY_COLUMNS[provider]
        now = utcnow().isoformat()
        async with self._db.transaction() as conn:
            await conn.execute(
                f"""INSERT INTO user_settings (user_id, {column}, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        {column} = excluded.{column},
                        updated_at = excluded.updated_at""",
                (user_id, blob, now),
            )

    async def set_use_provided_keys(self, user_id: str, enabled: bool) -> None:
        now = utcnow().isoformat()
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO user_settings (user_id, use_provided_keys, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       use_provided_keys = excluded.use_provided_keys,
                       updated_at = excluded.updated_at""",
                (user_id, int(enabled), now),
            )

    @staticmethod
    def _row_to_settings(row) -> UserSettings:
        encrypted = {
            provider: row[column]
            for provider, column in _KEY_COLUMNS.items()
            if row[column]
        }
        return UserSettings(
            user_id=row["user_id"],
            encrypted_keys=encrypted,
            use_provided_keys=bool(row["use_provided_keys"]),
            slot_models={int(k): v for k, v in json.loads(row["slot_models_json"]).items()},
            summary_model=row["summary_model"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
