"""Interaction repository: threads, per-slot conversations and token counters."""

from __future__ import annotations

import json
import uuid
from datetime import datetime

import aiosqlite

from multichat.errors import PersistenceError
from multichat.log import get_logger
from multichat.storage.database import Database
from multichat.storage.models import ConversationMessage, Interaction, SlotState

logger = get_logger(__name__)


class InteractionRepository:
    """CRUD over interactions. Every statement is scoped by the owner's user_id."""

    def __init__(self, db: Database):
        self._db = db

    async def create(self, interaction: Interaction) -> Interaction:
        """Insert a new interaction and return it with its assigned id."""
        if not interaction.id:
            interaction.id = uuid.uuid4().hex
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    """INSERT INTO interactions (id, user_id, prompt, title, summary, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        interaction.id,
                        interaction.user_id,
                        interaction.prompt,
                        interaction.title,
                        interaction.summary,
                        interaction.created_at.isoformat(),
                    ),
                )
                for slot in interaction.slots.values():
                    await self._upsert_slot(conn, interaction.id, slot)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to create interaction: {e}") from e
        logger.info("interaction_created", interaction_id=interaction.id, user_id=interaction.user_id)
        return interaction

    async def get(self, interaction_id: str, user_id: str) -> Interaction | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM interactions WHERE id = ? AND user_id = ?",
            (interaction_id, user_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        interaction = self._row_to_interaction(row)
        cursor = await self._db.conn.execute(
            """SELECT * FROM interaction_slots
               WHERE interaction_id = ? ORDER BY slot_number ASC""",
            (interaction_id,),
        )
        for slot_row in await cursor.fetchall():
            slot = self._row_to_slot(slot_row)
            interaction.slots[slot.slot_number] = slot
        return interaction

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Interaction]:
        """List interactions (without slot bodies), newest first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM interactions WHERE user_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_interaction(row) for row in rows]

    async def append_turns(self, interaction_id: str, user_id: str, turns: list[SlotState]) -> None:
        """Append one turn per slot; rejected unless the caller owns the interaction.

        Each ``SlotState`` is a delta: ``conversation`` holds only the new
        messages and the token fields are increments. Stored conversations are
        re-read inside the write transaction, so concurrent turns on the same
        interaction all land. A slot whose turn adds messages adopts the
        turn's ``model_used``; a slot without stored row is created.
        """
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    "SELECT 1 FROM interactions WHERE id = ? AND user_id = ?",
                    (interaction_id, user_id),
                )
                if await cursor.fetchone() is None:
                    raise PersistenceError(
                        f"Interaction {interaction_id} not found for this user."
                    )
                for turn in turns:
                    await self._append_turn(conn, interaction_id, turn)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to append interaction turn: {e}") from e

    @staticmethod
    async def _append_turn(conn: aiosqlite.Connection, interaction_id: str, turn: SlotState) -> None:
        cursor = await conn.execute(
            """SELECT model_used, conversation_json FROM interaction_slots
               WHERE interaction_id = ? AND slot_number = ?""",
            (interaction_id, turn.slot_number),
        )
        row = await cursor.fetchone()
        if row is None:
            await InteractionRepository._upsert_slot(conn, interaction_id, turn)
            return

        conversation = json.loads(row["conversation_json"]) + [m.to_dict() for m in turn.conversation]
        await conn.execute(
            """UPDATE interaction_slots
               SET model_used = ?, conversation_json = ?,
                   input_tokens = input_tokens + ?, output_tokens = output_tokens + ?
               WHERE interaction_id = ? AND slot_number = ?""",
            (
                turn.model_used if turn.conversation else row["model_used"],
                json.dumps(conversation),
                turn.input_tokens,
                turn.output_tokens,
                interaction_id,
                turn.slot_number,
            ),
        )

    async def update_title(self, interaction_id: str, user_id: str, title: str) -> None:
        await self._update_column(interaction_id, user_id, "title", title)

    async def update_summary(self, interaction_id: str, user_id: str, summary: str) -> None:
        await self._update_column(interaction_id, user_id, "summary", summary)

    async def delete(self, interaction_id: str, user_id: str) -> bool:
        """Delete an interaction and its slots. Returns False if nothing matched."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM interactions WHERE id = ? AND user_id = ?",
                (interaction_id, user_id),
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("interaction_deleted", interaction_id=interaction_id, user_id=user_id)
        return deleted

    async def _update_column(self, interaction_id: str, user_id: str, column: str, value: str) -> None:
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    f"UPDATE interactions SET {column} = ? WHERE id = ? AND user_id = ?",
                    (value, interaction_id, user_id),
                )
                if cursor.rowcount == 0:
                    raise PersistenceError(
                        f"Interaction {interaction_id} not found for this user."
                    )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to update interaction {column}: {e}") from e

    @staticmethod
    async def _upsert_slot(conn: aiosqlite.Connection, interaction_id: str, slot: SlotState) -> None:
        await conn.execute(
            """INSERT INTO interaction_slots
               (interaction_id, slot_number, model_used, conversation_json,
                input_tokens, output_tokens)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(interaction_id, slot_number) DO UPDATE SET
                   model_used = excluded.model_used,
                   conversation_json = excluded.conversation_json,
                   input_tokens = excluded.input_tokens,
                   output_tokens = excluded.output_tokens""",
            (
                interaction_id,
                slot.slot_number,
                slot.model_used,
                json.dumps([m.to_dict() for m in slot.conversation]),
                slot.input_tokens,
                slot.output_tokens,
            ),
        )

    @staticmethod
    def _row_to_interaction(row) -> Interaction:
        return Interaction(
            id=row["id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            title=row["title"],
            summary=row["summary"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_slot(row) -> SlotState:
        return SlotState(
            slot_number=row["slot_number"],
            model_used=row["model_used"],
            conversation=[
                ConversationMessage.from_dict(m) for m in json.loads(row["conversation_json"])
            ],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
        )
