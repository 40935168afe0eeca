"""
Conversation Context
====================

ContextStore persists conversation turns per user. ContextManager sits on
top of a store and fits history into a provider's context window:
- recent turns are trimmed oldest-first to 90% of the window
- optionally, similar past turns are merged in behind a separator turn
- the result is reshaped into the platform's prompt format via the registry

Store failures never fail a request: reads yield empty context and writes
are dropped, both logged.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Sequence
from pathlib import Path

from .credentials import CONFIG_DIR
from .errors import PersistenceError
from .models import ConversationTurn, EnhancedPrompt, TaskType, utc_now_iso
from .registry import DEFAULT_CONTEXT_WINDOW, PlatformRegistry

logger = logging.getLogger(__name__)

CONTEXT_BUDGET_RATIO = 0.9
TOKENS_PER_WORD = 1.3
RELEVANT_HISTORY_SEPARATOR = "--- Relevant past conversations ---"

_WORD = re.compile(r"\w+")


def _word_set(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def similarity(query_words: set[str], turn: ConversationTurn) -> float:
    """Fraction of query words that appear in the turn"""
    if not query_words:
        return 0.0
    turn_words = _word_set(f"{turn.user_input} {turn.ai_response}")
    return len(query_words & turn_words) / len(query_words)


def rank_similar(
    turns: Sequence[ConversationTurn], query_text: str, top_k: int
) -> list[ConversationTurn]:
    """Top-K turns by word overlap, returned in chronological order"""
    query_words = _word_set(query_text)
    scored = [
        (similarity(query_words, turn), index)
        for index, turn in enumerate(turns)
        if not turn.is_system_message
    ]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: (-item[0], -item[1]))
    chosen = sorted(index for _, index in scored[: max(top_k, 0)])
    return [turns[i] for i in chosen]


class ContextStore(ABC):
    """Persistence contract for conversation turns"""

    @abstractmethod
    async def get_conversation_history(
        self, user_id: str, max_turns: int
    ) -> list[ConversationTurn]:
        """Most recent max_turns turns, oldest first"""

    @abstractmethod
    async def search_similar_conversations(
        self, user_id: str, query_text: str, top_k: int
    ) -> list[ConversationTurn]:
        pass

    @abstractmethod
    async def save_conversation_turn(self, turn: ConversationTurn) -> None:
        pass

    @abstractmethod
    async def clear_user_conversations(self, user_id: str) -> None:
        pass


class InMemoryContextStore(ContextStore):
    """Process-local store; history is lost on restart"""

    def __init__(self) -> None:
        self._turns: dict[str, list[ConversationTurn]] = defaultdict(list)

    async def get_conversation_history(
        self, user_id: str, max_turns: int
    ) -> list[ConversationTurn]:
        if max_turns <= 0:
            return []
        return list(self._turns.get(user_id, [])[-max_turns:])

    async def search_similar_conversations(
        self, user_id: str, query_text: str, top_k: int
    ) -> list[ConversationTurn]:
        return rank_similar(self._turns.get(user_id, []), query_text, top_k)

    async def save_conversation_turn(self, turn: ConversationTurn) -> None:
        self._turns[turn.user_id].append(turn)

    async def clear_user_conversations(self, user_id: str) -> None:
        self._turns.pop(user_id, None)


class SQLiteContextStore(ContextStore):
    """SQLite-backed store. Queries run in a worker thread."""

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            db_path = CONFIG_DIR / "context.db"
        self.db_path = db_path
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    user_input TEXT NOT NULL,
                    ai_response TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    task_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    is_system_message INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_turns_user
                ON turns(user_id, id)
            """)
            conn.commit()

    @staticmethod
    def _from_row(row: tuple) -> ConversationTurn:
        return ConversationTurn(
            user_id=str(row[0]),
            user_input=str(row[1]),
            ai_response=str(row[2]),
            platform=str(row[3]),
            task_type=str(row[4]),
            timestamp=str(row[5]),
            is_system_message=bool(row[6]),
        )

    def _select(self, user_id: str, limit: int | None = None) -> list[ConversationTurn]:
        query = """
            SELECT user_id, user_input, ai_response, platform, task_type,
                   timestamp, is_system_message
            FROM turns WHERE user_id = ? ORDER BY id DESC
        """
        params: tuple = (user_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (user_id, limit)
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in reversed(rows)]

    def _insert(self, turn: ConversationTurn) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO turns (user_id, user_input, ai_response, platform,
                                   task_type, timestamp, is_system_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.user_id,
                    turn.user_input,
                    turn.ai_response,
                    turn.platform,
                    turn.task_type,
                    turn.timestamp,
                    int(turn.is_system_message),
                ),
            )
            conn.commit()

    def _delete(self, user_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM turns WHERE user_id = ?", (user_id,))
            conn.commit()

    async def get_conversation_history(
        self, user_id: str, max_turns: int
    ) -> list[ConversationTurn]:
        if max_turns <= 0:
            return []
        try:
            return await asyncio.to_thread(self._select, user_id, max_turns)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read history: {e}") from e

    async def search_similar_conversations(
        self, user_id: str, query_text: str, top_k: int
    ) -> list[ConversationTurn]:
        try:
            turns = await asyncio.to_thread(self._select, user_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to search history: {e}") from e
        return rank_similar(turns, query_text, top_k)

    async def save_conversation_turn(self, turn: ConversationTurn) -> None:
        try:
            await asyncio.to_thread(self._insert, turn)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save turn: {e}") from e

    async def clear_user_conversations(self, user_id: str) -> None:
        try:
            await asyncio.to_thread(self._delete, user_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear history: {e}") from e


class ContextManager:
    """Budgets stored history to a platform's context window"""

    def __init__(
        self,
        store: ContextStore | None = None,
        registry: PlatformRegistry | None = None,
        max_context_length: int = 10,
    ):
        self.store = store or InMemoryContextStore()
        self.registry = registry
        self.max_context_length = max_context_length

    @staticmethod
    def estimate_tokens(text: str | None) -> float:
        """Rough token estimate: 1.3 tokens per whitespace-separated word"""
        if not text:
            return 0.0
        return len(text.split()) * TOKENS_PER_WORD

    @classmethod
    def turn_tokens(cls, turn: ConversationTurn) -> float:
        return cls.estimate_tokens(turn.user_input) + cls.estimate_tokens(turn.ai_response)

    def context_window(self, platform: str) -> int:
        if self.registry is None:
            return DEFAULT_CONTEXT_WINDOW
        return self.registry.context_window(platform)

    @classmethod
    def optimize_context(
        cls, context: Sequence[ConversationTurn], context_window: int
    ) -> list[ConversationTurn]:
        """Longest most-recent suffix whose estimate fits 90% of the window"""
        budget = context_window * CONTEXT_BUDGET_RATIO
        total = 0.0
        kept: list[ConversationTurn] = []
        for turn in reversed(context):
            tokens = cls.turn_tokens(turn)
            if total + tokens > budget:
                break
            kept.append(turn)
            total += tokens
        kept.reverse()
        return kept

    @classmethod
    def merge_and_optimize_context(
        cls,
        recent: Sequence[ConversationTurn],
        relevant: Sequence[ConversationTurn],
        context_window: int,
    ) -> list[ConversationTurn]:
        """Append similar past turns behind a separator, then re-trim"""
        combined = list(recent)
        extra = [turn for turn in relevant if turn not in combined]
        if extra:
            user_id = extra[0].user_id
            combined.append(
                ConversationTurn(
                    user_id=user_id,
                    user_input="",
                    ai_response=RELEVANT_HISTORY_SEPARATOR,
                    platform="system",
                    is_system_message=True,
                )
            )
            combined.extend(extra)
        return cls.optimize_context(combined, context_window)

    async def get_context(
        self,
        user_id: str,
        platform: str,
        user_input: str | None = None,
        enable_semantic_search: bool = False,
        max_relevant_items: int = 3,
    ) -> list[ConversationTurn]:
        window = self.context_window(platform)
        try:
            history = await self.store.get_conversation_history(
                user_id, self.max_context_length
            )
            context = self.optimize_context(history, window)

            if enable_semantic_search and user_input:
                relevant = await self.store.search_similar_conversations(
                    user_id, user_input, max_relevant_items
                )
                context = self.merge_and_optimize_context(context, relevant, window)
            return context
        except Exception as e:
            logger.error(f"Error retrieving context for {user_id}: {e}")
            return []

    async def save_context(
        self,
        user_id: str,
        user_input: str,
        ai_response: str,
        platform: str = "unknown",
        task_type: str = TaskType.GENERAL.value,
        timestamp: str | None = None,
    ) -> bool:
        turn = ConversationTurn(
            user_id=user_id,
            user_input=user_input,
            ai_response=ai_response,
            platform=platform,
            task_type=task_type,
            timestamp=timestamp or utc_now_iso(),
        )
        try:
            await self.store.save_conversation_turn(turn)
            logger.debug(f"Context saved for {user_id}")
            return True
        except Exception as e:
            logger.error(f"Error saving context for {user_id}: {e}")
            return False

    async def clear_context(self, user_id: str) -> bool:
        try:
            await self.store.clear_user_conversations(user_id)
            logger.info(f"Context cleared for {user_id}")
            return True
        except Exception as e:
            logger.error(f"Error clearing context for {user_id}: {e}")
            return False

    async def get_recent_context(self, user_id: str) -> list[ConversationTurn]:
        """Recent turns for classification, untrimmed; empty when the store fails"""
        try:
            return await self.store.get_conversation_history(user_id, self.max_context_length)
        except Exception as e:
            logger.error(f"Error retrieving recent context for {user_id}: {e}")
            return []

    async def get_history(self, user_id: str) -> list[ConversationTurn]:
        """Raw stored history for inspection endpoints"""
        return await self.store.get_conversation_history(user_id, self.max_context_length)

    def format_context_for_platform(
        self,
        context: Sequence[ConversationTurn],
        platform: str,
        user_input: str | None = None,
    ) -> EnhancedPrompt:
        if self.registry is None:
            raise PersistenceError("No platform registry configured for prompt formatting")
        return self.registry.build_base_prompt(context, platform, user_input)
