"""
File-backed conversation store.

Layout:
    <base_dir>/<platform>/<user_id>/<conversation_id>.json

One JSON document per conversation, rewritten atomically (temp file + rename)
on every append. Blocking file I/O runs in a worker thread so the event loop
never stalls on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from memory import Conversation, StoredMessage

logger = logging.getLogger(__name__)

PARTITIONS = ("day", "week", "month", "none")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._@+-]")


def _safe_component(value: str) -> str:
    """Make a platform or user id usable as a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", str(value)).strip(".")
    return cleaned or "_"


def partition_key(partition: str, when: datetime) -> str:
    """Period label for a conversation id."""
    if partition == "day":
        return when.strftime("%Y%m%d")
    if partition == "week":
        year, week, _ = when.isocalendar()
        return f"{year}W{week:02d}"
    if partition == "month":
        return when.strftime("%Y%m")
    if partition == "none":
        return "all"
    raise ValueError(f"Unknown conversation partition '{partition}'. Expected one of {PARTITIONS}")


class FileMemoryStore:
    """Append-only conversation history on the local filesystem."""

    def __init__(
        self,
        base_dir: str | Path,
        partition: str = "day",
        clock: Callable[[], datetime] = None,
    ):
        if partition not in PARTITIONS:
            raise ValueError(f"Unknown conversation partition '{partition}'. Expected one of {PARTITIONS}")
        self.base_dir = Path(base_dir)
        self.partition = partition
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def conversation_id_for(self, platform: str, user_id: str) -> str:
        period = partition_key(self.partition, self._clock())
        return f"{platform}_{user_id}_{period}"

    def _user_dir(self, platform: str, user_id: str) -> Path:
        return self.base_dir / _safe_component(platform) / _safe_component(user_id)

    def _conversation_path(self, platform: str, user_id: str, conversation_id: str) -> Path:
        return self._user_dir(platform, user_id) / f"{_safe_component(conversation_id)}.json"

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = self._locks[path] = threading.Lock()
            return lock

    # -------------------------------------------------------------------------
    # Sync file operations (run via asyncio.to_thread)
    # -------------------------------------------------------------------------

    def _read(self, path: Path) -> Conversation | None:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return Conversation.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            # Keep the damaged file for inspection and start a fresh document
            backup = path.with_suffix(".json.bak")
            logger.error("Corrupt conversation file %s (%s); moved to %s", path, e, backup)
            path.replace(backup)
            return None

    def _write(self, path: Path, conversation: Conversation):
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".json.tmp")
        with open(temp_file, "w") as f:
            json.dump(conversation.to_dict(), f, indent=2)
        temp_file.replace(path)

    def _append(self, platform: str, user_id: str, message: StoredMessage):
        conversation_id = self.conversation_id_for(platform, user_id)
        path = self._conversation_path(platform, user_id, conversation_id)
        with self._lock_for(path):
            conversation = self._read(path) or Conversation(
                conversation_id=conversation_id,
                platform=platform,
                user_id=user_id,
            )
            conversation.messages.append(message)
            self._write(path, conversation)

    def _history(self, platform: str, user_id: str, limit: int) -> list[StoredMessage]:
        conversation_id = self.conversation_id_for(platform, user_id)
        path = self._conversation_path(platform, user_id, conversation_id)
        with self._lock_for(path):
            conversation = self._read(path)
        if conversation is None or limit <= 0:
            return []
        return conversation.messages[-limit:]

    def _ensure(self, platform: str, user_id: str) -> str:
        conversation_id = self.conversation_id_for(platform, user_id)
        path = self._conversation_path(platform, user_id, conversation_id)
        with self._lock_for(path):
            if not path.exists():
                self._write(path, Conversation(conversation_id, platform, user_id))
                logger.debug("Created conversation %s", conversation_id)
        return conversation_id

    # -------------------------------------------------------------------------
    # MemoryStore API
    # -------------------------------------------------------------------------

    async def save_message(self, platform: str, user_id: str, message: StoredMessage) -> None:
        await asyncio.to_thread(self._append, platform, user_id, message)

    async def get_history(self, platform: str, user_id: str, limit: int = 50) -> list[StoredMessage]:
        return await asyncio.to_thread(self._history, platform, user_id, limit)

    async def get_or_create_conversation_id(self, platform: str, user_id: str) -> str:
        return await asyncio.to_thread(self._ensure, platform, user_id)

    async def load_conversation(self, platform: str, user_id: str, conversation_id: str) -> Conversation | None:
        path = self._conversation_path(platform, user_id, conversation_id)
        return await asyncio.to_thread(self._read, path)

    def list_conversations(self, platform: str, user_id: str) -> list[str]:
        """Conversation ids stored for a user, oldest first."""
        user_dir = self._user_dir(platform, user_id)
        if not user_dir.exists():
            return []
        return sorted(p.stem for p in user_dir.glob("*.json"))
