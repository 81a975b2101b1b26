"""
Subagent Manager

Long-running tool executions that outlive the request/response cycle of the
agent loop.

State machine:

    created -> running -> completed | failed | cancelled

``created`` and ``running`` are the only non-terminal states and nothing ever
leaves a terminal state. ``started_at`` is stamped the first time a subagent
runs; ``completed_at`` is set exactly when the state is terminal.

Durability:
    Every transition is mirrored to ``<dir>/subagent_<id>.json`` (atomic
    write), so the file is always the last known state. On start the manager
    scans those files and fails any record that was still running when the
    previous process died, notifying the owner.

Notifications:
    Reaching a terminal state publishes exactly one SubagentCompletedMessage
    addressed to the subagent's (platform, user_id), then the subagent leaves
    the in-memory table. The file on disk remains.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from bus import BusClosedError, MessageBus
from messages import SubagentCompletedMessage, UserMessage, utc_now
from tools import ToolRegistry
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted by system shutdown"

# Id of the subagent whose tool is currently executing, for progress reports
current_subagent_id: ContextVar[str | None] = ContextVar("current_subagent_id", default=None)


class SubagentState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SubagentState.COMPLETED, SubagentState.FAILED, SubagentState.CANCELLED)


_TRANSITIONS = {
    SubagentState.CREATED: {SubagentState.RUNNING, SubagentState.FAILED},
    SubagentState.RUNNING: {SubagentState.COMPLETED, SubagentState.FAILED, SubagentState.CANCELLED},
}


class InvalidTransitionError(Exception):
    """Raised on a state change the state machine does not allow."""
    pass


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Data Model
# =============================================================================

@dataclass
class Subagent:
    """One long-running background task."""
    id: str
    name: str
    platform: str
    user_id: str
    task_name: str
    task_parameters: dict[str, Any] = field(default_factory=dict)
    trigger_message: UserMessage | None = None
    state: SubagentState = SubagentState.CREATED
    progress: int = 0
    status_message: str = ""
    result: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: SubagentState, now: datetime = None):
        """Move to ``new_state``, stamping started_at/completed_at."""
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"Subagent {self.id}: cannot go from {self.state.value} to {new_state.value}"
            )
        now = now or utc_now()
        self.state = new_state
        if new_state is SubagentState.RUNNING and self.started_at is None:
            self.started_at = now
        if new_state.is_terminal:
            self.completed_at = now

    def snapshot(self) -> "Subagent":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "platform": self.platform,
            "user_id": self.user_id,
            "trigger_message": self.trigger_message.to_dict() if self.trigger_message else None,
            "task_name": self.task_name,
            "task_parameters": self.task_parameters,
            "progress": self.progress,
            "status_message": self.status_message,
            "result": self.result,
            "error": self.error,
            "created_at": _dt(self.created_at),
            "started_at": _dt(self.started_at),
            "completed_at": _dt(self.completed_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Subagent":
        trigger = data.get("trigger_message")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=SubagentState(data.get("state", SubagentState.CREATED.value)),
            platform=data["platform"],
            user_id=data["user_id"],
            trigger_message=UserMessage.from_dict(trigger) if trigger else None,
            task_name=data["task_name"],
            task_parameters=data.get("task_parameters") or {},
            progress=data.get("progress", 0),
            status_message=data.get("status_message", ""),
            result=data.get("result"),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            metadata=data.get("metadata") or {},
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> "Subagent":
        return cls.from_dict(json.loads(text))


# =============================================================================
# Storage
# =============================================================================

class SubagentStore:
    """One JSON file per subagent, written atomically."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, subagent_id: str) -> Path:
        return self.base_dir / f"subagent_{subagent_id}.json"

    def write(self, subagent_id: str, payload: str):
        path = self.path_for(subagent_id)
        # Write to temp file then rename (atomic on POSIX)
        temp_file = path.with_suffix(".json.tmp")
        with open(temp_file, "w") as f:
            f.write(payload)
        temp_file.replace(path)

    def save(self, subagent: Subagent):
        self.write(subagent.id, subagent.to_json())

    def load(self, subagent_id: str) -> Subagent | None:
        path = self.path_for(subagent_id)
        if not path.exists():
            return None
        return Subagent.from_json(path.read_text())

    def load_all(self) -> list[Subagent]:
        records = []
        for path in sorted(self.base_dir.glob("subagent_*.json")):
            try:
                records.append(Subagent.from_json(path.read_text()))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.error("Skipping unreadable subagent file %s: %s", path.name, e)
        return records


# =============================================================================
# Manager
# =============================================================================

class SubagentManager(EventEmitter):
    """Creates, runs, persists, recovers and cancels subagents.

    Every change to the in-memory table and to a subagent's state happens
    under one asyncio.Lock. Notifications are published outside the lock so
    bus backpressure never stalls other subagents.
    """

    def __init__(
        self,
        bus: MessageBus,
        tools: ToolRegistry,
        store: SubagentStore,
        shutdown_timeout: float = 10.0,
        publish_timeout: float | None = None,
    ):
        self.bus = bus
        self.tools = tools
        self.store = store
        self.shutdown_timeout = shutdown_timeout
        self.publish_timeout = publish_timeout

        self._subagents: dict[str, Subagent] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._stopped = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> list[Subagent]:
        """Recover records left unfinished by a previous process.

        Returns the recovered (now failed) subagents.
        """
        self._stopped = False
        records = await asyncio.to_thread(self.store.load_all)
        recovered = []

        for record in records:
            if record.is_terminal or record.id in self._subagents:
                continue
            async with self._lock:
                previous = record.state
                record.transition(SubagentState.FAILED)
                record.error = INTERRUPTED_ERROR
                record.status_message = INTERRUPTED_ERROR
                await self._persist(record)
            logger.warning(
                "[subagent %s] Found '%s' left %s by an unclean shutdown; marked failed",
                record.id[:8], record.name, previous.value,
            )
            await self._notify(record)
            recovered.append(record)

        logger.info("[Subagents] Started (%d record(s) on disk, %d recovered)", len(records), len(recovered))
        return recovered

    async def stop(self):
        """Cancel everything still running and wait for the tasks to finish."""
        self._stopped = True
        tasks = list(self._tasks.values())

        for subagent_id, subagent in list(self._subagents.items()):
            if subagent.state is SubagentState.RUNNING:
                try:
                    await self.cancel_subagent(subagent_id)
                except BusClosedError:
                    logger.warning("[subagent %s] Cancelled at shutdown; bus already closed", subagent_id[:8])

        # Tasks that never got to run
        for subagent_id, subagent in list(self._subagents.items()):
            if subagent.state is SubagentState.CREATED:
                await self._finish(subagent, SubagentState.FAILED, error="Shut down before the task started")

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        self._tasks.clear()
        logger.info("[Subagents] Stopped")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def create_subagent(
        self,
        name: str,
        task_name: str,
        parameters: dict[str, Any],
        trigger_message: UserMessage,
        metadata: dict[str, Any] = None,
    ) -> Subagent:
        """Create, persist and launch a subagent. Returns a snapshot."""
        if self._stopped:
            raise RuntimeError("Subagent manager is stopped")

        subagent = Subagent(
            id=uuid.uuid4().hex,
            name=name,
            platform=trigger_message.platform,
            user_id=trigger_message.user_id,
            trigger_message=trigger_message,
            task_name=task_name,
            task_parameters=dict(parameters or {}),
            status_message="Created",
            metadata=dict(metadata or {}),
        )

        async with self._lock:
            await self._persist(subagent)
            self._subagents[subagent.id] = subagent
            self._tasks[subagent.id] = asyncio.create_task(
                self._run(subagent), name=f"subagent-{subagent.id[:8]}"
            )

        logger.info("[subagent %s] Created '%s' running %s", subagent.id[:8], name, task_name)
        return subagent.snapshot()

    def get_subagent(self, subagent_id: str) -> Subagent | None:
        """Snapshot of a subagent still in memory, or None."""
        subagent = self._subagents.get(subagent_id)
        return subagent.snapshot() if subagent else None

    def get_user_subagents(self, platform: str, user_id: str) -> list[Subagent]:
        """Snapshots of the in-memory subagents owned by (platform, user_id)."""
        return [
            s.snapshot() for s in self._subagents.values()
            if s.platform == platform and s.user_id == user_id
        ]

    async def cancel_subagent(self, subagent_id: str) -> bool:
        """Cancel a running subagent. Returns False if it is not running."""
        async with self._lock:
            subagent = self._subagents.get(subagent_id)
            if subagent is None or subagent.state is not SubagentState.RUNNING:
                return False
            subagent.transition(SubagentState.CANCELLED)
            subagent.status_message = "Cancelled by user"
            await self._persist(subagent)
            self._subagents.pop(subagent_id, None)
            task = self._tasks.pop(subagent_id, None)

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info("[subagent %s] Cancelled", subagent_id[:8])
        await self._notify(subagent)
        return True

    async def update_progress(self, subagent_id: str, progress: int, status_message: str = None) -> bool:
        """Record progress (0-100) for a running subagent."""
        async with self._lock:
            subagent = self._subagents.get(subagent_id)
            if subagent is None or subagent.state is not SubagentState.RUNNING:
                return False
            subagent.progress = max(0, min(100, int(progress)))
            if status_message is not None:
                subagent.status_message = status_message
            await self._persist(subagent)
        return True

    async def find_subagent(self, subagent_id: str) -> Subagent | None:
        """In-memory snapshot if tracked, otherwise the record on disk."""
        live = self.get_subagent(subagent_id)
        if live is not None:
            return live
        return await asyncio.to_thread(self.store.load, subagent_id)

    async def list_persisted(self, platform: str = None, user_id: str = None) -> list[Subagent]:
        """Every known subagent, finished ones included, newest first."""
        records = {s.id: s for s in await asyncio.to_thread(self.store.load_all)}
        for subagent_id, subagent in self._subagents.items():
            records[subagent_id] = subagent.snapshot()
        result = [
            s for s in records.values()
            if (platform is None or s.platform == platform) and (user_id is None or s.user_id == user_id)
        ]
        return sorted(result, key=lambda s: s.created_at, reverse=True)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, subagent: Subagent):
        tag = subagent.id[:8]
        async with self._lock:
            if subagent.state is not SubagentState.CREATED:
                return
            subagent.transition(SubagentState.RUNNING)
            subagent.status_message = "Running"
            await self._persist(subagent)

        self.emit("subagent_start", {"id": subagent.id, "name": subagent.name, "task": subagent.task_name})
        logger.info("[subagent %s] Running %s", tag, subagent.task_name)
        token = current_subagent_id.set(subagent.id)
        try:
            outcome = await self.tools.execute(subagent.task_name, subagent.task_parameters)
        except asyncio.CancelledError:
            await self._finish(subagent, SubagentState.CANCELLED, status="Cancelled")
            raise
        except Exception as e:
            logger.exception("[subagent %s] Unexpected failure", tag)
            await self._finish(subagent, SubagentState.FAILED, error=str(e))
        else:
            if outcome.success:
                await self._finish(subagent, SubagentState.COMPLETED, result=outcome.result)
            else:
                await self._finish(subagent, SubagentState.FAILED, error=outcome.error)
        finally:
            current_subagent_id.reset(token)

    async def _finish(
        self,
        subagent: Subagent,
        state: SubagentState,
        result: str = None,
        error: str = None,
        status: str = None,
    ):
        """Terminal bookkeeping. A no-op if another path already finished it."""
        async with self._lock:
            if subagent.is_terminal:
                return
            subagent.transition(state)
            if state is SubagentState.COMPLETED:
                subagent.result = result
                subagent.progress = 100
                subagent.status_message = status or "Completed successfully"
            elif state is SubagentState.FAILED:
                subagent.error = error
                subagent.status_message = status or f"Failed: {error}"
            else:
                subagent.status_message = status or "Cancelled"
            await self._persist(subagent)
            self._subagents.pop(subagent.id, None)
            self._tasks.pop(subagent.id, None)

        self.emit("subagent_end", {"id": subagent.id, "name": subagent.name, "status": subagent.state.value})
        logger.info("[subagent %s] %s", subagent.id[:8], subagent.status_message)
        try:
            await self._notify(subagent)
        except BusClosedError:
            logger.warning("[subagent %s] Finished after the bus closed; owner not notified", subagent.id[:8])

    async def _persist(self, subagent: Subagent):
        """Write the record. A failed write is logged; the in-memory state stays authoritative."""
        payload = subagent.to_json()
        try:
            await asyncio.to_thread(self.store.write, subagent.id, payload)
        except OSError:
            logger.exception("[subagent %s] Failed to persist state %s", subagent.id[:8], subagent.state.value)

    async def _notify(self, subagent: Subagent):
        await self.bus.publish(
            SubagentCompletedMessage(
                subagent=subagent.snapshot(),
                platform=subagent.platform,
                user_id=subagent.user_id,
            ),
            timeout=self.publish_timeout,
        )
