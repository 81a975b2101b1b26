"""
Cron Scheduler

Config-driven automation that injects work onto the message bus:

    scheduler:
      tasks:
        - name: nightly-backup
          cron: "0 3 * * *"             # 5 fields, or 6 with leading seconds
          timezone: Europe/Berlin       # optional, default UTC
          action:
            type: tool                  # publishes a ToolExecutionRequest
            tool_name: shell
            parameters: {command: "tar czf backup.tgz notes/"}
            platform: telegram          # optional: report the result here
            user_id: "12345"
        - name: standup-reminder
          cron: "0 9 * * 1-5"
          action:
            type: send_message          # publishes an AgentResponse
            platform: telegram
            user_id: "12345"
            message: Standup in 15 minutes

Design:
- Single timer loop that sleeps until the next task is due
- A task that is still running is never started twice
- Tool results come back over the bus (ToolResult.request_id) and are
  written to a per-task run history (JSONL, last 1000 runs)
- An invalid task is logged and skipped; it never blocks the others
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from bus import MessageBus, Subscription
from messages import AgentResponse, ToolExecutionRequest, ToolResult
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

ACTION_TYPES = ("tool", "send_message")


def normalize_cron(expression: str) -> str:
    """Return a croniter-compatible expression.

    Six-field expressions put seconds first; croniter expects them last.
    """
    fields = expression.split()
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


# =============================================================================
# Data Model
# =============================================================================

@dataclass
class TaskAction:
    """What a scheduled task does when it fires."""
    type: str
    tool_name: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    platform: str | None = None
    user_id: str | None = None
    message: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TaskAction":
        return cls(
            type=str(data.get("type", "")).lower(),
            tool_name=data.get("tool_name"),
            parameters=data.get("parameters") or {},
            platform=data.get("platform"),
            user_id=str(data["user_id"]) if data.get("user_id") is not None else None,
            message=data.get("message"),
        )

    def problem(self) -> str | None:
        """Why this action cannot run, or None."""
        if self.type not in ACTION_TYPES:
            return f"unknown action type '{self.type}' (expected one of {', '.join(ACTION_TYPES)})"
        if self.type == "tool" and not self.tool_name:
            return "tool action needs tool_name"
        if self.type == "send_message":
            if not self.platform or not self.user_id or not self.message:
                return "send_message action needs platform, user_id and message"
        return None


@dataclass
class ScheduledTask:
    """A named cron task with an action."""
    name: str
    cron: str
    action: TaskAction
    timezone: str | None = None
    enabled: bool = True

    # Runtime state
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_status: str | None = None
    last_error: str | None = None
    run_count: int = 0

    def __post_init__(self):
        if not croniter.is_valid(normalize_cron(self.cron)):
            raise ValueError(f"Task '{self.name}': invalid cron expression '{self.cron}'")
        problem = self.action.problem()
        if problem:
            raise ValueError(f"Task '{self.name}': {problem}")
        self._tz = self._get_tz()
        if self.next_run_at is None:
            self._update_next_run()

    def _get_tz(self):
        if not self.timezone:
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Task '{self.name}': unknown timezone '{self.timezone}'") from e

    def next_run(self, after: datetime = None) -> datetime:
        after = (after or datetime.now(timezone.utc)).astimezone(self._tz)
        nxt = croniter(normalize_cron(self.cron), after).get_next(datetime)
        return nxt.astimezone(timezone.utc)

    def _update_next_run(self, after: datetime = None):
        self.next_run_at = self.next_run(after) if self.enabled else None

    def is_due(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.enabled and self.next_run_at is not None and self.next_run_at <= now

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduledTask":
        return cls(
            name=data["name"],
            cron=data["cron"],
            action=TaskAction.from_dict(data.get("action") or {}),
            timezone=data.get("timezone"),
            enabled=data.get("enabled", True),
        )


@dataclass
class RunRecord:
    """Record of a task execution."""
    task_name: str
    started_at: str
    completed_at: str | None = None
    status: str = "running"  # running, ok, error
    result: str | None = None
    error: str | None = None
    duration_ms: int | None = None


def tasks_from_config(entries: list[dict]) -> list[ScheduledTask]:
    """Build tasks from config, logging and skipping the invalid ones."""
    tasks = []
    for i, entry in enumerate(entries or []):
        try:
            tasks.append(ScheduledTask.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            label = entry.get("name", f"#{i}") if isinstance(entry, dict) else f"#{i}"
            logger.error("[Scheduler] Skipping task %s: %s", label, e)
    return tasks


# =============================================================================
# Run History
# =============================================================================

class SchedulerStore:
    """
    Run history storage.

    Structure:
        {base_dir}/
            runs/
                {task_name}.jsonl   # Run history per task
    """

    def __init__(self, base_dir: str | Path, max_entries: int = 1000):
        self.base_dir = Path(base_dir)
        self.runs_dir = self.base_dir / "runs"
        self.max_entries = max_entries
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def _run_file(self, task_name: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in task_name)
        return self.runs_dir / f"{safe}.jsonl"

    def append_run(self, record: RunRecord):
        """Append run record to task's history file."""
        run_file = self._run_file(record.task_name)
        with open(run_file, "a") as f:
            f.write(json.dumps(asdict(record)) + "\n")
        self._prune_runs(run_file)

    def get_runs(self, task_name: str, limit: int = 20) -> list[RunRecord]:
        """Get recent run history for a task."""
        run_file = self._run_file(task_name)
        if not run_file.exists():
            return []

        runs = []
        with open(run_file) as f:
            for line in f:
                if line.strip():
                    try:
                        runs.append(RunRecord(**json.loads(line)))
                    except (json.JSONDecodeError, TypeError):
                        continue
        return runs[-limit:]

    def _prune_runs(self, run_file: Path):
        """Keep only the most recent entries."""
        with open(run_file) as f:
            lines = f.readlines()
        if len(lines) > self.max_entries:
            with open(run_file, "w") as f:
                f.writelines(lines[-self.max_entries:])


# =============================================================================
# Scheduler Engine
# =============================================================================

class Scheduler(EventEmitter):
    """
    Runs cron tasks and publishes their actions on the bus.

    Usage:
        scheduler = Scheduler(bus, tasks_from_config(config.scheduler.tasks))
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        bus: MessageBus,
        tasks: list[ScheduledTask] = None,
        store: SchedulerStore = None,
        tick_seconds: float = 1.0,
        result_timeout: float = 300.0,
    ):
        self.bus = bus
        self.store = store
        self.result_timeout = result_timeout
        self.tick_seconds = tick_seconds
        self.tasks: dict[str, ScheduledTask] = {}
        for task in tasks or []:
            self.add(task)

        self._running = False
        self._timer_task: asyncio.Task | None = None
        self._results_task: asyncio.Task | None = None
        self._results: Subscription | None = None
        self._wake = asyncio.Event()
        self._running_tasks: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._pending: dict[str, asyncio.Future] = {}

    # -------------------------------------------------------------------------
    # Task Management API
    # -------------------------------------------------------------------------

    def add(self, task: ScheduledTask) -> ScheduledTask:
        if task.name in self.tasks:
            raise ValueError(f"Task '{task.name}' already exists")
        self.tasks[task.name] = task
        self._reschedule_timer()
        return task

    def remove(self, name: str) -> bool:
        if self.tasks.pop(name, None) is None:
            return False
        self._reschedule_timer()
        return True

    def get(self, name: str) -> ScheduledTask | None:
        return self.tasks.get(name)

    def list(self, include_disabled: bool = False) -> list[ScheduledTask]:
        tasks = [t for t in self.tasks.values() if include_disabled or t.enabled]
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        return sorted(tasks, key=lambda t: t.next_run_at or far_future)

    def get_runs(self, name: str, limit: int = 20) -> list[RunRecord]:
        return self.store.get_runs(name, limit) if self.store else []

    async def run_now(self, name: str) -> dict:
        """Manually trigger a task, regardless of its schedule."""
        task = self.tasks.get(name)
        if not task:
            return {"error": f"Task {name} not found"}
        if name in self._running_tasks:
            return {"status": "skipped", "reason": "already running"}
        self._running_tasks.add(name)
        return await self._execute_task(task, reschedule=False)

    # -------------------------------------------------------------------------
    # Scheduler Loop
    # -------------------------------------------------------------------------

    async def start(self):
        if self._running:
            return
        self._running = True
        self._results = self.bus.subscribe(ToolResult)
        self._results_task = asyncio.create_task(self._collect_results(self._results))
        self._timer_task = asyncio.create_task(self._run_loop())
        logger.info("[Scheduler] Started with %d task(s)", len(self.tasks))

    async def stop(self):
        self._running = False
        for task in (self._timer_task, self._results_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self._results:
            self._results.close()
        for future in self._pending.values():
            future.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("[Scheduler] Stopped")

    async def _run_loop(self):
        """Sleep until the next task is due (at most one tick), run it, repeat."""
        while self._running:
            try:
                next_wake = self._next_wake_time()
                if next_wake is None:
                    sleep_seconds = self.tick_seconds
                else:
                    sleep_seconds = (next_wake - datetime.now(timezone.utc)).total_seconds()
                    sleep_seconds = min(max(0.0, sleep_seconds), self.tick_seconds)

                self._wake.clear()
                if sleep_seconds > 0:
                    try:
                        await asyncio.wait_for(self._wake.wait(), timeout=sleep_seconds)
                    except asyncio.TimeoutError:
                        pass
                else:
                    # Yield even when something is due so other coroutines keep running
                    await asyncio.sleep(0)

                self._run_due_tasks()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("[Scheduler] Loop error: %s", e)
                await asyncio.sleep(1)

    def _next_wake_time(self) -> datetime | None:
        times = [t.next_run_at for t in self.tasks.values() if t.enabled and t.next_run_at]
        return min(times) if times else None

    def _run_due_tasks(self, now: datetime = None):
        now = now or datetime.now(timezone.utc)
        for task in list(self.tasks.values()):
            if not task.is_due(now):
                continue
            if task.name in self._running_tasks:
                logger.debug("[Scheduler] %s still running, skipping this tick", task.name)
                task._update_next_run(now)
                continue
            # Mark before spawning so the next tick cannot start it twice
            self._running_tasks.add(task.name)
            background = asyncio.create_task(self._execute_task(task))
            self._background.add(background)
            background.add_done_callback(self._background.discard)

    def _reschedule_timer(self):
        self._wake.set()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute_task(self, task: ScheduledTask, reschedule: bool = True) -> dict:
        started_at = datetime.now(timezone.utc)
        record = RunRecord(task_name=task.name, started_at=started_at.isoformat())
        self.emit("task_start", {"id": task.name, "name": task.name})
        logger.info("[Scheduler] Running %s (%s)", task.name, task.action.type)

        try:
            if task.action.type == "tool":
                result = await self._dispatch_tool(task)
            else:
                await self.bus.publish(AgentResponse(
                    platform=task.action.platform,
                    user_id=task.action.user_id,
                    content=task.action.message,
                ))
                result = f"message sent to {task.action.platform}:{task.action.user_id}"
            record.status = "ok"
            record.result = str(result)[:500]
            task.last_error = None
        except asyncio.CancelledError:
            record.status = "error"
            record.error = "cancelled"
            raise
        except Exception as e:
            logger.error("[Scheduler] %s failed: %s", task.name, e)
            record.status = "error"
            record.error = str(e)
            task.last_error = str(e)
        finally:
            completed_at = datetime.now(timezone.utc)
            record.completed_at = completed_at.isoformat()
            record.duration_ms = int((completed_at - started_at).total_seconds() * 1000)

            task.last_run_at = completed_at
            task.last_status = record.status
            task.run_count += 1
            if reschedule:
                # Never fire the same slot twice
                after = completed_at if task.next_run_at is None else max(completed_at, task.next_run_at)
                task._update_next_run(after)
            self._running_tasks.discard(task.name)

            self.emit("task_end", {"id": task.name, "status": record.status, "duration_ms": record.duration_ms})
            if self.store:
                await asyncio.to_thread(self.store.append_run, record)

        if record.status == "ok":
            return {"status": "ok", "result": record.result}
        return {"status": "error", "error": record.error}

    async def _dispatch_tool(self, task: ScheduledTask) -> str:
        request = ToolExecutionRequest(
            tool_name=task.action.tool_name,
            parameters=dict(task.action.parameters),
            platform=task.action.platform,
            user_id=task.action.user_id,
            source=f"scheduler:{task.name}",
        )
        future = asyncio.get_running_loop().create_future()
        self._pending[request.message_id] = future
        try:
            await self.bus.publish(request)
            result: ToolResult = await asyncio.wait_for(future, timeout=self.result_timeout)
        except asyncio.TimeoutError:
            raise RuntimeError(f"No result for {task.action.tool_name} within {self.result_timeout:.0f}s")
        finally:
            self._pending.pop(request.message_id, None)

        if not result.success:
            raise RuntimeError(result.result)
        return result.result

    async def _collect_results(self, results: Subscription):
        async for result in results:
            future = self._pending.get(result.request_id) if result.request_id else None
            if future is not None and not future.done():
                future.set_result(result)
