"""
Unit tests for subagents.py and tools/subagent.py

Tests cover:
- State machine transitions and timestamps
- JSON round trip of Subagent records
- SubagentStore atomic files and unreadable-file handling
- Successful, failing and cancelled runs with exactly one notification each
- Cancel before the task starts, and a failed terminal write
- Recovery of records interrupted by a previous shutdown
- Progress reporting from inside a running tool
- Manager shutdown
- The subagent tool (spawn, list, check, cancel)
"""

import asyncio
import json

import pytest

from messages import SubagentCompletedMessage, UserMessage, current_message
from subagents import (
    INTERRUPTED_ERROR,
    InvalidTransitionError,
    Subagent,
    SubagentManager,
    SubagentState,
    SubagentStore,
    current_subagent_id,
)
from tools import tool
from tools.builtin import register_builtin_tools


def trigger(user_id: str = "u1") -> UserMessage:
    return UserMessage(platform="telegram", user_id=user_id, content="do the thing")


def record(state: SubagentState, subagent_id: str = "abc123") -> Subagent:
    return Subagent(
        id=subagent_id,
        name="report",
        platform="telegram",
        user_id="u1",
        task_name="slow",
        state=state,
    )


class DiskFullStore(SubagentStore):
    """Refuses to write records in one particular state."""

    def __init__(self, base_dir, refuse_state: str):
        super().__init__(base_dir)
        self.refuse_state = refuse_state

    def write(self, subagent_id: str, payload: str):
        if json.loads(payload)["state"] == self.refuse_state:
            raise OSError(28, "No space left on device")
        super().write(subagent_id, payload)


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def manager(bus, registry, tmp_path, gate):
    @tool
    async def slow(label: str = "x") -> str:
        """Wait until the test releases it."""
        await gate.wait()
        return f"finished {label}"

    @tool
    def broken() -> str:
        """Always fails."""
        raise ValueError("no good")

    @tool
    async def reporter(context) -> str:
        """Report progress halfway."""
        manager = context.services["subagents"]
        await manager.update_progress(current_subagent_id.get(), 50, "Halfway")
        await gate.wait()
        return "done"

    registry.register(slow)
    registry.register(broken)
    registry.register(reporter)
    mgr = SubagentManager(bus, registry, SubagentStore(tmp_path / "subagents"), shutdown_timeout=1.0)
    registry.add_service("subagents", mgr)
    return mgr


async def settle():
    for _ in range(5):
        await asyncio.sleep(0.01)


# =============================================================================
# Data Model
# =============================================================================


class TestStateMachine:

    def test_created_to_running_stamps_start(self):
        s = record(SubagentState.CREATED)
        s.transition(SubagentState.RUNNING)
        assert s.started_at is not None
        assert s.completed_at is None

    def test_terminal_stamps_completion(self):
        s = record(SubagentState.RUNNING)
        s.transition(SubagentState.COMPLETED)
        assert s.is_terminal
        assert s.completed_at is not None

    def test_created_can_fail_directly(self):
        s = record(SubagentState.CREATED)
        s.transition(SubagentState.FAILED)
        assert s.state is SubagentState.FAILED

    @pytest.mark.parametrize("terminal", [SubagentState.COMPLETED, SubagentState.FAILED, SubagentState.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        s = record(terminal)
        for target in SubagentState:
            with pytest.raises(InvalidTransitionError):
                s.transition(target)

    def test_created_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            record(SubagentState.CREATED).transition(SubagentState.COMPLETED)


class TestSerialization:

    def test_json_round_trip(self):
        s = record(SubagentState.CREATED)
        s.trigger_message = trigger()
        s.task_parameters = {"label": "q3"}
        s.metadata = {"origin": "test"}
        s.transition(SubagentState.RUNNING)
        s.progress = 40

        restored = Subagent.from_json(s.to_json())

        assert restored.to_dict() == s.to_dict()
        assert restored.state is SubagentState.RUNNING
        assert restored.trigger_message.content == "do the thing"

    def test_store_writes_one_file_per_subagent(self, tmp_path):
        store = SubagentStore(tmp_path)
        store.save(record(SubagentState.RUNNING, "one"))
        store.save(record(SubagentState.COMPLETED, "two"))

        assert store.path_for("one").name == "subagent_one.json"
        assert {s.id for s in store.load_all()} == {"one", "two"}
        assert not list(tmp_path.glob("*.tmp"))

    def test_unreadable_file_skipped(self, tmp_path):
        store = SubagentStore(tmp_path)
        store.save(record(SubagentState.COMPLETED, "good"))
        (tmp_path / "subagent_bad.json").write_text("{not json")

        assert [s.id for s in store.load_all()] == ["good"]


# =============================================================================
# Execution
# =============================================================================


class TestExecution:

    @pytest.mark.asyncio
    async def test_completes_and_notifies(self, bus, manager, gate):
        completions = bus.subscribe(SubagentCompletedMessage)

        created = await manager.create_subagent("report", "slow", {"label": "q3"}, trigger())
        assert created.state is SubagentState.CREATED
        await settle()
        assert manager.get_subagent(created.id).state is SubagentState.RUNNING

        gate.set()
        message = await completions.get(timeout=2)

        assert message.platform == "telegram"
        assert message.user_id == "u1"
        assert message.subagent.state is SubagentState.COMPLETED
        assert message.subagent.result == "finished q3"
        assert message.subagent.progress == 100
        assert manager.get_subagent(created.id) is None

        on_disk = manager.store.load(created.id)
        assert on_disk.state is SubagentState.COMPLETED
        assert on_disk.completed_at is not None

    @pytest.mark.asyncio
    async def test_failure_recorded(self, bus, manager):
        completions = bus.subscribe(SubagentCompletedMessage)

        created = await manager.create_subagent("bad", "broken", {}, trigger())
        message = await completions.get(timeout=2)

        assert message.subagent.state is SubagentState.FAILED
        assert "no good" in message.subagent.error
        assert manager.store.load(created.id).state is SubagentState.FAILED

    @pytest.mark.asyncio
    async def test_unknown_tool_fails(self, bus, manager):
        completions = bus.subscribe(SubagentCompletedMessage)
        await manager.create_subagent("ghost", "missing_tool", {}, trigger())
        message = await completions.get(timeout=2)
        assert message.subagent.state is SubagentState.FAILED

    @pytest.mark.asyncio
    async def test_cancel_running_notifies_once(self, bus, manager):
        completions = bus.subscribe(SubagentCompletedMessage)
        created = await manager.create_subagent("report", "slow", {}, trigger())
        await settle()

        assert await manager.cancel_subagent(created.id) is True
        message = await completions.get(timeout=2)
        await settle()

        assert message.subagent.state is SubagentState.CANCELLED
        assert completions.pending() == 0
        assert manager.store.load(created.id).state is SubagentState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_or_unknown_returns_false(self, bus, manager):
        completions = bus.subscribe(SubagentCompletedMessage)
        created = await manager.create_subagent("bad", "broken", {}, trigger())
        await completions.get(timeout=2)

        assert await manager.cancel_subagent(created.id) is False
        assert await manager.cancel_subagent("nope") is False

    @pytest.mark.asyncio
    async def test_cancel_before_start_returns_false(self, bus, manager, gate):
        created = await manager.create_subagent("report", "slow", {}, trigger())

        # Its task has not had a chance to run yet
        assert await manager.cancel_subagent(created.id) is False
        assert manager.get_subagent(created.id).state is SubagentState.CREATED
        gate.set()

    @pytest.mark.asyncio
    async def test_failed_terminal_write_still_finishes(self, bus, manager, gate, tmp_path):
        manager.store = DiskFullStore(tmp_path / "flaky", refuse_state="completed")
        completions = bus.subscribe(SubagentCompletedMessage)

        created = await manager.create_subagent("report", "slow", {}, trigger())
        await settle()
        gate.set()
        message = await completions.get(timeout=2)

        assert message.subagent.state is SubagentState.COMPLETED
        assert manager.get_subagent(created.id) is None
        assert manager.get_user_subagents("telegram", "u1") == []
        # Last successful write is what survives on disk
        assert manager.store.load(created.id).state is SubagentState.RUNNING

    @pytest.mark.asyncio
    async def test_progress_from_inside_tool(self, bus, manager, gate):
        created = await manager.create_subagent("progress", "reporter", {}, trigger())
        await settle()

        live = manager.get_subagent(created.id)
        assert live.progress == 50
        assert live.status_message == "Halfway"
        assert manager.store.load(created.id).progress == 50
        gate.set()

    @pytest.mark.asyncio
    async def test_user_scoped_listing(self, manager, gate):
        await manager.create_subagent("mine", "slow", {}, trigger("u1"))
        await manager.create_subagent("theirs", "slow", {}, trigger("u2"))
        await settle()

        assert [s.name for s in manager.get_user_subagents("telegram", "u1")] == ["mine"]
        persisted = await manager.list_persisted(user_id="u2")
        assert [s.name for s in persisted] == ["theirs"]
        gate.set()


# =============================================================================
# Recovery and Shutdown
# =============================================================================


class TestRecovery:

    @pytest.mark.asyncio
    async def test_running_record_marked_failed(self, bus, manager):
        manager.store.save(record(SubagentState.RUNNING, "interrupted"))
        completions = bus.subscribe(SubagentCompletedMessage)

        recovered = await manager.start()

        assert [s.id for s in recovered] == ["interrupted"]
        on_disk = manager.store.load("interrupted")
        assert on_disk.state is SubagentState.FAILED
        assert on_disk.error == INTERRUPTED_ERROR
        message = await completions.get(timeout=1)
        assert message.subagent.id == "interrupted"
        assert message.user_id == "u1"
        assert completions.pending() == 0

    @pytest.mark.asyncio
    async def test_created_record_also_failed(self, manager):
        manager.store.save(record(SubagentState.CREATED, "never-ran"))
        recovered = await manager.start()
        assert recovered[0].state is SubagentState.FAILED

    @pytest.mark.asyncio
    async def test_terminal_records_left_alone(self, bus, manager):
        manager.store.save(record(SubagentState.COMPLETED, "done"))
        completions = bus.subscribe(SubagentCompletedMessage)

        assert await manager.start() == []
        assert completions.pending() == 0
        assert manager.store.load("done").state is SubagentState.COMPLETED


class TestShutdown:

    @pytest.mark.asyncio
    async def test_stop_cancels_running(self, bus, manager):
        completions = bus.subscribe(SubagentCompletedMessage)
        created = await manager.create_subagent("report", "slow", {}, trigger())
        await settle()

        await manager.stop()

        message = await completions.get(timeout=1)
        assert message.subagent.state is SubagentState.CANCELLED
        assert manager.store.load(created.id).state is SubagentState.CANCELLED

    @pytest.mark.asyncio
    async def test_create_after_stop_rejected(self, manager):
        await manager.stop()
        with pytest.raises(RuntimeError):
            await manager.create_subagent("late", "slow", {}, trigger())


# =============================================================================
# Subagent Tool
# =============================================================================


class TestSubagentTool:

    @pytest.fixture
    def tools(self, bus, registry, manager):
        register_builtin_tools(registry, bus=bus, subagents=manager)
        return registry

    async def call(self, tools, message, **params):
        token = current_message.set(message)
        try:
            outcome = await tools.execute("subagent", params)
        finally:
            current_message.reset(token)
        return outcome

    @pytest.mark.asyncio
    async def test_spawn_check_cancel(self, tools, manager):
        me = trigger()
        spawned = await self.call(tools, me, action="spawn", task_name="slow", name="bg")
        assert spawned.success
        subagent_id = json.loads(spawned.result)["id"]
        await settle()

        listed = json.loads((await self.call(tools, me, action="list")).result)
        assert listed["count"] == 1

        checked = json.loads((await self.call(tools, me, action="check", subagent_id=subagent_id)).result)
        assert checked["state"] == "running"

        cancelled = json.loads((await self.call(tools, me, action="cancel", subagent_id=subagent_id)).result)
        assert cancelled["cancelled"] is True

    @pytest.mark.asyncio
    async def test_other_users_subagents_hidden(self, tools, gate):
        spawned = await self.call(tools, trigger("u1"), action="spawn", task_name="slow")
        subagent_id = json.loads(spawned.result)["id"]

        outcome = await self.call(tools, trigger("u2"), action="check", subagent_id=subagent_id)
        assert not outcome.success
        assert "No subagent" in outcome.error
        gate.set()

    @pytest.mark.asyncio
    async def test_cannot_spawn_itself(self, tools):
        outcome = await self.call(tools, trigger(), action="spawn", task_name="subagent")
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_invalid_action_rejected_by_schema(self, tools):
        outcome = await self.call(tools, trigger(), action="explode")
        assert not outcome.success
        assert "must be one of" in outcome.error

    @pytest.mark.asyncio
    async def test_requires_a_conversation(self, tools):
        outcome = await tools.execute("subagent", {"action": "list"})
        assert not outcome.success
