"""Timers, lease contention and takeover of abandoned executions."""

from datetime import timedelta

import pytest

from crmflow.contracts import ExecutionStatus, StepStatus, SuspensionReason
from crmflow.errors import ExecutionStateError
from crmflow.utils.time import utcnow

TENANT = "acme"


@pytest.mark.asyncio
async def test_delay_step_resumes_when_timer_elapses(engine, publish):
    engine.register_function("follow_up", lambda v, p: {"followed_up": True})
    definition = publish(
        "nurture",
        [
            {"id": "wait", "kind": "delay", "seconds": 3600},
            {"id": "follow_up", "kind": "compute", "handler": "follow_up"},
        ],
    )

    handle = await engine.start_execution(TENANT, definition.id)
    view = await engine.get_execution(TENANT, handle.execution_id)

    assert view.status == ExecutionStatus.SUSPENDED
    assert view.execution.suspension.reason == SuspensionReason.TIMER
    assert await engine.resume_due_timers() == []

    resumed = await engine.coordinator.resume_due_timers(now=utcnow() + timedelta(hours=2))

    assert resumed == [handle.execution_id]
    view = await engine.get_execution(TENANT, handle.execution_id)
    assert view.status == ExecutionStatus.COMPLETED
    assert view.execution.variables == {"followed_up": True}


@pytest.mark.asyncio
async def test_pending_execution_is_left_to_lease_holder(engine, publish, repo):
    engine.register_function("noop", lambda v, p: {})
    definition = publish("queued", [{"id": "a", "kind": "compute", "handler": "noop"}])
    handle = await engine.start_execution(TENANT, definition.id, run=False)
    other = await repo.acquire_lease(handle.execution_id, "worker-b", ttl=30)

    await engine.run_pending()
    assert (await repo.get_execution(handle.execution_id)).status == ExecutionStatus.PENDING

    await repo.release_lease(other)
    assert await engine.run_pending() == [handle.execution_id]
    assert (await repo.get_execution(handle.execution_id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_refuses_while_another_worker_holds_lease(engine, publish, repo):
    definition = publish("approval", [{"id": "approve", "kind": "human_task"}])
    handle = await engine.start_execution(TENANT, definition.id)
    await repo.acquire_lease(handle.execution_id, "worker-b", ttl=30)

    with pytest.raises(ExecutionStateError):
        await engine.resume(TENANT, handle.execution_id, {"approved": True})
    assert (await repo.get_execution(handle.execution_id)).status == ExecutionStatus.SUSPENDED


@pytest.mark.asyncio
async def test_lost_lease_stops_writes_and_another_worker_takes_over(engine, publish, repo, caplog):
    stolen = []

    async def steal_lease(variables, params):
        if not stolen:
            [running] = await repo.list_executions(status=ExecutionStatus.RUNNING)
            await repo.release_lease(await repo.get_lease(running.id))
            stolen.append(await repo.acquire_lease(running.id, "worker-b", ttl=30))
        return {"a": len(stolen)}

    engine.register_function("steal_lease", steal_lease)
    engine.register_function("noop", lambda v, p: {})
    definition = publish(
        "contested",
        [
            {"id": "a", "kind": "compute", "handler": "steal_lease"},
            {"id": "b", "kind": "compute", "handler": "noop"},
        ],
    )

    handle = await engine.start_execution(TENANT, definition.id)

    # The first worker's write after step "a" was fenced off.
    execution = await repo.get_execution(handle.execution_id)
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.current_step_id == "a"
    assert execution.variables == {}
    assert "Stopped driving" in caplog.text
    assert (await repo.get_lease(handle.execution_id)).owner == "worker-b"

    # The other worker dies; its lease is dropped and the execution is picked up again.
    await repo.release_lease(stolen[0])
    assert await engine.run_pending() == [handle.execution_id]

    view = await engine.get_execution(TENANT, handle.execution_id)
    assert view.status == ExecutionStatus.COMPLETED
    assert view.execution.variables == {"a": 1}
    a_records = [s for s in view.steps if s.step_id == "a"]
    assert [s.status for s in a_records] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
