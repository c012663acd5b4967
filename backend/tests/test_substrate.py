# tests/test_substrate.py — Id sequences, atomic mutations, reentrancy guard
import pytest
from sqlalchemy import func, select

from errors import ReentrantMutation
from models import EventKind, RegistryEvent, Workspace
from substrate import FrozenClock, active_mutation
from tests.conftest import START


async def _event_count(db_session) -> int:
    result = await db_session.execute(select(func.count(RegistryEvent.id)))
    return result.scalar() or 0


def test_frozen_clock_only_moves_when_told():
    clock = FrozenClock(START)
    assert clock.now() == START
    assert clock.now() == START
    clock.advance(days=2)
    assert (clock.now() - START).days == 2
    clock.set(START)
    assert clock.now() == START


@pytest.mark.asyncio
async def test_ids_are_sequential_per_kind(workspaces, workflow):
    ws1 = await workspaces.create_workspace("alice", "One")
    ws2 = await workspaces.create_workspace("alice", "Two")
    project = await workflow.create_project("alice", ws1.id, "Roadmap")
    assert (ws1.id, ws2.id) == (1, 2)
    assert project.id == 1


@pytest.mark.asyncio
async def test_failed_mutation_leaves_no_trace(substrate, workspaces, db_session):
    with pytest.raises(RuntimeError):
        async with substrate.mutation("explode", "alice") as scope:
            db_session.add(Workspace(
                id=await substrate.next_id("workspace"),
                name="Doomed",
                owner_id="alice",
                is_active=True,
                storage_limit_bytes=1,
                storage_used_bytes=0,
                created_at=scope.now,
            ))
            scope.emit(EventKind.WORKSPACE_CREATED, "workspace", 1, 1)
            raise RuntimeError("boom")

    assert await workspaces.get_workspace(1) is None
    assert await _event_count(db_session) == 0
    # The sequence allocation was rolled back too
    ws = await workspaces.create_workspace("alice", "Survivor")
    assert ws.id == 1


@pytest.mark.asyncio
async def test_nested_mutation_is_rejected(substrate, workspaces, db_session):
    with pytest.raises(ReentrantMutation) as exc_info:
        async with substrate.mutation("outer", "alice"):
            assert active_mutation() == "outer"
            await workspaces.create_workspace("alice", "Nested")

    assert exc_info.value.code == "reentrant_mutation"
    assert exc_info.value.context["in_progress"] == "outer"
    assert active_mutation() is None
    assert await workspaces.get_workspace(1) is None
    assert await _event_count(db_session) == 0


@pytest.mark.asyncio
async def test_events_commit_with_the_mutation(workspaces, db_session, clock):
    ws = await workspaces.create_workspace("alice", "Events", metadata_ref="ipfs://meta")
    result = await db_session.execute(select(RegistryEvent).order_by(RegistryEvent.sequence))
    events = result.scalars().all()
    assert len(events) == 1
    event = events[0]
    assert event.kind == EventKind.WORKSPACE_CREATED
    assert event.entity_id == str(ws.id)
    assert event.actor_id == "alice"
    assert event.operation == "create_workspace"
    assert event.changes["metadata_ref"] == "ipfs://meta"
    assert event.created_at == clock.now()


@pytest.mark.asyncio
async def test_one_timestamp_per_mutation(workspaces, clock):
    ws = await workspaces.create_workspace("alice", "Stamped")
    members = await workspaces.list_members(ws.id)
    assert ws.created_at == clock.now()
    assert members[0].joined_at == ws.created_at
