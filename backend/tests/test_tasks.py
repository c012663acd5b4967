# tests/test_tasks.py — Projects, tasks and the DONE dependency gate
import logging

import pytest
import pytest_asyncio
from sqlalchemy import select

from errors import DependenciesUnmet, InvalidState, NotFound, Unauthorized
from models import EventKind, RegistryEvent, TaskPriority, TaskStatus, WorkspaceRole


@pytest_asyncio.fixture
async def project(workspaces, workflow):
    ws = await workspaces.create_workspace("alice", "Acme")
    await workspaces.add_member("alice", ws.id, "bob", WorkspaceRole.MEMBER)
    return await workflow.create_project("alice", ws.id, "Launch")


async def _task_events(db_session, task_id: int, kind: EventKind):
    stmt = select(RegistryEvent).where(
        RegistryEvent.entity_type == "task",
        RegistryEvent.entity_id == str(task_id),
        RegistryEvent.kind == kind,
    )
    return (await db_session.execute(stmt)).scalars().all()


@pytest.mark.asyncio
class TestProjects:
    async def test_non_member_cannot_create_project(self, workspaces, workflow):
        ws = await workspaces.create_workspace("alice", "Acme")
        ws_id = ws.id
        with pytest.raises(Unauthorized):
            await workflow.create_project("mallory", ws_id, "Hijack")
        assert await workflow.list_projects(ws_id) == []

    async def test_deactivate_project(self, workflow, project):
        project_id, ws_id = project.id, project.workspace_id
        with pytest.raises(Unauthorized):
            await workflow.deactivate_project("bob", project_id)
        await workflow.deactivate_project("alice", project_id)
        assert await workflow.list_projects(ws_id) == []
        assert len(await workflow.list_projects(ws_id, include_inactive=True)) == 1
        with pytest.raises(InvalidState):
            await workflow.create_task("alice", project_id, "Too late")

    async def test_create_task_in_missing_project(self, workflow):
        with pytest.raises(NotFound):
            await workflow.create_task("alice", 77, "Orphan")


@pytest.mark.asyncio
class TestTasks:
    async def test_create_task_defaults(self, workflow, project, clock):
        task = await workflow.create_task("bob", project.id, "Write copy", priority=TaskPriority.HIGH)
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.HIGH
        assert task.dependency_ids == []
        assert task.subtask_ids == []
        assert task.attachments == []
        assert task.completed_at is None
        assert task.created_at == clock.now()

    async def test_status_change_requires_assignee_or_admin(self, workflow, project):
        task = await workflow.create_task("alice", project.id, "Ship", assignee_id="carol")
        task_id = task.id
        with pytest.raises(Unauthorized):
            await workflow.update_task_status("bob", task_id, TaskStatus.IN_PROGRESS)
        updated = await workflow.update_task_status("alice", task_id, TaskStatus.IN_PROGRESS)
        assert updated.status == TaskStatus.IN_PROGRESS

    async def test_non_done_transitions_are_unconditional(self, workflow, project):
        t1 = await workflow.create_task("alice", project.id, "T1", assignee_id="bob")
        t2 = await workflow.create_task("alice", project.id, "T2")
        await workflow.add_dependency("bob", t1.id, t2.id)
        for status in (TaskStatus.REVIEW, TaskStatus.ARCHIVED, TaskStatus.TODO):
            t1 = await workflow.update_task_status("bob", t1.id, status)
            assert t1.status == status

    async def test_assign_and_attach(self, workflow, project):
        task = await workflow.create_task("alice", project.id, "Design")
        task = await workflow.assign_task("bob", task.id, "bob")
        assert task.assignee_id == "bob"
        task = await workflow.add_attachment("bob", task.id, "ipfs://mock")
        task = await workflow.add_attachment("bob", task.id, "ipfs://mock")
        assert task.attachments == ["ipfs://mock"]

    async def test_subtasks_stay_within_project(self, workspaces, workflow, project):
        parent = await workflow.create_task("alice", project.id, "Parent")
        child = await workflow.create_task("alice", project.id, "Child")
        other_project = await workflow.create_project("alice", project.workspace_id, "Other")
        stranger = await workflow.create_task("alice", other_project.id, "Stranger")
        parent_id, stranger_id = parent.id, stranger.id

        parent = await workflow.add_subtask("alice", parent_id, child.id)
        assert parent.subtask_ids == [child.id]
        with pytest.raises(InvalidState):
            await workflow.add_subtask("alice", parent_id, stranger_id)
        with pytest.raises(InvalidState):
            await workflow.add_dependency("alice", parent_id, stranger_id)

    async def test_dependency_on_missing_task(self, workflow, project):
        task = await workflow.create_task("alice", project.id, "Lonely")
        task_id = task.id
        with pytest.raises(NotFound):
            await workflow.add_dependency("alice", task_id, 999)
        assert (await workflow.get_task(task_id)).dependency_ids == []

    async def test_self_dependency_is_accepted_and_blocks_done(self, workflow, project, caplog):
        task = await workflow.create_task("alice", project.id, "Ouroboros")
        task_id = task.id
        with caplog.at_level(logging.WARNING, logger="resource-registry.workflow"):
            task = await workflow.add_dependency("alice", task_id, task_id)
        assert any("depends on itself" in r.getMessage() for r in caplog.records)
        assert task.dependency_ids == [task_id]
        with pytest.raises(DependenciesUnmet):
            await workflow.update_task_status("alice", task_id, TaskStatus.DONE)

    async def test_list_tasks_by_status(self, workflow, project):
        a = await workflow.create_task("alice", project.id, "A")
        await workflow.create_task("alice", project.id, "B")
        await workflow.update_task_status("alice", a.id, TaskStatus.REVIEW)
        in_review = await workflow.list_tasks(project.id, TaskStatus.REVIEW)
        assert [t.title for t in in_review] == ["A"]
        assert len(await workflow.list_tasks(project.id)) == 2


@pytest.mark.asyncio
class TestDependencyGate:
    async def test_done_waits_for_dependencies(self, workflow, project, db_session, clock):
        t1 = await workflow.create_task("alice", project.id, "T1", assignee_id="bob")
        t2 = await workflow.create_task("alice", project.id, "T2", assignee_id="bob")
        t1_id, t2_id = t1.id, t2.id
        await workflow.add_dependency("bob", t1_id, t2_id)

        with pytest.raises(DependenciesUnmet) as exc_info:
            await workflow.update_task_status("bob", t1_id, TaskStatus.DONE)
        assert exc_info.value.context["unmet_dependencies"] == [t2_id]
        t1 = await workflow.get_task(t1_id)
        assert t1.status == TaskStatus.TODO
        assert t1.completed_at is None

        await workflow.update_task_status("bob", t2_id, TaskStatus.DONE)
        completed_at = clock.now()
        t1 = await workflow.update_task_status("bob", t1_id, TaskStatus.DONE)
        assert t1.status == TaskStatus.DONE
        assert t1.completed_at == completed_at

        clock.advance(hours=3)
        t1 = await workflow.update_task_status("bob", t1_id, TaskStatus.DONE)
        assert t1.completed_at == completed_at

        assert len(await _task_events(db_session, t1_id, EventKind.TASK_STATUS_CHANGED)) == 2
        assert len(await _task_events(db_session, t1_id, EventKind.TASK_COMPLETED)) == 1

    async def test_unmet_dependencies_query(self, workflow, project):
        t1 = await workflow.create_task("alice", project.id, "T1")
        t2 = await workflow.create_task("alice", project.id, "T2")
        t3 = await workflow.create_task("alice", project.id, "T3")
        await workflow.add_dependency("alice", t1.id, t2.id)
        t1 = await workflow.add_dependency("alice", t1.id, t3.id)
        await workflow.update_task_status("alice", t3.id, TaskStatus.DONE)
        assert await workflow.unmet_dependencies(t1) == [t2.id]
