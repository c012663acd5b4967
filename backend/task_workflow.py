# task_workflow.py — Projects, tasks and the DONE dependency gate
#
# Status moves freely between TODO, IN_PROGRESS, REVIEW and ARCHIVED. The only
# enforced rule is the gate on DONE: every dependency must already be DONE.
# Dependencies are appended without cycle or self-reference checks.

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import require
from errors import DependenciesUnmet, InvalidState, NotFound
from models import EventKind, Project, Task, TaskPriority, TaskStatus, WorkspaceRole, as_utc
from substrate import ExecutionSubstrate
from workspace_registry import WorkspaceQueries

logger = logging.getLogger("resource-registry.workflow")


def _append_unique(values: Optional[list], item) -> list:
    values = list(values or [])
    if item not in values:
        values.append(item)
    return values


class TaskWorkflowEngine:

    def __init__(self, substrate: ExecutionSubstrate, workspaces: WorkspaceQueries):
        self.substrate = substrate
        self.session: AsyncSession = substrate.session
        self.workspaces = workspaces

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_project(self, project_id: int) -> Optional[Project]:
        result = await self.session.execute(select(Project).where(Project.id == project_id))
        return result.scalar_one_or_none()

    async def list_projects(self, workspace_id: int, include_inactive: bool = False) -> List[Project]:
        stmt = select(Project).where(Project.workspace_id == workspace_id)
        if not include_inactive:
            stmt = stmt.where(Project.is_active == True)  # noqa: E712
        result = await self.session.execute(stmt.order_by(Project.id.asc()))
        return list(result.scalars().all())

    async def get_task(self, task_id: int) -> Optional[Task]:
        result = await self.session.execute(select(Task).where(Task.id == task_id))
        return result.scalar_one_or_none()

    async def list_tasks(self, project_id: int, status: Optional[TaskStatus] = None) -> List[Task]:
        stmt = select(Task).where(Task.project_id == project_id)
        if status is not None:
            stmt = stmt.where(Task.status == TaskStatus(status))
        result = await self.session.execute(stmt.order_by(Task.id.asc()))
        return list(result.scalars().all())

    async def unmet_dependencies(self, task: Task) -> List[int]:
        """Dependency ids not currently DONE; unknown ids count as unmet"""
        dependency_ids = list(task.dependency_ids or [])
        if not dependency_ids:
            return []
        stmt = select(Task.id, Task.status).where(Task.id.in_(dependency_ids))
        result = await self.session.execute(stmt)
        statuses = {row.id: TaskStatus(row.status) for row in result}
        return [dep for dep in dependency_ids if statuses.get(dep) != TaskStatus.DONE]

    # ============================================================
    # PROJECTS
    # ============================================================

    async def create_project(self, caller_id: str, workspace_id: int, name: str) -> Project:
        async with self.substrate.mutation("create_project", caller_id) as scope:
            if not await self.workspaces.exists(workspace_id):
                raise NotFound(f"Workspace {workspace_id} not found")
            if not await self.workspaces.is_active(workspace_id):
                raise InvalidState(f"Workspace {workspace_id} is inactive")
            await self._require_member(workspace_id, caller_id)

            project = Project(
                id=await self.substrate.next_id("project"),
                workspace_id=workspace_id,
                name=name,
                owner_id=caller_id,
                is_active=True,
                created_at=scope.now,
            )
            self.session.add(project)
            scope.emit(EventKind.PROJECT_CREATED, "project", project.id, workspace_id, name=name)
        return project

    async def deactivate_project(self, caller_id: str, project_id: int) -> Project:
        async with self.substrate.mutation("deactivate_project", caller_id) as scope:
            project = await self._load_project(project_id)
            if project.owner_id != caller_id:
                require(
                    await self.workspaces.has_role(project.workspace_id, caller_id, WorkspaceRole.ADMIN),
                    "Only the project owner or a workspace admin may deactivate a project",
                    project_id=project_id,
                )
            if not project.is_active:
                raise InvalidState(f"Project {project_id} is already inactive")
            project.is_active = False
            scope.emit(EventKind.PROJECT_DEACTIVATED, "project", project.id, project.workspace_id)
        return project

    # ============================================================
    # TASKS
    # ============================================================

    async def create_task(
        self,
        caller_id: str,
        project_id: int,
        title: str,
        content_ref: Optional[str] = None,
        assignee_id: Optional[str] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> Task:
        async with self.substrate.mutation("create_task", caller_id) as scope:
            project = await self._load_project(project_id)
            if not project.is_active:
                raise InvalidState(f"Project {project_id} is inactive")
            await self._require_member(project.workspace_id, caller_id)

            task = Task(
                id=await self.substrate.next_id("task"),
                project_id=project_id,
                title=title,
                content_ref=content_ref,
                assignee_id=assignee_id,
                status=TaskStatus.TODO,
                priority=TaskPriority(priority),
                due_date=as_utc(due_date),
                dependency_ids=[],
                subtask_ids=[],
                attachments=[],
                creator_id=caller_id,
                created_at=scope.now,
                updated_at=scope.now,
                completed_at=None,
            )
            self.session.add(task)
            scope.emit(
                EventKind.TASK_CREATED, "task", task.id, project.workspace_id,
                project_id=project_id, title=title, assignee_id=assignee_id,
                priority=task.priority,
            )
        return task

    async def update_task_status(self, caller_id: str, task_id: int, status: TaskStatus) -> Task:
        status = TaskStatus(status)
        async with self.substrate.mutation("update_task_status", caller_id) as scope:
            task, project = await self._load_task(task_id)
            if task.assignee_id != caller_id:
                require(
                    await self.workspaces.has_role(project.workspace_id, caller_id, WorkspaceRole.ADMIN),
                    "Only the assignee or a workspace admin may change task status",
                    task_id=task_id,
                )

            if status == TaskStatus.DONE:
                unmet = await self.unmet_dependencies(task)
                if unmet:
                    raise DependenciesUnmet(
                        f"Task {task_id} has {len(unmet)} unfinished dependencies",
                        {"task_id": task_id, "unmet_dependencies": unmet},
                    )

            previous = TaskStatus(task.status)
            task.status = status
            task.updated_at = scope.now
            scope.emit(
                EventKind.TASK_STATUS_CHANGED, "task", task.id, project.workspace_id,
                status=status, previous_status=previous,
            )
            if status == TaskStatus.DONE and task.completed_at is None:
                task.completed_at = scope.now
                scope.emit(
                    EventKind.TASK_COMPLETED, "task", task.id, project.workspace_id,
                    completed_at=scope.now,
                )
        return task

    async def assign_task(self, caller_id: str, task_id: int, assignee_id: Optional[str]) -> Task:
        async with self.substrate.mutation("assign_task", caller_id) as scope:
            task, project = await self._load_task(task_id)
            await self._require_member(project.workspace_id, caller_id)
            previous = task.assignee_id
            task.assignee_id = assignee_id
            task.updated_at = scope.now
            scope.emit(
                EventKind.TASK_ASSIGNED, "task", task.id, project.workspace_id,
                assignee_id=assignee_id, previous_assignee_id=previous,
            )
        return task

    async def add_dependency(self, caller_id: str, task_id: int, dependency_id: int) -> Task:
        async with self.substrate.mutation("add_dependency", caller_id) as scope:
            task, project = await self._load_task(task_id)
            await self._require_member(project.workspace_id, caller_id)
            await self._require_same_project(task, dependency_id)
            if dependency_id == task.id:
                logger.warning(f"Task {task.id} now depends on itself and can never reach DONE")
            task.dependency_ids = _append_unique(task.dependency_ids, dependency_id)
            task.updated_at = scope.now
            scope.emit(
                EventKind.TASK_DEPENDENCY_ADDED, "task", task.id, project.workspace_id,
                dependency_id=dependency_id,
            )
        return task

    async def add_subtask(self, caller_id: str, task_id: int, subtask_id: int) -> Task:
        async with self.substrate.mutation("add_subtask", caller_id) as scope:
            task, project = await self._load_task(task_id)
            await self._require_member(project.workspace_id, caller_id)
            await self._require_same_project(task, subtask_id)
            task.subtask_ids = _append_unique(task.subtask_ids, subtask_id)
            task.updated_at = scope.now
            scope.emit(
                EventKind.TASK_SUBTASK_ADDED, "task", task.id, project.workspace_id,
                subtask_id=subtask_id,
            )
        return task

    async def add_attachment(self, caller_id: str, task_id: int, reference: str) -> Task:
        async with self.substrate.mutation("add_attachment", caller_id) as scope:
            task, project = await self._load_task(task_id)
            await self._require_member(project.workspace_id, caller_id)
            task.attachments = _append_unique(task.attachments, reference)
            task.updated_at = scope.now
            scope.emit(
                EventKind.TASK_ATTACHMENT_ADDED, "task", task.id, project.workspace_id,
                reference=reference,
            )
        return task

    # ============================================================
    # INTERNAL HELPERS
    # ============================================================

    async def _load_project(self, project_id: int) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise NotFound(f"Project {project_id} not found")
        return project

    async def _load_task(self, task_id: int):
        task = await self.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task, await self._load_project(task.project_id)

    async def _require_member(self, workspace_id: int, caller_id: str) -> None:
        require(
            await self.workspaces.is_member(workspace_id, caller_id),
            "Workspace membership required",
            workspace_id=workspace_id,
        )

    async def _require_same_project(self, task: Task, other_id: int) -> None:
        other = await self.get_task(other_id)
        if other is None:
            raise NotFound(f"Task {other_id} not found")
        if other.project_id != task.project_id:
            raise InvalidState(
                f"Tasks {task.id} and {other_id} belong to different projects",
                {"project_id": task.project_id, "other_project_id": other.project_id},
            )
