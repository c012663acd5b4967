# routers/tasks.py — Tasks, status transitions and the dependency gate
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_control import require
from auth import CurrentUser, get_current_user
from errors import NotFound
from models import Task, TaskPriority, TaskStatus
from registries import get_task_engine, get_workspace_registry
from task_workflow import TaskWorkflowEngine
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    project_id: int
    title: str = Field(..., min_length=1, max_length=500)
    content_ref: Optional[str] = None
    assignee_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None


class StatusUpdate(BaseModel):
    status: TaskStatus


class AssigneeUpdate(BaseModel):
    assignee_id: Optional[str] = None


class DependencyAdd(BaseModel):
    dependency_id: int


class SubtaskAdd(BaseModel):
    subtask_id: int


class AttachmentAdd(BaseModel):
    reference: str = Field(..., min_length=1)


class TaskOut(BaseModel):
    id: int
    project_id: int
    title: str
    content_ref: Optional[str] = None
    assignee_id: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    dependency_ids: List[int] = []
    subtask_ids: List[int] = []
    attachments: List[str] = []
    creator_id: str
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


def _task_to_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        project_id=task.project_id,
        title=task.title,
        content_ref=task.content_ref,
        assignee_id=task.assignee_id,
        status=task.status,
        priority=task.priority,
        due_date=task.due_date,
        dependency_ids=task.dependency_ids or [],
        subtask_ids=task.subtask_ids or [],
        attachments=task.attachments or [],
        creator_id=task.creator_id,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )


async def _get_visible_task(
    engine: TaskWorkflowEngine, workspaces: WorkspaceRegistry, task_id: int, user: CurrentUser
) -> Task:
    task = await engine.get_task(task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found")
    project = await engine.get_project(task.project_id)
    require(
        project is not None and await workspaces.is_member(project.workspace_id, user.id),
        "Workspace membership required",
        task_id=task_id,
    )
    return task


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.create_task(
        user.id, data.project_id, data.title,
        content_ref=data.content_ref,
        assignee_id=data.assignee_id,
        priority=data.priority,
        due_date=data.due_date,
    )
    return _task_to_out(task)


@router.get("", response_model=List[TaskOut])
async def list_tasks(
    project_id: int = Query(...),
    status: Optional[TaskStatus] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    project = await engine.get_project(project_id)
    if project is None:
        raise NotFound(f"Project {project_id} not found")
    require(
        await workspaces.is_member(project.workspace_id, user.id),
        "Workspace membership required",
        project_id=project_id,
    )
    return [_task_to_out(t) for t in await engine.list_tasks(project_id, status)]


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    return _task_to_out(await _get_visible_task(engine, workspaces, task_id, user))


@router.get("/{task_id}/unmet-dependencies")
async def get_unmet_dependencies(
    task_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    task = await _get_visible_task(engine, workspaces, task_id, user)
    return {"task_id": task_id, "unmet_dependencies": await engine.unmet_dependencies(task)}


@router.post("/{task_id}/status", response_model=TaskOut)
async def update_task_status(
    task_id: int,
    data: StatusUpdate,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.update_task_status(user.id, task_id, data.status)
    return _task_to_out(task)


@router.post("/{task_id}/assign", response_model=TaskOut)
async def assign_task(
    task_id: int,
    data: AssigneeUpdate,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.assign_task(user.id, task_id, data.assignee_id)
    return _task_to_out(task)


@router.post("/{task_id}/dependencies", response_model=TaskOut)
async def add_dependency(
    task_id: int,
    data: DependencyAdd,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.add_dependency(user.id, task_id, data.dependency_id)
    return _task_to_out(task)


@router.post("/{task_id}/subtasks", response_model=TaskOut)
async def add_subtask(
    task_id: int,
    data: SubtaskAdd,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.add_subtask(user.id, task_id, data.subtask_id)
    return _task_to_out(task)


@router.post("/{task_id}/attachments", response_model=TaskOut)
async def add_attachment(
    task_id: int,
    data: AttachmentAdd,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    task = await engine.add_attachment(user.id, task_id, data.reference)
    return _task_to_out(task)
