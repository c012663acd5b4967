# routers/projects.py — Projects within a workspace
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_control import require
from auth import CurrentUser, get_current_user
from errors import NotFound
from models import Project
from registries import get_task_engine, get_workspace_registry
from task_workflow import TaskWorkflowEngine
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


class ProjectCreate(BaseModel):
    workspace_id: int
    name: str = Field(..., min_length=1, max_length=200)


class ProjectOut(BaseModel):
    id: int
    workspace_id: int
    name: str
    owner_id: str
    is_active: bool
    created_at: datetime


def _project_to_out(p: Project) -> ProjectOut:
    return ProjectOut(
        id=p.id,
        workspace_id=p.workspace_id,
        name=p.name,
        owner_id=p.owner_id,
        is_active=p.is_active,
        created_at=p.created_at,
    )


async def _require_member(workspaces: WorkspaceRegistry, workspace_id: int, user: CurrentUser) -> None:
    require(
        await workspaces.is_member(workspace_id, user.id),
        "Workspace membership required",
        workspace_id=workspace_id,
    )


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    project = await engine.create_project(user.id, data.workspace_id, data.name)
    return _project_to_out(project)


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    workspace_id: int = Query(...),
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    await _require_member(workspaces, workspace_id, user)
    return [_project_to_out(p) for p in await engine.list_projects(workspace_id, include_inactive)]


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    project = await engine.get_project(project_id)
    if project is None:
        raise NotFound(f"Project {project_id} not found")
    await _require_member(workspaces, project.workspace_id, user)
    return _project_to_out(project)


@router.post("/{project_id}/deactivate", response_model=ProjectOut)
async def deactivate_project(
    project_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: TaskWorkflowEngine = Depends(get_task_engine),
):
    project = await engine.deactivate_project(user.id, project_id)
    return _project_to_out(project)
