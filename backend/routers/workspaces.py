# routers/workspaces.py — Workspaces, membership and storage usage
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from access_control import require
from errors import NotFound
from auth import CurrentUser, get_current_user
from models import Workspace, WorkspaceMember, WorkspaceRole
from registries import get_workspace_registry
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/workspaces", tags=["Workspaces"])


# ============================================================
# SCHEMAS
# ============================================================

class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    metadata_ref: Optional[str] = None


class MemberAdd(BaseModel):
    identity: str = Field(..., min_length=1)
    role: WorkspaceRole


class MemberRoleUpdate(BaseModel):
    role: WorkspaceRole


class StorageUpdate(BaseModel):
    used_bytes: int = Field(..., ge=0)


class WorkspaceOut(BaseModel):
    id: int
    name: str
    owner_id: str
    metadata_ref: Optional[str] = None
    is_active: bool
    storage_limit_bytes: int
    storage_used_bytes: int
    created_at: datetime
    deactivated_at: Optional[datetime] = None


class MemberOut(BaseModel):
    workspace_id: int
    member_id: str
    role: WorkspaceRole
    joined_at: datetime


def _workspace_to_out(ws: Workspace) -> WorkspaceOut:
    return WorkspaceOut(
        id=ws.id,
        name=ws.name,
        owner_id=ws.owner_id,
        metadata_ref=ws.metadata_ref,
        is_active=ws.is_active,
        storage_limit_bytes=ws.storage_limit_bytes,
        storage_used_bytes=ws.storage_used_bytes,
        created_at=ws.created_at,
        deactivated_at=ws.deactivated_at,
    )


def _member_to_out(m: WorkspaceMember) -> MemberOut:
    return MemberOut(workspace_id=m.workspace_id, member_id=m.member_id, role=m.role, joined_at=m.joined_at)


async def _get_workspace(registry: WorkspaceRegistry, workspace_id: int) -> Workspace:
    ws = await registry.get_workspace(workspace_id)
    if ws is None:
        raise NotFound(f"Workspace {workspace_id} not found")
    return ws


async def _require_member(registry: WorkspaceRegistry, workspace_id: int, user: CurrentUser) -> None:
    require(
        await registry.is_member(workspace_id, user.id),
        "Workspace membership required",
        workspace_id=workspace_id,
    )


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", response_model=WorkspaceOut, status_code=201)
async def create_workspace(
    data: WorkspaceCreate,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    ws = await registry.create_workspace(user.id, data.name, data.metadata_ref)
    return _workspace_to_out(ws)


@router.get("", response_model=List[WorkspaceOut])
async def list_my_workspaces(
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    """Workspaces where the caller holds an active role"""
    return [_workspace_to_out(ws) for ws in await registry.list_workspaces_for(user.id)]


@router.get("/{workspace_id}", response_model=WorkspaceOut)
async def get_workspace(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    ws = await _get_workspace(registry, workspace_id)
    await _require_member(registry, workspace_id, user)
    return _workspace_to_out(ws)


@router.post("/{workspace_id}/deactivate", response_model=WorkspaceOut)
async def deactivate_workspace(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    ws = await registry.deactivate_workspace(user.id, workspace_id)
    return _workspace_to_out(ws)


@router.get("/{workspace_id}/members", response_model=List[MemberOut])
async def list_members(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    await _get_workspace(registry, workspace_id)
    await _require_member(registry, workspace_id, user)
    return [_member_to_out(m) for m in await registry.list_members(workspace_id)]


@router.post("/{workspace_id}/members", response_model=MemberOut, status_code=201)
async def add_member(
    workspace_id: int,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    member = await registry.add_member(user.id, workspace_id, data.identity, data.role)
    return _member_to_out(member)


@router.patch("/{workspace_id}/members/{identity}")
async def update_member_role(
    workspace_id: int,
    identity: str,
    data: MemberRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    previous = await registry.update_member_role(user.id, workspace_id, identity, data.role)
    return {
        "workspace_id": workspace_id,
        "member_id": identity,
        "role": data.role.value,
        "previous_role": previous.value,
    }


@router.delete("/{workspace_id}/members/{identity}")
async def remove_member(
    workspace_id: int,
    identity: str,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    await registry.remove_member(user.id, workspace_id, identity)
    return {"status": "removed", "workspace_id": workspace_id, "member_id": identity}


@router.put("/{workspace_id}/storage", response_model=WorkspaceOut)
async def update_storage_used(
    workspace_id: int,
    data: StorageUpdate,
    user: CurrentUser = Depends(get_current_user),
    registry: WorkspaceRegistry = Depends(get_workspace_registry),
):
    ws = await registry.update_storage_used(user.id, workspace_id, data.used_bytes)
    return _workspace_to_out(ws)
