# routers/events.py — Read access to the committed registry event log
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import require
from auth import CurrentUser, get_current_user
from database import get_db_session
from models import EventKind, RegistryEvent
from registries import get_workspace_registry
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/events", tags=["Events"])


class EventOut(BaseModel):
    sequence: int
    kind: EventKind
    entity_type: str
    entity_id: str
    workspace_id: Optional[int] = None
    actor_id: str
    operation: str
    changes: Dict[str, Any] = {}
    created_at: datetime


@router.get("", response_model=List[EventOut])
async def list_events(
    workspace_id: Optional[int] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    kind: Optional[EventKind] = Query(None),
    after: int = Query(0, ge=0, description="Only events with a greater sequence number"),
    limit: int = Query(100, ge=1, le=1000),
    user: CurrentUser = Depends(get_current_user),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
    db: AsyncSession = Depends(get_db_session),
):
    """Events in commit order. Members see their workspace; platform admins see everything."""
    if workspace_id is not None:
        require(
            user.is_platform_admin or await workspaces.is_member(workspace_id, user.id),
            "Workspace membership required",
            workspace_id=workspace_id,
        )
    else:
        require(user.is_platform_admin, "Platform administrator role required to read all events")

    stmt = select(RegistryEvent).where(RegistryEvent.sequence > after)
    if workspace_id is not None:
        stmt = stmt.where(RegistryEvent.workspace_id == workspace_id)
    if entity_type:
        stmt = stmt.where(RegistryEvent.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(RegistryEvent.entity_id == entity_id)
    if kind is not None:
        stmt = stmt.where(RegistryEvent.kind == kind)
    stmt = stmt.order_by(RegistryEvent.sequence.asc()).limit(limit)

    result = await db.execute(stmt)
    return [
        EventOut(
            sequence=e.sequence,
            kind=e.kind,
            entity_type=e.entity_type,
            entity_id=e.entity_id,
            workspace_id=e.workspace_id,
            actor_id=e.actor_id,
            operation=e.operation,
            changes=e.changes or {},
            created_at=e.created_at,
        )
        for e in result.scalars().all()
    ]
