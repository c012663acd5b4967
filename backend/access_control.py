# access_control.py — Workspace-scoped role assignments
# Roles are matched exactly: MEMBER never satisfies a check for ADMIN.
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AlreadyExists, NotFound, OwnerProtected, Unauthorized
from models import PermissionLevel, WorkspaceMember, WorkspaceRole

# Document level a workspace role implies when no explicit grant exists
ROLE_DOCUMENT_LEVELS = {
    WorkspaceRole.ADMIN: PermissionLevel.ADMIN,
    WorkspaceRole.EDITOR: PermissionLevel.EDITOR,
    WorkspaceRole.MEMBER: PermissionLevel.VIEWER,
    WorkspaceRole.VIEWER: PermissionLevel.VIEWER,
}


def require(allowed: bool, detail: str, **context) -> None:
    """Raise Unauthorized unless an authorization predicate held"""
    if not allowed:
        raise Unauthorized(detail, context or None)


class AccessControlTable:
    """Reads and writes workspace_members rows for one session"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _record(self, workspace_id: int, identity: str) -> Optional[WorkspaceMember]:
        stmt = select(WorkspaceMember).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.member_id == identity,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # --- Queries ---

    async def role_of(self, workspace_id: int, identity: str) -> Optional[WorkspaceRole]:
        record = await self._record(workspace_id, identity)
        if record is None or not record.is_active:
            return None
        return WorkspaceRole(record.role)

    async def has_role(self, workspace_id: int, identity: str, role: WorkspaceRole) -> bool:
        return await self.role_of(workspace_id, identity) == WorkspaceRole(role)

    async def has_any_role(self, workspace_id: int, identity: str, roles: Iterable[WorkspaceRole]) -> bool:
        role = await self.role_of(workspace_id, identity)
        return role is not None and role in {WorkspaceRole(r) for r in roles}

    async def active_members(self, workspace_id: int) -> List[WorkspaceMember]:
        stmt = (
            select(WorkspaceMember)
            .where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.is_active == True,  # noqa: E712
            )
            .order_by(WorkspaceMember.joined_at.asc(), WorkspaceMember.member_id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Mutations (callers hold an open mutation scope) ---

    async def grant(self, workspace_id: int, identity: str, role: WorkspaceRole, now) -> WorkspaceMember:
        record = await self._record(workspace_id, identity)
        if record is not None and record.is_active:
            raise AlreadyExists(
                f"{identity} is already a member of workspace {workspace_id}",
                {"reason": "already_member", "role": WorkspaceRole(record.role).value},
            )
        if record is None:
            record = WorkspaceMember(workspace_id=workspace_id, member_id=identity)
            self.session.add(record)
        record.role = WorkspaceRole(role)
        record.joined_at = now
        record.is_active = True
        record.removed_at = None
        return record

    async def revoke(self, workspace_id: int, identity: str, owner_id: str, now) -> WorkspaceMember:
        if identity == owner_id:
            raise OwnerProtected(f"The owner of workspace {workspace_id} cannot be removed")
        record = await self._record(workspace_id, identity)
        if record is None or not record.is_active:
            raise NotFound(f"{identity} is not a member of workspace {workspace_id}")
        record.is_active = False
        record.removed_at = now
        return record

    async def update_role(self, workspace_id: int, identity: str, role: WorkspaceRole) -> WorkspaceRole:
        """Change an active member's role. Returns the previous role."""
        record = await self._record(workspace_id, identity)
        if record is None or not record.is_active:
            raise NotFound(f"{identity} is not a member of workspace {workspace_id}")
        previous = WorkspaceRole(record.role)
        record.role = WorkspaceRole(role)
        return previous
