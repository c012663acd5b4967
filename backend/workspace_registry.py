# workspace_registry.py — Workspace identity, membership and storage bookkeeping
import os
import logging
from typing import Iterable, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import AccessControlTable, require
from errors import InvalidState, NotFound
from models import EventKind, Workspace, WorkspaceMember, WorkspaceRole
from substrate import ExecutionSubstrate

logger = logging.getLogger("resource-registry.workspaces")

DEFAULT_STORAGE_LIMIT_BYTES = int(os.getenv("DEFAULT_STORAGE_LIMIT_BYTES", str(10 * 1024 ** 3)))

STORAGE_REPORTER_ROLES = (WorkspaceRole.ADMIN, WorkspaceRole.EDITOR)


class WorkspaceQueries(Protocol):
    """Read-only view of the workspace registry used by the other registries"""

    async def exists(self, workspace_id: int) -> bool: ...
    async def is_active(self, workspace_id: int) -> bool: ...
    async def is_member(self, workspace_id: int, identity: str) -> bool: ...
    async def role_of(self, workspace_id: int, identity: str) -> Optional[WorkspaceRole]: ...
    async def has_role(self, workspace_id: int, identity: str, role: WorkspaceRole) -> bool: ...
    async def has_any_role(self, workspace_id: int, identity: str, roles: Iterable[WorkspaceRole]) -> bool: ...


class WorkspaceRegistry:
    """Owns workspaces and their access control table"""

    def __init__(self, substrate: ExecutionSubstrate):
        self.substrate = substrate
        self.session: AsyncSession = substrate.session
        self.acl = AccessControlTable(self.session)

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_workspace(self, workspace_id: int) -> Optional[Workspace]:
        result = await self.session.execute(select(Workspace).where(Workspace.id == workspace_id))
        return result.scalar_one_or_none()

    async def exists(self, workspace_id: int) -> bool:
        return await self.get_workspace(workspace_id) is not None

    async def is_active(self, workspace_id: int) -> bool:
        workspace = await self.get_workspace(workspace_id)
        return workspace is not None and workspace.is_active

    async def is_member(self, workspace_id: int, identity: str) -> bool:
        return await self.acl.role_of(workspace_id, identity) is not None

    async def role_of(self, workspace_id: int, identity: str) -> Optional[WorkspaceRole]:
        return await self.acl.role_of(workspace_id, identity)

    async def has_role(self, workspace_id: int, identity: str, role: WorkspaceRole) -> bool:
        return await self.acl.has_role(workspace_id, identity, role)

    async def has_any_role(self, workspace_id: int, identity: str, roles: Iterable[WorkspaceRole]) -> bool:
        return await self.acl.has_any_role(workspace_id, identity, roles)

    async def list_members(self, workspace_id: int) -> List[WorkspaceMember]:
        return await self.acl.active_members(workspace_id)

    async def list_workspaces_for(self, identity: str) -> List[Workspace]:
        """Workspaces where ``identity`` holds an active role"""
        stmt = (
            select(Workspace)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .where(
                WorkspaceMember.member_id == identity,
                WorkspaceMember.is_active == True,  # noqa: E712
            )
            .order_by(Workspace.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ============================================================
    # MUTATIONS
    # ============================================================

    async def create_workspace(self, caller_id: str, name: str, metadata_ref: Optional[str] = None) -> Workspace:
        async with self.substrate.mutation("create_workspace", caller_id) as scope:
            workspace = Workspace(
                id=await self.substrate.next_id("workspace"),
                name=name,
                owner_id=caller_id,
                metadata_ref=metadata_ref,
                is_active=True,
                storage_limit_bytes=DEFAULT_STORAGE_LIMIT_BYTES,
                storage_used_bytes=0,
                created_at=scope.now,
            )
            self.session.add(workspace)
            await self.session.flush()
            await self.acl.grant(workspace.id, caller_id, WorkspaceRole.ADMIN, scope.now)
            scope.emit(
                EventKind.WORKSPACE_CREATED, "workspace", workspace.id, workspace.id,
                name=name, owner_id=caller_id, metadata_ref=metadata_ref,
            )
        return workspace

    async def add_member(self, caller_id: str, workspace_id: int, identity: str, role: WorkspaceRole) -> WorkspaceMember:
        async with self.substrate.mutation("add_member", caller_id) as scope:
            await self._require_active(workspace_id)
            await self._require_admin(workspace_id, caller_id)
            member = await self.acl.grant(workspace_id, identity, role, scope.now)
            scope.emit(
                EventKind.MEMBER_ADDED, "workspace", workspace_id, workspace_id,
                member_id=identity, role=WorkspaceRole(role),
            )
        return member

    async def remove_member(self, caller_id: str, workspace_id: int, identity: str) -> None:
        async with self.substrate.mutation("remove_member", caller_id) as scope:
            workspace = await self._load(workspace_id)
            await self._require_admin(workspace_id, caller_id)
            await self.acl.revoke(workspace_id, identity, workspace.owner_id, scope.now)
            scope.emit(
                EventKind.MEMBER_REMOVED, "workspace", workspace_id, workspace_id,
                member_id=identity,
            )

    async def update_member_role(self, caller_id: str, workspace_id: int, identity: str, role: WorkspaceRole) -> WorkspaceRole:
        async with self.substrate.mutation("update_member_role", caller_id) as scope:
            workspace = await self._load(workspace_id)
            await self._require_admin(workspace_id, caller_id)
            previous = await self.acl.update_role(workspace_id, identity, role)
            if identity == workspace.owner_id and WorkspaceRole(role) != WorkspaceRole.ADMIN:
                logger.warning(
                    f"Owner {identity} of workspace {workspace_id} changed from "
                    f"{previous.value} to {WorkspaceRole(role).value} by {caller_id}"
                )
            scope.emit(
                EventKind.MEMBER_ROLE_CHANGED, "workspace", workspace_id, workspace_id,
                member_id=identity, role=WorkspaceRole(role), previous_role=previous,
            )
        return previous

    async def update_storage_used(self, caller_id: str, workspace_id: int, used_bytes: int) -> Workspace:
        async with self.substrate.mutation("update_storage_used", caller_id) as scope:
            workspace = await self._load(workspace_id)
            require(
                await self.acl.has_any_role(workspace_id, caller_id, STORAGE_REPORTER_ROLES),
                "Only workspace admins and editors may report storage usage",
                workspace_id=workspace_id,
            )
            workspace.storage_used_bytes = used_bytes
            scope.emit(
                EventKind.STORAGE_UPDATED, "workspace", workspace_id, workspace_id,
                storage_used_bytes=used_bytes, storage_limit_bytes=workspace.storage_limit_bytes,
            )
        return workspace

    async def deactivate_workspace(self, caller_id: str, workspace_id: int) -> Workspace:
        async with self.substrate.mutation("deactivate_workspace", caller_id) as scope:
            workspace = await self._load(workspace_id)
            require(
                workspace.owner_id == caller_id,
                "Only the workspace owner may deactivate it",
                workspace_id=workspace_id,
            )
            if not workspace.is_active:
                raise InvalidState(f"Workspace {workspace_id} is already inactive")
            workspace.is_active = False
            workspace.deactivated_at = scope.now
            scope.emit(EventKind.WORKSPACE_DEACTIVATED, "workspace", workspace_id, workspace_id)
        return workspace

    # ============================================================
    # INTERNAL HELPERS
    # ============================================================

    async def _load(self, workspace_id: int) -> Workspace:
        workspace = await self.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound(f"Workspace {workspace_id} not found")
        return workspace

    async def _require_active(self, workspace_id: int) -> Workspace:
        workspace = await self._load(workspace_id)
        if not workspace.is_active:
            raise InvalidState(f"Workspace {workspace_id} is inactive")
        return workspace

    async def _require_admin(self, workspace_id: int, caller_id: str) -> None:
        require(
            await self.acl.has_role(workspace_id, caller_id, WorkspaceRole.ADMIN),
            "Workspace admin role required",
            workspace_id=workspace_id,
        )
