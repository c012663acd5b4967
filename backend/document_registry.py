# document_registry.py — Versioned documents with time-bound permissions
#
# Effective permission of a user on a document:
#   1. an explicit grant, demoted to NONE once expires_at has been reached
#   2. otherwise the level implied by the user's workspace role
# Expiry is evaluated lazily against the clock; nothing sweeps old grants.

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import ROLE_DOCUMENT_LEVELS, require
from errors import InvalidState, NotFound, OwnerProtected
from models import Document, DocumentPermission, DocumentVersion, EventKind, PermissionLevel, as_utc
from substrate import ExecutionSubstrate
from workspace_registry import WorkspaceQueries

logger = logging.getLogger("resource-registry.documents")


def grant_is_live(grant: DocumentPermission, now: datetime) -> bool:
    return grant.expires_at is None or now < grant.expires_at


class DocumentRegistry:

    def __init__(self, substrate: ExecutionSubstrate, workspaces: WorkspaceQueries):
        self.substrate = substrate
        self.session: AsyncSession = substrate.session
        self.workspaces = workspaces

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_document(self, document_id: int) -> Optional[Document]:
        result = await self.session.execute(select(Document).where(Document.id == document_id))
        return result.scalar_one_or_none()

    async def get_history(self, document_id: int) -> List[DocumentVersion]:
        stmt = (
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_documents(self, workspace_id: int, include_deleted: bool = False) -> List[Document]:
        stmt = select(Document).where(Document.workspace_id == workspace_id)
        if not include_deleted:
            stmt = stmt.where(Document.is_deleted == False)  # noqa: E712
        result = await self.session.execute(stmt.order_by(Document.id.asc()))
        return list(result.scalars().all())

    async def find_by_content_ref(self, content_ref: str) -> List[Tuple[Document, DocumentVersion]]:
        """Every version, current or historical, registered under ``content_ref``"""
        stmt = (
            select(Document, DocumentVersion)
            .join(DocumentVersion, DocumentVersion.document_id == Document.id)
            .where(DocumentVersion.content_ref == content_ref)
            .order_by(Document.id.asc(), DocumentVersion.version.asc())
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def get_grant(self, document_id: int, user_id: str) -> Optional[DocumentPermission]:
        stmt = select(DocumentPermission).where(
            DocumentPermission.document_id == document_id,
            DocumentPermission.user_id == user_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def effective_permission(self, document_id: int, user_id: str) -> PermissionLevel:
        document = await self.get_document(document_id)
        if document is None:
            return PermissionLevel.NONE
        return await self._effective(document, user_id, self.substrate.now())

    async def has_permission(self, document_id: int, user_id: str, required: PermissionLevel) -> bool:
        level = await self.effective_permission(document_id, user_id)
        return level.satisfies(required)

    # ============================================================
    # MUTATIONS
    # ============================================================

    async def create_document(self, caller_id: str, workspace_id: int, content_ref: str, title: str) -> Document:
        async with self.substrate.mutation("create_document", caller_id) as scope:
            if not await self.workspaces.exists(workspace_id):
                raise NotFound(f"Workspace {workspace_id} not found")
            if not await self.workspaces.is_active(workspace_id):
                raise InvalidState(f"Workspace {workspace_id} is inactive")
            require(
                await self.workspaces.is_member(workspace_id, caller_id),
                "Only workspace members may create documents",
                workspace_id=workspace_id,
            )

            document = Document(
                id=await self.substrate.next_id("document"),
                workspace_id=workspace_id,
                owner_id=caller_id,
                title=title,
                content_ref=content_ref,
                version=1,
                is_deleted=False,
                created_at=scope.now,
                updated_at=scope.now,
            )
            self.session.add(document)
            await self.session.flush()
            self.session.add(DocumentVersion(
                document_id=document.id,
                version=1,
                content_ref=content_ref,
                author_id=caller_id,
                created_at=scope.now,
            ))
            self.session.add(DocumentPermission(
                document_id=document.id,
                user_id=caller_id,
                level=PermissionLevel.ADMIN,
                granted_by=caller_id,
                granted_at=scope.now,
                expires_at=None,
            ))
            scope.emit(
                EventKind.DOCUMENT_CREATED, "document", document.id, workspace_id,
                title=title, content_ref=content_ref, version=1,
            )
        return document

    async def update_document(self, caller_id: str, document_id: int, content_ref: str) -> Document:
        async with self.substrate.mutation("update_document", caller_id) as scope:
            document = await self._load_live(document_id)
            level = await self._effective(document, caller_id, scope.now)
            require(
                level.satisfies(PermissionLevel.EDITOR),
                "Editor permission required to update this document",
                document_id=document_id, effective_level=level.value,
            )

            document.version += 1
            document.content_ref = content_ref
            document.updated_at = scope.now
            self.session.add(DocumentVersion(
                document_id=document.id,
                version=document.version,
                content_ref=content_ref,
                author_id=caller_id,
                created_at=scope.now,
            ))
            scope.emit(
                EventKind.DOCUMENT_UPDATED, "document", document.id, document.workspace_id,
                content_ref=content_ref, version=document.version,
            )
        return document

    async def delete_document(self, caller_id: str, document_id: int) -> Document:
        async with self.substrate.mutation("delete_document", caller_id) as scope:
            document = await self._load_live(document_id)
            if document.owner_id != caller_id:
                level = await self._effective(document, caller_id, scope.now)
                require(
                    level.satisfies(PermissionLevel.ADMIN),
                    "Only the owner or a document admin may delete this document",
                    document_id=document_id,
                )
            document.is_deleted = True
            document.deleted_at = scope.now
            scope.emit(EventKind.DOCUMENT_DELETED, "document", document.id, document.workspace_id)
        return document

    async def grant_permission(
        self,
        caller_id: str,
        document_id: int,
        user_id: str,
        level: PermissionLevel,
        expires_at: Optional[datetime] = None,
    ) -> DocumentPermission:
        level = PermissionLevel(level)
        async with self.substrate.mutation("grant_permission", caller_id) as scope:
            document = await self._load_live(document_id)
            await self._require_document_admin(document, caller_id, scope.now)
            if level == PermissionLevel.NONE:
                raise InvalidState("Use revoke to remove a permission", {"level": level.value})

            grant = await self.get_grant(document_id, user_id)
            if grant is None:
                grant = DocumentPermission(document_id=document_id, user_id=user_id)
                self.session.add(grant)
            grant.level = level
            grant.granted_by = caller_id
            grant.granted_at = scope.now
            grant.expires_at = as_utc(expires_at)
            if grant.expires_at is not None and not grant_is_live(grant, scope.now):
                logger.warning(
                    f"Grant of {level.value} on document {document_id} to {user_id} "
                    f"is already expired at {grant.expires_at.isoformat()}"
                )
            scope.emit(
                EventKind.PERMISSION_GRANTED, "document", document_id, document.workspace_id,
                user_id=user_id, level=level, expires_at=grant.expires_at,
            )
        return grant

    async def revoke_permission(self, caller_id: str, document_id: int, user_id: str) -> DocumentPermission:
        async with self.substrate.mutation("revoke_permission", caller_id) as scope:
            document = await self._load(document_id)
            await self._require_document_admin(document, caller_id, scope.now)
            if user_id == document.owner_id:
                raise OwnerProtected(f"The owner of document {document_id} cannot lose access")

            # An explicit NONE also overrides the workspace-derived level
            grant = await self.get_grant(document_id, user_id)
            if grant is None:
                grant = DocumentPermission(document_id=document_id, user_id=user_id)
                self.session.add(grant)
            grant.level = PermissionLevel.NONE
            grant.granted_by = caller_id
            grant.granted_at = scope.now
            grant.expires_at = None
            scope.emit(
                EventKind.PERMISSION_REVOKED, "document", document_id, document.workspace_id,
                user_id=user_id,
            )
        return grant

    # ============================================================
    # INTERNAL HELPERS
    # ============================================================

    async def _effective(self, document: Document, user_id: str, now: datetime) -> PermissionLevel:
        grant = await self.get_grant(document.id, user_id)
        if grant is not None:
            if not grant_is_live(grant, now):
                return PermissionLevel.NONE
            return PermissionLevel(grant.level)
        role = await self.workspaces.role_of(document.workspace_id, user_id)
        if role is None:
            return PermissionLevel.NONE
        return ROLE_DOCUMENT_LEVELS[role]

    async def _load(self, document_id: int) -> Document:
        document = await self.get_document(document_id)
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        return document

    async def _load_live(self, document_id: int) -> Document:
        document = await self._load(document_id)
        if document.is_deleted:
            raise InvalidState(f"Document {document_id} has been deleted")
        return document

    async def _require_document_admin(self, document: Document, caller_id: str, now: datetime) -> None:
        level = await self._effective(document, caller_id, now)
        require(
            level.satisfies(PermissionLevel.ADMIN),
            "Document admin permission required",
            document_id=document.id, effective_level=level.value,
        )
