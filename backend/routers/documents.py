# routers/documents.py — Versioned documents and per-user permissions
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_control import require
from auth import CurrentUser, get_current_user
from document_registry import DocumentRegistry
from errors import NotFound
from models import Document, DocumentPermission, PermissionLevel
from registries import get_document_registry, get_workspace_registry
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/documents", tags=["Documents"])


# ── Schemas ──────────────────────────────────────────────────

class DocumentCreate(BaseModel):
    workspace_id: int
    title: str = Field(..., min_length=1, max_length=500)
    content_ref: str = Field(..., min_length=1)


class DocumentUpdate(BaseModel):
    content_ref: str = Field(..., min_length=1)


class PermissionGrant(BaseModel):
    user_id: str = Field(..., min_length=1)
    level: PermissionLevel
    expires_at: Optional[datetime] = None


class DocumentOut(BaseModel):
    id: int
    workspace_id: int
    owner_id: str
    title: str
    content_ref: str
    version: int
    is_deleted: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class VersionOut(BaseModel):
    version: int
    content_ref: str
    author_id: str
    created_at: datetime


class VerificationMatch(BaseModel):
    document_id: int
    workspace_id: int
    title: str
    version: int
    is_current: bool
    is_deleted: bool
    author_id: str
    registered_at: datetime


class VerificationOut(BaseModel):
    content_ref: str
    registered: bool
    matches: List[VerificationMatch]


class PermissionOut(BaseModel):
    document_id: int
    user_id: str
    level: PermissionLevel
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None


def _document_to_out(doc: Document) -> DocumentOut:
    return DocumentOut(
        id=doc.id,
        workspace_id=doc.workspace_id,
        owner_id=doc.owner_id,
        title=doc.title,
        content_ref=doc.content_ref,
        version=doc.version,
        is_deleted=doc.is_deleted,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        deleted_at=doc.deleted_at,
    )


def _grant_to_out(grant: DocumentPermission) -> PermissionOut:
    return PermissionOut(
        document_id=grant.document_id,
        user_id=grant.user_id,
        level=grant.level,
        granted_by=grant.granted_by,
        granted_at=grant.granted_at,
        expires_at=grant.expires_at,
    )


async def _get_readable(registry: DocumentRegistry, document_id: int, user: CurrentUser) -> Document:
    doc = await registry.get_document(document_id)
    if doc is None:
        raise NotFound(f"Document {document_id} not found")
    require(
        await registry.has_permission(document_id, user.id, PermissionLevel.VIEWER),
        "Viewer permission required",
        document_id=document_id,
    )
    return doc


# ── Endpoints ────────────────────────────────────────────────

@router.post("", response_model=DocumentOut, status_code=201)
async def create_document(
    data: DocumentCreate,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    doc = await registry.create_document(user.id, data.workspace_id, data.content_ref, data.title)
    return _document_to_out(doc)


@router.get("", response_model=List[DocumentOut])
async def list_documents(
    workspace_id: int = Query(...),
    include_deleted: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    """Documents of a workspace; members only"""
    require(
        await workspaces.is_member(workspace_id, user.id),
        "Workspace membership required",
        workspace_id=workspace_id,
    )
    return [_document_to_out(d) for d in await registry.list_documents(workspace_id, include_deleted)]


@router.get("/verify", response_model=VerificationOut)
async def verify_document(
    content_ref: str = Query(..., min_length=1),
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    """Look a content reference up across every registered version the caller can see"""
    matches = []
    for doc, version in await registry.find_by_content_ref(content_ref):
        if not await registry.has_permission(doc.id, user.id, PermissionLevel.VIEWER):
            continue
        matches.append(VerificationMatch(
            document_id=doc.id,
            workspace_id=doc.workspace_id,
            title=doc.title,
            version=version.version,
            is_current=version.version == doc.version,
            is_deleted=doc.is_deleted,
            author_id=version.author_id,
            registered_at=version.created_at,
        ))
    return VerificationOut(content_ref=content_ref, registered=bool(matches), matches=matches)


@router.get("/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    return _document_to_out(await _get_readable(registry, document_id, user))


@router.put("/{document_id}", response_model=DocumentOut)
async def update_document(
    document_id: int,
    data: DocumentUpdate,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    doc = await registry.update_document(user.id, document_id, data.content_ref)
    return _document_to_out(doc)


@router.delete("/{document_id}", response_model=DocumentOut)
async def delete_document(
    document_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    doc = await registry.delete_document(user.id, document_id)
    return _document_to_out(doc)


@router.get("/{document_id}/history", response_model=List[VersionOut])
async def get_history(
    document_id: int,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    await _get_readable(registry, document_id, user)
    return [
        VersionOut(version=v.version, content_ref=v.content_ref, author_id=v.author_id, created_at=v.created_at)
        for v in await registry.get_history(document_id)
    ]


@router.get("/{document_id}/permissions/{user_id}")
async def get_effective_permission(
    document_id: int,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    """Effective level of ``user_id``; callers may always query themselves"""
    if user_id != user.id:
        await _get_readable(registry, document_id, user)
    level = await registry.effective_permission(document_id, user_id)
    return {"document_id": document_id, "user_id": user_id, "level": level.value}


@router.put("/{document_id}/permissions", response_model=PermissionOut)
async def grant_permission(
    document_id: int,
    data: PermissionGrant,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    grant = await registry.grant_permission(user.id, document_id, data.user_id, data.level, data.expires_at)
    return _grant_to_out(grant)


@router.delete("/{document_id}/permissions/{user_id}", response_model=PermissionOut)
async def revoke_permission(
    document_id: int,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    registry: DocumentRegistry = Depends(get_document_registry),
):
    grant = await registry.revoke_permission(user.id, document_id, user_id)
    return _grant_to_out(grant)
