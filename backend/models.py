# models.py — Database models for the workspace resource registry
# - Integer ids allocated from per-kind sequences (id_sequences)
# - Logical deletes only: workspaces, members, documents, projects and plans
#   are deactivated, never erased
# - Append-only tables: document_versions, registry_events, treasury_transfers

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Index,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value):
    """Treat naive datetimes as UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime on every backend.

    SQLite hands back naive values; they are stored and read as UTC.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    """Platform-wide role, independent of any workspace"""
    SUPER_ADMIN = "super_admin"
    USER = "user"


class WorkspaceRole(str, PyEnum):
    ADMIN = "admin"
    MEMBER = "member"
    EDITOR = "editor"
    VIEWER = "viewer"


class PermissionLevel(str, PyEnum):
    """Document permission levels, totally ordered by ``rank``"""
    NONE = "none"
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANKS[self.value]

    def satisfies(self, required: "PermissionLevel") -> bool:
        return self.rank >= PermissionLevel(required).rank


_PERMISSION_RANKS = {"none": 0, "viewer": 1, "editor": 2, "admin": 3}


class TaskStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    ARCHIVED = "archived"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class EventKind(str, PyEnum):
    # Workspace events
    WORKSPACE_CREATED = "workspace.created"
    WORKSPACE_DEACTIVATED = "workspace.deactivated"
    MEMBER_ADDED = "workspace.member.added"
    MEMBER_REMOVED = "workspace.member.removed"
    MEMBER_ROLE_CHANGED = "workspace.member.role_changed"
    STORAGE_UPDATED = "workspace.storage.updated"
    # Document events
    DOCUMENT_CREATED = "document.created"
    DOCUMENT_UPDATED = "document.updated"
    DOCUMENT_DELETED = "document.deleted"
    PERMISSION_GRANTED = "document.permission.granted"
    PERMISSION_REVOKED = "document.permission.revoked"
    # Workflow events
    PROJECT_CREATED = "project.created"
    PROJECT_DEACTIVATED = "project.deactivated"
    TASK_CREATED = "task.created"
    TASK_STATUS_CHANGED = "task.status_changed"
    TASK_COMPLETED = "task.completed"
    TASK_ASSIGNED = "task.assigned"
    TASK_DEPENDENCY_ADDED = "task.dependency.added"
    TASK_SUBTASK_ADDED = "task.subtask.added"
    TASK_ATTACHMENT_ADDED = "task.attachment.added"
    # Subscription events
    PLAN_CREATED = "plan.created"
    PLAN_DEACTIVATED = "plan.deactivated"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_USAGE_RECORDED = "subscription.usage.recorded"


# ============================================================
# USERS (caller identities)
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, index=True)


# ============================================================
# ID SEQUENCES
# ============================================================

class IdSequence(Base):
    """Last allocated id per entity kind"""
    __tablename__ = "id_sequences"

    kind = Column(String, primary_key=True)
    last_value = Column(BigInteger, nullable=False, default=0)


# ============================================================
# WORKSPACES & ACCESS CONTROL
# ============================================================

class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    metadata_ref = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    storage_limit_bytes = Column(BigInteger, nullable=False)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)
    deactivated_at = Column(UTCDateTime, nullable=True)


class WorkspaceMember(Base):
    """Access control table row. Removal clears is_active; rows are never deleted."""
    __tablename__ = "workspace_members"

    workspace_id = Column(BigInteger, ForeignKey("workspaces.id"), primary_key=True)
    member_id = Column(String, primary_key=True)
    role = Column(SQLEnum(WorkspaceRole), nullable=False)
    joined_at = Column(UTCDateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    removed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_member_identity_active", "member_id", "is_active"),
    )


# ============================================================
# DOCUMENTS
# ============================================================

class Document(Base):
    __tablename__ = "documents"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    workspace_id = Column(BigInteger, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    content_ref = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    deleted_at = Column(UTCDateTime, nullable=True)


class DocumentVersion(Base):
    """Content history of a document (append-only)"""
    __tablename__ = "document_versions"

    document_id = Column(BigInteger, ForeignKey("documents.id"), primary_key=True)
    version = Column(Integer, primary_key=True)
    content_ref = Column(String, nullable=False)
    author_id = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)


class DocumentPermission(Base):
    __tablename__ = "document_permissions"

    document_id = Column(BigInteger, ForeignKey("documents.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    level = Column(SQLEnum(PermissionLevel), nullable=False)
    granted_by = Column(String, nullable=False)
    granted_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)  # NULL = never expires


# ============================================================
# PROJECTS & TASKS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    workspace_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String, nullable=False)
    owner_id = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    project_id = Column(BigInteger, ForeignKey("projects.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    content_ref = Column(String, nullable=True)
    assignee_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.TODO, nullable=False, index=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    due_date = Column(UTCDateTime, nullable=True)

    # Ordered sets, reassigned (never mutated in place) so changes are tracked
    dependency_ids = Column(JSON, nullable=False, default=list)
    subtask_ids = Column(JSON, nullable=False, default=list)
    attachments = Column(JSON, nullable=False, default=list)

    creator_id = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_task_project_status", "project_id", "status"),
    )


# ============================================================
# STORAGE PLANS & SUBSCRIPTIONS
# ============================================================

class StoragePlan(Base):
    __tablename__ = "storage_plans"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False, unique=True)
    storage_limit_gb = Column(Integer, nullable=False)
    price_per_month = Column(BigInteger, nullable=False)  # minor currency units
    price_per_gb = Column(BigInteger, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)


class Subscription(Base):
    """One subscription record per workspace"""
    __tablename__ = "subscriptions"

    workspace_id = Column(BigInteger, primary_key=True)
    plan_id = Column(BigInteger, ForeignKey("storage_plans.id"), nullable=False)
    subscriber_id = Column(String, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    renewed_at = Column(UTCDateTime, nullable=True)
    storage_used_gb = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)


class TreasuryTransfer(Base):
    """Payments forwarded to the treasury collector (append-only)"""
    __tablename__ = "treasury_transfers"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(BigInteger, nullable=False, index=True)
    payer_id = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    collector = Column(String, nullable=False)
    reference = Column(String, nullable=False, unique=True)
    created_at = Column(UTCDateTime, nullable=False)


# ============================================================
# EVENTS (append-only, never updated or deleted)
# ============================================================

class RegistryEvent(Base):
    __tablename__ = "registry_events"

    id = Column(String, primary_key=True, default=new_uuid)
    sequence = Column(BigInteger, nullable=False, unique=True)
    kind = Column(SQLEnum(EventKind), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    workspace_id = Column(BigInteger, nullable=True, index=True)
    actor_id = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    changes = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_event_workspace_sequence", "workspace_id", "sequence"),
    )
