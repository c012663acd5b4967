# registries.py — FastAPI dependency wiring for the registries
# Each request gets one session and one substrate shared by every registry it touches.
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import UserDirectory
from database import get_db_session
from document_registry import DocumentRegistry
from subscription_ledger import SubscriptionLedger
from substrate import Clock, ExecutionSubstrate, SystemClock
from task_workflow import TaskWorkflowEngine
from treasury import PaymentForwarder, build_treasury
from workspace_registry import WorkspaceRegistry

_system_clock = SystemClock()


def get_clock() -> Clock:
    """Overridden with a FrozenClock in tests"""
    return _system_clock


def get_substrate(
    db: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> ExecutionSubstrate:
    return ExecutionSubstrate(db, clock)


def get_workspace_registry(substrate: ExecutionSubstrate = Depends(get_substrate)) -> WorkspaceRegistry:
    return WorkspaceRegistry(substrate)


def get_document_registry(
    substrate: ExecutionSubstrate = Depends(get_substrate),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
) -> DocumentRegistry:
    return DocumentRegistry(substrate, workspaces)


def get_task_engine(
    substrate: ExecutionSubstrate = Depends(get_substrate),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
) -> TaskWorkflowEngine:
    return TaskWorkflowEngine(substrate, workspaces)


def get_treasury(db: AsyncSession = Depends(get_db_session)) -> PaymentForwarder:
    return build_treasury(db)


def get_subscription_ledger(
    substrate: ExecutionSubstrate = Depends(get_substrate),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
    treasury: PaymentForwarder = Depends(get_treasury),
) -> SubscriptionLedger:
    return SubscriptionLedger(substrate, workspaces, treasury, UserDirectory(substrate.session))
