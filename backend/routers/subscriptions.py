# routers/subscriptions.py — Storage plans and workspace subscriptions
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_control import require
from auth import CurrentUser, get_current_user
from errors import NotFound
from models import StoragePlan, Subscription
from registries import get_subscription_ledger, get_workspace_registry
from subscription_ledger import SubscriptionLedger
from workspace_registry import WorkspaceRegistry

router = APIRouter(prefix="/api/v1/subscriptions", tags=["Subscriptions"])


# ============================================================
# SCHEMAS
# ============================================================

class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    storage_limit_gb: int = Field(..., gt=0)
    price_per_month: int = Field(..., ge=0)
    price_per_gb: int = Field(0, ge=0)


class SubscribeRequest(BaseModel):
    workspace_id: int
    plan_id: int
    payment: int = Field(..., ge=0)


class RenewRequest(BaseModel):
    payment: int = Field(..., ge=0)


class UsageUpdate(BaseModel):
    used_gb: int = Field(..., ge=0)


class PlanOut(BaseModel):
    id: int
    name: str
    storage_limit_gb: int
    price_per_month: int
    price_per_gb: int
    is_active: bool
    created_at: datetime


class SubscriptionOut(BaseModel):
    workspace_id: int
    plan_id: int
    subscriber_id: str
    started_at: datetime
    expires_at: datetime
    renewed_at: Optional[datetime] = None
    storage_used_gb: int
    is_active: bool
    is_current: bool


def _plan_to_out(plan: StoragePlan) -> PlanOut:
    return PlanOut(
        id=plan.id,
        name=plan.name,
        storage_limit_gb=plan.storage_limit_gb,
        price_per_month=plan.price_per_month,
        price_per_gb=plan.price_per_gb,
        is_active=plan.is_active,
        created_at=plan.created_at,
    )


def _subscription_to_out(sub: Subscription, now: datetime) -> SubscriptionOut:
    return SubscriptionOut(
        workspace_id=sub.workspace_id,
        plan_id=sub.plan_id,
        subscriber_id=sub.subscriber_id,
        started_at=sub.started_at,
        expires_at=sub.expires_at,
        renewed_at=sub.renewed_at,
        storage_used_gb=sub.storage_used_gb or 0,
        is_active=sub.is_active,
        is_current=bool(sub.is_active and sub.expires_at > now),
    )


# ============================================================
# PLANS
# ============================================================

@router.get("/plans", response_model=List[PlanOut])
async def list_plans(
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    return [_plan_to_out(p) for p in await ledger.list_plans(include_inactive)]


@router.post("/plans", response_model=PlanOut, status_code=201)
async def create_plan(
    data: PlanCreate,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    plan = await ledger.create_plan(
        user.id, data.name, data.storage_limit_gb, data.price_per_month, data.price_per_gb,
    )
    return _plan_to_out(plan)


@router.get("/plans/{plan_id}", response_model=PlanOut)
async def get_plan(
    plan_id: int,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    plan = await ledger.get_plan(plan_id)
    if plan is None:
        raise NotFound(f"Storage plan {plan_id} not found")
    return _plan_to_out(plan)


@router.post("/plans/{plan_id}/deactivate", response_model=PlanOut)
async def deactivate_plan(
    plan_id: int,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    return _plan_to_out(await ledger.deactivate_plan(user.id, plan_id))


# ============================================================
# SUBSCRIPTIONS
# ============================================================

@router.post("", response_model=SubscriptionOut, status_code=201)
async def subscribe(
    data: SubscribeRequest,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    sub = await ledger.subscribe(user.id, data.workspace_id, data.plan_id, data.payment)
    return _subscription_to_out(sub, ledger.substrate.now())


@router.get("/{workspace_id}", response_model=SubscriptionOut)
async def get_subscription(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
    workspaces: WorkspaceRegistry = Depends(get_workspace_registry),
):
    require(
        await workspaces.is_member(workspace_id, user.id),
        "Workspace membership required",
        workspace_id=workspace_id,
    )
    sub = await ledger.get_subscription(workspace_id)
    if sub is None:
        raise NotFound(f"Workspace {workspace_id} has no subscription")
    return _subscription_to_out(sub, ledger.substrate.now())


@router.get("/{workspace_id}/active")
async def is_subscription_active(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    return {"workspace_id": workspace_id, "active": await ledger.is_subscription_active(workspace_id)}


@router.post("/{workspace_id}/renew", response_model=SubscriptionOut)
async def renew_subscription(
    workspace_id: int,
    data: RenewRequest,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    sub = await ledger.renew_subscription(user.id, workspace_id, data.payment)
    return _subscription_to_out(sub, ledger.substrate.now())


@router.post("/{workspace_id}/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    workspace_id: int,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    sub = await ledger.cancel_subscription(user.id, workspace_id)
    return _subscription_to_out(sub, ledger.substrate.now())


@router.put("/{workspace_id}/usage", response_model=SubscriptionOut)
async def record_storage_usage(
    workspace_id: int,
    data: UsageUpdate,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_subscription_ledger),
):
    sub = await ledger.record_storage_usage(user.id, workspace_id, data.used_gb)
    return _subscription_to_out(sub, ledger.substrate.now())
